import pytest

from weather_bot.config import DEFAULT_LOCATIONS, load_settings
from weather_bot.models import AllocationPolicy


def test_load_settings_defaults(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("WX_LOCATIONS", raising=False)
    monkeypatch.delenv("WX_LIVE_MODE", raising=False)
    settings = load_settings()

    assert settings.live_mode is False
    assert settings.scoring.promotion_threshold == 70
    assert settings.execution.slippage_tolerance == pytest.approx(0.02)
    assert settings.execution.allocation_policy is AllocationPolicy.EQUAL_SPLIT
    assert settings.breakers.max_data_age_seconds == pytest.approx(900.0)
    assert settings.weather.locations == DEFAULT_LOCATIONS


def test_load_settings_overrides(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("WX_LIVE_MODE", "true")
    monkeypatch.setenv("WX_PROMOTION_THRESHOLD", "80")
    monkeypatch.setenv("WX_ALLOCATION_POLICY", "FIXED_FRACTION")
    monkeypatch.setenv("WX_CAPITAL_FRACTION", "0.25")
    monkeypatch.setenv("WX_DATA_FRESHNESS_MINUTES", "5")
    monkeypatch.setenv("WX_MARKET_SCAN_MINUTES", "2")

    settings = load_settings()

    assert settings.live_mode is True
    assert settings.scoring.promotion_threshold == 80
    assert settings.execution.allocation_policy is AllocationPolicy.FIXED_FRACTION
    assert settings.execution.capital_fraction == pytest.approx(0.25)
    assert settings.breakers.max_data_age_seconds == pytest.approx(300.0)
    assert settings.scoring.max_reading_age_seconds == pytest.approx(300.0)
    assert settings.schedule.market_refresh_seconds == pytest.approx(120.0)


def test_load_settings_parses_locations(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("WX_LOCATIONS", "Chicago:41.88:-87.63:America/Chicago; Miami:25.76:-80.19 ;bad")

    settings = load_settings()

    names = [loc.name for loc in settings.weather.locations]
    assert names == ["Chicago", "Miami"]
    assert settings.weather.location("chicago").timezone == "America/Chicago"
    assert settings.weather.location("Miami").timezone == "UTC"
    assert settings.weather.location("Paris") is None


def test_blank_secrets_are_none(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("OPENWEATHER_API_KEY", "   ")
    monkeypatch.setenv("POLYMARKET_PRIVATE_KEY", "")

    settings = load_settings()

    assert settings.weather.api_key is None
    assert settings.polymarket.private_key is None
