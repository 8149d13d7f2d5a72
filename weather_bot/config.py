from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from weather_bot.models import AllocationPolicy


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_optional_str(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


@dataclass(frozen=True)
class TrackedLocation:
    name: str
    latitude: float
    longitude: float
    timezone: str = "UTC"

    def local_time(self, moment: datetime) -> datetime:
        """``moment`` in this location's zone; an unknown zone falls back to UTC."""
        try:
            zone = ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            zone = ZoneInfo("UTC")
        return moment.astimezone(zone)


DEFAULT_LOCATIONS = (
    TrackedLocation("London", 51.5074, -0.1278, "Europe/London"),
    TrackedLocation("New York", 40.7128, -74.0060, "America/New_York"),
)


def _parse_locations(value: str | None) -> tuple[TrackedLocation, ...]:
    """Parses `Name:lat:lon:tz;Name2:lat:lon:tz` into tracked locations."""
    if value is None or not value.strip():
        return DEFAULT_LOCATIONS
    locations: list[TrackedLocation] = []
    for chunk in value.split(";"):
        parts = [part.strip() for part in chunk.split(":")]
        if len(parts) < 3 or not parts[0]:
            continue
        tz_name = parts[3] if len(parts) > 3 and parts[3] else "UTC"
        locations.append(TrackedLocation(parts[0], float(parts[1]), float(parts[2]), tz_name))
    return tuple(locations) or DEFAULT_LOCATIONS


@dataclass(frozen=True)
class ScoringSettings:
    promotion_threshold: int = 70
    min_profit_margin_pct: float = 0.5
    fee_pct: float = 0.5
    max_reading_age_seconds: float = 900.0


@dataclass(frozen=True)
class ExecutionSettings:
    slippage_tolerance: float = 0.02
    poll_min_seconds: float = 2.0
    poll_max_seconds: float = 5.0
    allocation_policy: AllocationPolicy = AllocationPolicy.EQUAL_SPLIT
    capital_fraction: float = 1.0
    default_tick_size: float = 0.01
    size_decimals: int = 5
    cost_decimals: int = 2


@dataclass(frozen=True)
class BreakerSettings:
    max_loss_usd: float = -100.0
    min_win_rate_pct: float = 80.0
    win_rate_window: int = 10
    win_rate_min_samples: int = 5
    max_data_age_seconds: float = 900.0
    min_balance_usd: float = 10.0
    api_failure_threshold: int = 3
    api_recovery_seconds: float = 60.0
    api_success_threshold: int = 2


@dataclass(frozen=True)
class ScheduleSettings:
    loop_interval_seconds: float = 60.0
    market_refresh_seconds: float = 300.0
    weather_refresh_seconds: float = 600.0
    day_rotation_seconds: float = 21600.0


@dataclass(frozen=True)
class PolymarketSettings:
    gamma_base_url: str = "https://gamma-api.polymarket.com"
    clob_base_url: str = "https://clob.polymarket.com"
    market_page_size: int = 100
    market_scan_pages: int = 3
    search_tag: str = "weather"
    chain_id: int = 137
    private_key: str | None = None
    funder: str | None = None
    api_key: str | None = None
    api_secret: str | None = None
    api_passphrase: str | None = None


@dataclass(frozen=True)
class WeatherSettings:
    api_key: str | None = None
    base_url: str = "https://api.openweathermap.org"
    units: str = "imperial"
    locations: tuple[TrackedLocation, ...] = DEFAULT_LOCATIONS

    def location(self, name: str) -> TrackedLocation | None:
        wanted = name.strip().lower()
        for loc in self.locations:
            if loc.name.lower() == wanted:
                return loc
        return None

    def local_time(self, name: str, moment: datetime) -> datetime:
        tracked = self.location(name)
        if tracked is None:
            return moment.astimezone(ZoneInfo("UTC"))
        return tracked.local_time(moment)


@dataclass(frozen=True)
class AlertSettings:
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    telegram_base_url: str = "https://api.telegram.org"


@dataclass(frozen=True)
class AppSettings:
    live_mode: bool = False
    debug: bool = False
    log_level: str = "INFO"
    db_path: str = "data/weather_bot.db"
    paper_bankroll_usd: float = 1000.0
    http_timeout_seconds: float = 10.0
    control_socket_port: int = 9130
    scoring: ScoringSettings = field(default_factory=ScoringSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    breakers: BreakerSettings = field(default_factory=BreakerSettings)
    schedule: ScheduleSettings = field(default_factory=ScheduleSettings)
    polymarket: PolymarketSettings = field(default_factory=PolymarketSettings)
    weather: WeatherSettings = field(default_factory=WeatherSettings)
    alerts: AlertSettings = field(default_factory=AlertSettings)


def load_settings() -> AppSettings:
    load_dotenv(override=False)

    db_path = os.getenv("WX_DB_PATH") or "data/weather_bot.db"
    db_path = str(Path(db_path).expanduser())

    policy_raw = (os.getenv("WX_ALLOCATION_POLICY") or AllocationPolicy.EQUAL_SPLIT.value).strip().lower()
    allocation_policy = AllocationPolicy(policy_raw)

    max_data_age = _as_float(os.getenv("WX_DATA_FRESHNESS_MINUTES"), 15.0) * 60.0

    return AppSettings(
        live_mode=_as_bool(os.getenv("WX_LIVE_MODE"), default=False),
        debug=_as_bool(os.getenv("WX_DEBUG"), default=False),
        log_level=os.getenv("WX_LOG_LEVEL", "INFO"),
        db_path=db_path,
        paper_bankroll_usd=_as_float(os.getenv("WX_PAPER_BANKROLL_USD"), 1000.0),
        http_timeout_seconds=_as_float(os.getenv("WX_HTTP_TIMEOUT_SECONDS"), 10.0),
        control_socket_port=_as_int(os.getenv("WX_CONTROL_SOCKET_PORT"), 9130),
        scoring=ScoringSettings(
            promotion_threshold=_as_int(os.getenv("WX_PROMOTION_THRESHOLD"), 70),
            min_profit_margin_pct=_as_float(os.getenv("WX_MIN_PROFIT_MARGIN_PCT"), 0.5),
            fee_pct=_as_float(os.getenv("WX_FEE_PCT"), 0.5),
            max_reading_age_seconds=max_data_age,
        ),
        execution=ExecutionSettings(
            slippage_tolerance=_as_float(os.getenv("WX_SLIPPAGE_TOLERANCE"), 0.02),
            poll_min_seconds=_as_float(os.getenv("WX_POLL_MIN_SECONDS"), 2.0),
            poll_max_seconds=_as_float(os.getenv("WX_POLL_MAX_SECONDS"), 5.0),
            allocation_policy=allocation_policy,
            capital_fraction=_as_float(os.getenv("WX_CAPITAL_FRACTION"), 1.0),
            default_tick_size=_as_float(os.getenv("WX_DEFAULT_TICK_SIZE"), 0.01),
            size_decimals=_as_int(os.getenv("WX_SIZE_DECIMALS"), 5),
            cost_decimals=_as_int(os.getenv("WX_COST_DECIMALS"), 2),
        ),
        breakers=BreakerSettings(
            max_loss_usd=_as_float(os.getenv("WX_MAX_LOSS_USD"), -100.0),
            min_win_rate_pct=_as_float(os.getenv("WX_MIN_WIN_RATE_PCT"), 80.0),
            win_rate_window=_as_int(os.getenv("WX_WIN_RATE_WINDOW"), 10),
            win_rate_min_samples=_as_int(os.getenv("WX_WIN_RATE_MIN_SAMPLES"), 5),
            max_data_age_seconds=max_data_age,
            min_balance_usd=_as_float(os.getenv("WX_MIN_BALANCE_USD"), 10.0),
            api_failure_threshold=_as_int(os.getenv("WX_API_FAILURE_THRESHOLD"), 3),
            api_recovery_seconds=_as_float(os.getenv("WX_API_RECOVERY_SECONDS"), 60.0),
            api_success_threshold=_as_int(os.getenv("WX_API_SUCCESS_THRESHOLD"), 2),
        ),
        schedule=ScheduleSettings(
            loop_interval_seconds=_as_float(os.getenv("WX_LOOP_INTERVAL_SECONDS"), 60.0),
            market_refresh_seconds=_as_float(os.getenv("WX_MARKET_SCAN_MINUTES"), 5.0) * 60.0,
            weather_refresh_seconds=_as_float(os.getenv("WX_WEATHER_UPDATE_MINUTES"), 10.0) * 60.0,
            day_rotation_seconds=_as_float(os.getenv("WX_DAY_ROTATION_HOURS"), 6.0) * 3600.0,
        ),
        polymarket=PolymarketSettings(
            gamma_base_url=os.getenv("POLYMARKET_GAMMA_BASE_URL", "https://gamma-api.polymarket.com"),
            clob_base_url=os.getenv("POLYMARKET_CLOB_BASE_URL", "https://clob.polymarket.com"),
            market_page_size=_as_int(os.getenv("POLYMARKET_MARKET_PAGE_SIZE"), 100),
            market_scan_pages=_as_int(os.getenv("POLYMARKET_MARKET_SCAN_PAGES"), 3),
            search_tag=os.getenv("POLYMARKET_SEARCH_TAG", "weather"),
            chain_id=_as_int(os.getenv("POLYMARKET_CHAIN_ID"), 137),
            private_key=_as_optional_str(os.getenv("POLYMARKET_PRIVATE_KEY")),
            funder=_as_optional_str(os.getenv("POLYMARKET_FUNDER")),
            api_key=_as_optional_str(os.getenv("POLYMARKET_API_KEY")),
            api_secret=_as_optional_str(os.getenv("POLYMARKET_API_SECRET")),
            api_passphrase=_as_optional_str(os.getenv("POLYMARKET_API_PASSPHRASE")),
        ),
        weather=WeatherSettings(
            api_key=_as_optional_str(os.getenv("OPENWEATHER_API_KEY")),
            base_url=os.getenv("OPENWEATHER_BASE_URL", "https://api.openweathermap.org"),
            units=os.getenv("WX_WEATHER_UNITS", "imperial"),
            locations=_parse_locations(os.getenv("WX_LOCATIONS")),
        ),
        alerts=AlertSettings(
            telegram_bot_token=_as_optional_str(os.getenv("TELEGRAM_BOT_TOKEN")),
            telegram_chat_id=_as_optional_str(os.getenv("TELEGRAM_CHAT_ID")),
        ),
    )
