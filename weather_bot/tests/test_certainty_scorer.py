from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from weather_bot import certainty_scorer
from weather_bot.models import Reading, Recommendation, ScoreInputs

NOW = datetime(2026, 7, 14, 20, 0, tzinfo=timezone.utc)


def _inputs(**overrides: object) -> ScoreInputs:
    values = dict(
        current_value=84.0,
        daily_extreme=85.0,
        forecast_extreme=85.0,
        threshold=80.0,
        yes_price=0.92,
        no_price=0.08,
        spread=None,
        depth=None,
        local_hour=16,
    )
    values.update(overrides)
    return ScoreInputs(**values)  # type: ignore[arg-type]


def _score(inputs: ScoreInputs, threshold: int = 70, margin: float = 0.5, fee: float = 0.5):
    return certainty_scorer.score(
        "m1",
        inputs,
        promotion_threshold=threshold,
        min_margin_pct=margin,
        fee_pct=fee,
    )


# ---------------------------------------------------------------------------
# Outcome certainty
# ---------------------------------------------------------------------------


def test_certainty_is_100_when_threshold_already_crossed_at_any_hour() -> None:
    for hour in (0, 6, 12, 23):
        assert certainty_scorer.outcome_certainty(81.0, 85.0, 80.0, hour) == 100


def test_certainty_combines_distance_and_hour_buckets() -> None:
    # distance 12 -> 95, hour 19 -> 90: 0.6*95 + 0.4*90 = 93
    assert certainty_scorer.outcome_certainty(60.0, 68.0, 80.0, 19) == 93
    # distance 4 -> 70, hour 13 -> 60: 42 + 24 = 66
    assert certainty_scorer.outcome_certainty(70.0, 76.0, 80.0, 13) == 66


def test_distance_within_one_unit_is_always_lowest_bucket() -> None:
    # distance 0.5 -> 20, hour 18 -> 90: 12 + 36 = 48
    assert certainty_scorer.outcome_certainty(75.0, 79.5, 80.0, 18) == 48
    assert certainty_scorer.outcome_certainty(75.0, 81.0, 80.0, 18) == 48


def test_early_morning_hours_score_lowest_time_bucket() -> None:
    # distance 6 -> 85, hour 3 -> 20: 51 + 8 = 59
    assert certainty_scorer.outcome_certainty(60.0, 74.0, 80.0, 3) == 59


# ---------------------------------------------------------------------------
# Market signal and stability
# ---------------------------------------------------------------------------


def test_missing_quote_yields_neutral_market_signal() -> None:
    assert certainty_scorer.market_signal(None, 0.1, 50000, 0.5) == 50
    assert certainty_scorer.market_signal(0.9, None, 50000, 0.5) == 50


def test_market_signal_adjustments() -> None:
    assert certainty_scorer.market_signal(0.97, 0.03, 20000, 0.01) == 85
    assert certainty_scorer.market_signal(0.5, 0.5, 5000, 0.01) == 55
    assert certainty_scorer.market_signal(0.5, 0.5, 50, 0.3) == 25
    assert certainty_scorer.market_signal(0.1, 0.9, None, None) == 55


def test_market_signal_is_clamped() -> None:
    for yes in (0.01, 0.3, 0.5, 0.85, 0.99):
        for depth in (None, 10, 500, 5000, 50000):
            for spread in (None, 0.0, 0.5):
                value = certainty_scorer.market_signal(yes, 1 - yes, depth, spread)
                assert 0 <= value <= 100


def test_stability_rewards_forecast_agreement_and_penalizes_peak() -> None:
    assert certainty_scorer.data_stability(84.0, 85.0, 85.0) == 80
    assert certainty_scorer.data_stability(70.0, 85.0, 87.0) == 70
    assert certainty_scorer.data_stability(70.0, 85.0, 100.0) == 35


# ---------------------------------------------------------------------------
# Aggregate, profit and recommendation
# ---------------------------------------------------------------------------


def test_aggregate_never_exceeds_90() -> None:
    assert certainty_scorer.aggregate_score(100, 100, 100) == 90


def test_aggregate_rounds_half_up() -> None:
    assert certainty_scorer.aggregate_score(100, 55, 80) == 73


def test_expected_profit_formula_and_floor() -> None:
    assert certainty_scorer.expected_profit_pct(0.92, 0.5) == pytest.approx(8.1956, abs=1e-4)
    assert certainty_scorer.expected_profit_pct(0.998, 0.5) == 0.0
    assert certainty_scorer.expected_profit_pct(None, 0.5) is None
    assert certainty_scorer.expected_profit_pct(0.0, 0.5) is None


def test_already_peaked_scenario_promotes_yes() -> None:
    result = _score(_inputs())

    assert result.outcome_certainty == 100
    assert result.market_signal == 55
    assert result.data_stability == 80
    assert result.aggregate == 73
    assert result.expected_profit_pct == pytest.approx((1 - 0.92) / 0.92 * 100 - 0.5)
    assert result.recommendation is Recommendation.BUY_YES


def test_favor_no_uses_no_price_for_profit() -> None:
    result = _score(
        _inputs(current_value=60.0, daily_extreme=65.0, forecast_extreme=65.5, yes_price=0.04, no_price=0.96, local_hour=19),
    )
    assert result.recommendation is Recommendation.BUY_NO
    assert result.expected_profit_pct == pytest.approx((1 - 0.96) / 0.96 * 100 - 0.5)


def test_low_aggregate_is_no_action() -> None:
    result = _score(_inputs(current_value=70.0, daily_extreme=79.5, local_hour=8))
    assert result.recommendation is Recommendation.NO_ACTION
    assert "below threshold" in result.reason


def test_thin_margin_is_no_action() -> None:
    result = _score(_inputs(yes_price=0.995, no_price=0.005))
    assert result.aggregate >= 70
    assert result.recommendation is Recommendation.NO_ACTION
    assert "margin" in result.reason


def test_missing_quotes_block_action_but_still_score() -> None:
    result = _score(_inputs(yes_price=None, no_price=None))
    assert result.market_signal == 50
    assert result.expected_profit_pct is None
    assert result.recommendation is Recommendation.NO_ACTION


def test_scoring_is_deterministic() -> None:
    inputs = _inputs()
    first = _score(inputs)
    second = _score(inputs)
    assert first.aggregate == second.aggregate
    assert first.recommendation is second.recommendation


# ---------------------------------------------------------------------------
# Input assembly
# ---------------------------------------------------------------------------


def _reading(age_minutes: float, valid: bool = True) -> Reading:
    return Reading(
        location="London",
        current_value=84.0,
        daily_extreme=85.0,
        forecast_extreme=85.0,
        valid=valid,
        observed_at=NOW - timedelta(minutes=age_minutes),
    )


@pytest.mark.parametrize(
    "reading",
    [None, _reading(30), _reading(1, valid=False)],
    ids=["missing", "stale", "invalid"],
)
def test_unusable_readings_produce_no_action_without_raising(reading: Reading | None) -> None:
    inputs = certainty_scorer.build_inputs(
        reading,
        threshold=80.0,
        yes_price=0.92,
        no_price=0.08,
        spread=None,
        depth=None,
        local_hour=16,
        now=NOW,
        max_reading_age_seconds=900,
    )
    result = _score(inputs)
    assert result.recommendation is Recommendation.NO_ACTION
    assert result.aggregate == 0


def test_fresh_reading_passes_through() -> None:
    inputs = certainty_scorer.build_inputs(
        _reading(5),
        threshold=80.0,
        yes_price=0.92,
        no_price=0.08,
        spread=0.02,
        depth=1500.0,
        local_hour=16,
        now=NOW,
        max_reading_age_seconds=900,
    )
    assert inputs.daily_extreme == 85.0
    assert inputs.depth == 1500.0
