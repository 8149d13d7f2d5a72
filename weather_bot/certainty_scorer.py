"""Deterministic certainty scoring for weather threshold instruments.

Three component scores (0-100 each) are combined into an integer aggregate:

* outcome certainty (weight 0.4): how settled the outcome already is given
  the observed daily extreme, the distance to the threshold and the local
  hour at the reading's location;
* market signal (weight 0.3): what the quoted prices, depth and spread say;
* data stability (weight 0.2): agreement between forecast and observation.

The weights sum to 0.9, so the aggregate never exceeds 90.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from weather_bot.models import CertaintyScore, Recommendation, Reading, ScoreInputs

CERTAINTY_WEIGHT = Decimal("0.4")
MARKET_WEIGHT = Decimal("0.3")
STABILITY_WEIGHT = Decimal("0.2")

_DISTANCE_BUCKETS = ((10.0, 95), (5.0, 85), (3.0, 70), (1.0, 50))
_HOUR_BUCKETS = ((18, 90), (15, 80), (12, 60), (9, 40))


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _clamp(value: int, low: int = 0, high: int = 100) -> int:
    return max(low, min(high, value))


def outcome_certainty(
    current_value: float,
    daily_extreme: float,
    threshold: float,
    local_hour: int,
) -> int:
    if daily_extreme > threshold and current_value > threshold:
        return 100

    distance = abs(daily_extreme - threshold)
    distance_score = 20
    for floor, score in _DISTANCE_BUCKETS:
        if distance > floor:
            distance_score = score
            break

    time_score = 20
    for hour, score in _HOUR_BUCKETS:
        if local_hour >= hour:
            time_score = score
            break

    combined = Decimal("0.6") * distance_score + Decimal("0.4") * time_score
    return _round_half_up(combined)


def market_signal(
    yes_price: float | None,
    no_price: float | None,
    depth: float | None,
    spread: float | None,
) -> int:
    if yes_price is None or no_price is None:
        return 50

    score = 50
    if yes_price > 0.95 or yes_price < 0.05:
        score += 25
    elif 0.8 < yes_price < 0.95 or 0.05 < yes_price < 0.2:
        score += 15

    if depth is not None and depth > 10000:
        score += 10
    elif depth is not None and depth > 1000:
        score += 5
    elif depth is None or depth < 100:
        score -= 10

    if spread is not None and spread > 0.2:
        score -= 15

    return _clamp(score)


def data_stability(current_value: float, daily_extreme: float, forecast_extreme: float) -> int:
    score = 60
    deviation = abs(forecast_extreme - daily_extreme)
    if deviation < 1:
        score += 30
    elif deviation < 3:
        score += 15
    elif deviation < 5:
        score += 5
    elif deviation > 10:
        score -= 20

    # Past the peak once the current value has come off the daily extreme.
    if current_value > daily_extreme * 0.9:
        score -= 10
    else:
        score -= 5

    return _clamp(score)


def aggregate_score(certainty: int, market: int, stability: int) -> int:
    total = certainty * CERTAINTY_WEIGHT + market * MARKET_WEIGHT + stability * STABILITY_WEIGHT
    return _round_half_up(total)


def expected_profit_pct(price: float | None, fee_pct: float) -> float | None:
    """Return ``(1 - price) / price * 100 - fee_pct`` floored at zero.

    None when the price is missing or outside (0, 1].
    """
    if price is None or price <= 0 or price > 1:
        return None
    return max(0.0, (1.0 - price) / price * 100.0 - fee_pct)


def implied_winner_yes(daily_extreme: float, threshold: float) -> bool:
    return daily_extreme > threshold


def score(
    instrument_id: str,
    inputs: ScoreInputs,
    *,
    promotion_threshold: int,
    min_margin_pct: float,
    fee_pct: float,
    scored_at: datetime | None = None,
) -> CertaintyScore:
    """Score one instrument from already-gathered inputs.

    Inputs with no usable reading produce a NO_ACTION score with every
    component at zero.
    """
    extra = {} if scored_at is None else {"scored_at": scored_at}

    if inputs.current_value is None or inputs.daily_extreme is None or inputs.forecast_extreme is None:
        return CertaintyScore(
            instrument_id=instrument_id,
            outcome_certainty=0,
            market_signal=0,
            data_stability=0,
            aggregate=0,
            recommendation=Recommendation.NO_ACTION,
            expected_profit_pct=None,
            inputs=inputs,
            reason="no usable reading",
            **extra,
        )

    certainty = outcome_certainty(
        inputs.current_value,
        inputs.daily_extreme,
        inputs.threshold,
        inputs.local_hour,
    )
    market = market_signal(inputs.yes_price, inputs.no_price, inputs.depth, inputs.spread)
    stability = data_stability(inputs.current_value, inputs.daily_extreme, inputs.forecast_extreme)
    total = aggregate_score(certainty, market, stability)

    favors_yes = implied_winner_yes(inputs.daily_extreme, inputs.threshold)
    profit: float | None = None
    if inputs.yes_price is not None and inputs.no_price is not None:
        profit = expected_profit_pct(inputs.yes_price if favors_yes else inputs.no_price, fee_pct)

    if total < promotion_threshold:
        recommendation = Recommendation.NO_ACTION
        reason = f"aggregate {total} below threshold {promotion_threshold}"
    elif profit is None:
        recommendation = Recommendation.NO_ACTION
        reason = "missing quotes"
    elif profit < min_margin_pct:
        recommendation = Recommendation.NO_ACTION
        reason = f"expected profit {profit:.3f}% below margin {min_margin_pct}%"
    else:
        recommendation = Recommendation.BUY_YES if favors_yes else Recommendation.BUY_NO
        reason = f"aggregate {total}, expected profit {profit:.3f}%"

    return CertaintyScore(
        instrument_id=instrument_id,
        outcome_certainty=certainty,
        market_signal=market,
        data_stability=stability,
        aggregate=total,
        recommendation=recommendation,
        expected_profit_pct=profit,
        inputs=inputs,
        reason=reason,
        **extra,
    )


def build_inputs(
    reading: Reading | None,
    *,
    threshold: float,
    yes_price: float | None,
    no_price: float | None,
    spread: float | None,
    depth: float | None,
    local_hour: int,
    now: datetime,
    max_reading_age_seconds: float,
) -> ScoreInputs:
    """Assemble scorer inputs, blanking the weather fields for unusable readings."""
    usable = (
        reading is not None
        and reading.valid
        and (now - reading.observed_at).total_seconds() <= max_reading_age_seconds
    )
    return ScoreInputs(
        current_value=reading.current_value if usable else None,
        daily_extreme=reading.daily_extreme if usable else None,
        forecast_extreme=reading.forecast_extreme if usable else None,
        threshold=threshold,
        yes_price=yes_price,
        no_price=no_price,
        spread=spread,
        depth=depth,
        local_hour=local_hour,
    )
