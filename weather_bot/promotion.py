"""Promotion: rescore the tradable universe and rebuild the SafeBet set."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from weather_bot import certainty_scorer
from weather_bot.config import ScoringSettings, WeatherSettings
from weather_bot.models import (
    CertaintyScore,
    Instrument,
    ItemOutcome,
    SafeBet,
    Side,
    bet_key,
    utc_now,
)
from weather_bot.safe_bets import SafeBetBook
from weather_bot.store import WeatherStore

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ItemResult:
    instrument_id: str
    outcome: ItemOutcome
    reason: str
    side: Side | None = None
    score: CertaintyScore | None = None


@dataclass(frozen=True)
class PromotionReport:
    items: list[ItemResult] = field(default_factory=list)
    installed: list[SafeBet] = field(default_factory=list)

    def count(self, outcome: ItemOutcome) -> int:
        return sum(1 for item in self.items if item.outcome is outcome)

    @property
    def promoted(self) -> int:
        return self.count(ItemOutcome.PROMOTED)

    @property
    def skipped(self) -> int:
        return self.count(ItemOutcome.SKIPPED)

    @property
    def failed(self) -> int:
        return self.count(ItemOutcome.FAILED)


class PromotionLoop:
    def __init__(
        self,
        store: WeatherStore,
        book: SafeBetBook,
        scoring: ScoringSettings,
        weather: WeatherSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._book = book
        self._scoring = scoring
        self._weather = weather
        self._clock = clock

    def run_once(self) -> PromotionReport:
        now = self._clock()
        since = self._book.fill_sequence
        open_keys = self._store.open_position_keys()

        instruments = self.tradable_instruments(now)

        items: list[ItemResult] = []
        candidates: list[SafeBet] = []
        for instrument in instruments:
            try:
                item, bet = self._evaluate(instrument, open_keys, now)
            except Exception as exc:
                LOGGER.warning("scoring %s failed: %s", instrument.instrument_id, exc)
                item, bet = ItemResult(instrument.instrument_id, ItemOutcome.FAILED, str(exc)), None
            items.append(item)
            if bet is not None:
                candidates.append(bet)

        installed = self._book.replace_all(candidates, since_sequence=since)
        report = PromotionReport(items=items, installed=installed)
        LOGGER.info(
            "promotion: instruments=%d promoted=%d skipped=%d failed=%d live=%d",
            len(instruments),
            report.promoted,
            report.skipped,
            report.failed,
            len(installed),
        )
        return report

    def _evaluate(
        self,
        instrument: Instrument,
        open_keys: set[str],
        now: datetime,
    ) -> tuple[ItemResult, SafeBet | None]:
        reading = self._store.latest_reading(instrument.location)
        inputs = certainty_scorer.build_inputs(
            reading,
            threshold=instrument.threshold,
            yes_price=instrument.yes_price,
            no_price=instrument.no_price,
            spread=instrument.spread,
            depth=instrument.depth,
            local_hour=self._weather.local_time(instrument.location, now).hour,
            now=now,
            max_reading_age_seconds=self._scoring.max_reading_age_seconds,
        )
        result = certainty_scorer.score(
            instrument.instrument_id,
            inputs,
            promotion_threshold=self._scoring.promotion_threshold,
            min_margin_pct=self._scoring.min_profit_margin_pct,
            fee_pct=self._scoring.fee_pct,
            scored_at=now,
        )
        self._store.record_score(result)

        side = result.recommendation.side
        if side is None:
            return ItemResult(instrument.instrument_id, ItemOutcome.SKIPPED, result.reason, score=result), None

        key = bet_key(instrument.instrument_id, side)
        if key in open_keys:
            return (
                ItemResult(instrument.instrument_id, ItemOutcome.SKIPPED, "open position exists", side, result),
                None,
            )

        price = instrument.price_for(side)
        assert price is not None and result.expected_profit_pct is not None
        bet = SafeBet(
            instrument_id=instrument.instrument_id,
            side=side,
            token_id=instrument.token_for(side),
            price=price,
            score=result.aggregate,
            expected_profit_pct=result.expected_profit_pct,
            question=instrument.question,
            location=instrument.location,
            inputs=inputs,
            last_checked=now,
        )
        return ItemResult(instrument.instrument_id, ItemOutcome.PROMOTED, result.reason, side, result), bet

    def tradable_instruments(self, now: datetime) -> list[Instrument]:
        """Active instruments settling today or tomorrow in their own location's time zone."""
        # Local dates sit within a day of the UTC date, so widen the query and
        # apply each location's window after.
        utc_today = now.astimezone(timezone.utc).date()
        candidates = self._store.active_instruments_between(
            utc_today - timedelta(days=1), utc_today + timedelta(days=2)
        )
        return [instrument for instrument in candidates if self._in_window(instrument, now)]

    def _in_window(self, instrument: Instrument, now: datetime) -> bool:
        local_today = self._weather.local_time(instrument.location, now).date()
        return local_today <= instrument.settlement_date <= local_today + timedelta(days=1)
