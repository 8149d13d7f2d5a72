"""Tests for the promotion pass that rebuilds the safe bet set."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from weather_bot.config import ScoringSettings, WeatherSettings
from weather_bot.models import Instrument, ItemOutcome, Reading, Side
from weather_bot.promotion import PromotionLoop
from weather_bot.safe_bets import SafeBetBook
from weather_bot.store import WeatherStore

NOW = datetime(2026, 7, 14, 15, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


def _instrument(instrument_id: str, settles: date = TODAY, **overrides: object) -> Instrument:
    values = dict(
        instrument_id=instrument_id,
        question=f"Will London's high exceed 80°F on {settles:%B %d}?",
        location="London",
        threshold=80.0,
        settlement_date=settles,
        yes_token_id=f"{instrument_id}-yes",
        no_token_id=f"{instrument_id}-no",
        yes_price=0.92,
        no_price=0.08,
    )
    values.update(overrides)
    return Instrument(**values)  # type: ignore[arg-type]


@pytest.fixture()
def store(tmp_path: Path) -> WeatherStore:
    s = WeatherStore(db_path=tmp_path / "promotion.db")
    yield s
    s.close()


def _loop(store: WeatherStore, book: SafeBetBook) -> PromotionLoop:
    return PromotionLoop(store, book, ScoringSettings(), WeatherSettings(), clock=lambda: NOW)


def _peaked_reading(age: timedelta = timedelta(minutes=5)) -> Reading:
    return Reading("London", 84.0, 85.0, 85.0, source="test", observed_at=NOW - age)


# ---------------------------------------------------------------------------
# Promotion
# ---------------------------------------------------------------------------


def test_peaked_instrument_is_promoted(store: WeatherStore) -> None:
    store.upsert_instrument(_instrument("m1"))
    store.record_reading(_peaked_reading())
    book = SafeBetBook()

    report = _loop(store, book).run_once()

    assert report.promoted == 1
    bet = book.get("m1:yes")
    assert bet is not None
    assert bet.side is Side.YES
    assert bet.score == 73
    assert bet.price == pytest.approx(0.92)
    assert bet.token_id == "m1-yes"
    assert store.score_count("m1") == 1


def test_stale_reading_scores_but_promotes_nothing(store: WeatherStore) -> None:
    store.upsert_instrument(_instrument("m1"))
    store.record_reading(_peaked_reading(age=timedelta(hours=2)))
    book = SafeBetBook()

    report = _loop(store, book).run_once()

    assert report.skipped == 1
    assert report.items[0].reason == "no usable reading"
    assert len(book) == 0
    assert store.score_count() == 1


def test_open_position_blocks_promotion(store: WeatherStore) -> None:
    store.upsert_instrument(_instrument("m1"))
    store.upsert_instrument(_instrument("m2"))
    store.record_reading(_peaked_reading())
    store.create_position("m1", Side.YES, entry_price=0.92, size=10, cost_basis=9.2)
    book = SafeBetBook()

    report = _loop(store, book).run_once()

    assert book.keys() == ["m2:yes"]
    skipped = [item for item in report.items if item.outcome is ItemOutcome.SKIPPED]
    assert [item.reason for item in skipped] == ["open position exists"]


def test_only_today_and_tomorrow_are_scored(store: WeatherStore) -> None:
    store.upsert_instrument(_instrument("yesterday", TODAY - timedelta(days=1)))
    store.upsert_instrument(_instrument("today", TODAY))
    store.upsert_instrument(_instrument("tomorrow", TODAY + timedelta(days=1)))
    store.upsert_instrument(_instrument("next_week", TODAY + timedelta(days=7)))
    store.record_reading(_peaked_reading())

    report = _loop(store, SafeBetBook()).run_once()

    assert sorted(item.instrument_id for item in report.items) == ["today", "tomorrow"]


def test_window_follows_each_location_local_day(store: WeatherStore) -> None:
    # 01:00 UTC on July 15 is 21:00 on July 14 in New York and 02:00 on July 15 in London.
    evening = datetime(2026, 7, 15, 1, 0, tzinfo=timezone.utc)
    july_14, july_15, july_16 = date(2026, 7, 14), date(2026, 7, 15), date(2026, 7, 16)
    store.upsert_instrument(_instrument("ny_today", july_14, location="New York"))
    store.upsert_instrument(_instrument("ny_tomorrow", july_15, location="New York"))
    store.upsert_instrument(_instrument("ny_later", july_16, location="New York"))
    store.upsert_instrument(_instrument("london_yesterday", july_14))
    store.upsert_instrument(_instrument("london_tomorrow", july_16))
    store.record_reading(Reading("New York", 84.0, 85.0, 85.0, source="test", observed_at=evening - timedelta(minutes=5)))
    store.record_reading(Reading("London", 70.0, 75.0, 75.0, source="test", observed_at=evening - timedelta(minutes=5)))

    loop = PromotionLoop(store, SafeBetBook(), ScoringSettings(), WeatherSettings(), clock=lambda: evening)
    report = loop.run_once()

    assert sorted(item.instrument_id for item in report.items) == ["london_tomorrow", "ny_today", "ny_tomorrow"]
    assert store.score_count("ny_today") == 1
    assert store.score_count("london_yesterday") == 0


def test_promotion_replaces_previous_set(store: WeatherStore) -> None:
    store.upsert_instrument(_instrument("m1"))
    store.record_reading(_peaked_reading())
    book = SafeBetBook()
    loop = _loop(store, book)
    loop.run_once()
    assert "m1:yes" in book

    store.update_quotes("m1", yes_price=0.999, no_price=0.001, spread=None, depth=None)
    loop.run_once()
    assert "m1:yes" not in book


def test_closed_book_stays_empty(store: WeatherStore) -> None:
    store.upsert_instrument(_instrument("m1"))
    store.record_reading(_peaked_reading())
    book = SafeBetBook()
    book.close()

    report = _loop(store, book).run_once()

    assert report.promoted == 1
    assert report.installed == []
    assert len(book) == 0
