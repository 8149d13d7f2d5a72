from __future__ import annotations

import pytest

from weather_bot.errors import UnknownSafeBetError
from weather_bot.models import SafeBet, Side
from weather_bot.safe_bets import SafeBetBook


def _bet(instrument_id: str, side: Side = Side.YES, price: float = 0.92) -> SafeBet:
    return SafeBet(
        instrument_id=instrument_id,
        side=side,
        token_id=f"{instrument_id}-{side.value}",
        price=price,
        score=73,
        expected_profit_pct=8.2,
    )


def test_replace_all_swaps_whole_set() -> None:
    book = SafeBetBook()
    book.replace_all([_bet("a"), _bet("b")])
    assert sorted(book.keys()) == ["a:yes", "b:yes"]

    book.replace_all([_bet("c", Side.NO)])
    assert book.keys() == ["c:no"]
    assert "a:yes" not in book
    assert len(book) == 1


def test_same_instrument_both_sides_are_distinct() -> None:
    book = SafeBetBook()
    book.replace_all([_bet("a", Side.YES), _bet("a", Side.NO, price=0.1)])
    assert len(book) == 2


def test_claim_is_exclusive() -> None:
    book = SafeBetBook()
    book.replace_all([_bet("a")])

    assert book.claim("a:yes").instrument_id == "a"
    with pytest.raises(UnknownSafeBetError):
        book.claim("a:yes")

    book.release("a:yes")
    assert book.claim("a:yes").instrument_id == "a"


def test_claim_unknown_key_raises() -> None:
    with pytest.raises(UnknownSafeBetError) as excinfo:
        SafeBetBook().claim("missing:yes")
    assert excinfo.value.key == "missing:yes"


def test_complete_removes_and_bumps_sequence() -> None:
    book = SafeBetBook()
    book.replace_all([_bet("a"), _bet("b")])
    book.claim("a:yes")
    book.complete("a:yes")

    assert "a:yes" not in book
    assert book.fill_sequence == 1
    assert not book.is_claimed("a:yes")


def test_fill_during_promotion_is_not_reinstalled() -> None:
    book = SafeBetBook()
    book.replace_all([_bet("a"), _bet("b")])

    # Promotion snapshots positions, then a fill lands before it installs.
    since = book.fill_sequence
    book.claim("a:yes")
    book.complete("a:yes")
    installed = book.replace_all([_bet("a"), _bet("b")], since_sequence=since)

    assert [bet.key for bet in installed] == ["b:yes"]
    assert "a:yes" not in book


def test_fill_before_snapshot_does_not_block_later_promotion() -> None:
    book = SafeBetBook()
    book.replace_all([_bet("a")])
    book.claim("a:yes")
    book.complete("a:yes")

    since = book.fill_sequence
    installed = book.replace_all([_bet("a")], since_sequence=since)
    assert [bet.key for bet in installed] == ["a:yes"]


def test_claim_survives_replacement_that_keeps_the_bet() -> None:
    book = SafeBetBook()
    book.replace_all([_bet("a"), _bet("b")])
    book.claim("a:yes")
    book.claim("b:yes")

    book.replace_all([_bet("a")])

    assert book.is_claimed("a:yes")
    assert not book.is_claimed("b:yes")


def test_closed_book_installs_nothing_until_reopened() -> None:
    book = SafeBetBook()
    book.replace_all([_bet("a")])
    book.close()

    assert len(book) == 0
    assert book.replace_all([_bet("a")]) == []
    assert len(book) == 0

    book.reopen()
    assert len(book.replace_all([_bet("a")])) == 1
