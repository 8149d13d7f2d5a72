"""The live set of qualifying instrument+side bets.

The coordinator replaces the whole set once per promotion tick. The
execution path claims a bet before submitting, then completes it (fill)
or releases it (no fill). Everything runs on one event loop and none of
these methods await, so each call is atomic with respect to other tasks.
"""

from __future__ import annotations

import logging
from typing import Iterable

from weather_bot.errors import UnknownSafeBetError
from weather_bot.models import SafeBet

LOGGER = logging.getLogger(__name__)


class SafeBetBook:
    def __init__(self) -> None:
        self._bets: dict[str, SafeBet] = {}
        self._claimed: set[str] = set()
        self._fill_sequence = 0
        self._filled_at: dict[str, int] = {}
        self._closed = False

    def __len__(self) -> int:
        return len(self._bets)

    def __contains__(self, key: object) -> bool:
        return key in self._bets

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def fill_sequence(self) -> int:
        """Monotonic counter bumped on every completed fill."""
        return self._fill_sequence

    def get(self, key: str) -> SafeBet | None:
        return self._bets.get(key)

    def keys(self) -> list[str]:
        return list(self._bets)

    def snapshot(self) -> list[SafeBet]:
        return list(self._bets.values())

    def is_claimed(self, key: str) -> bool:
        return key in self._claimed

    def replace_all(self, bets: Iterable[SafeBet], *, since_sequence: int | None = None) -> list[SafeBet]:
        """Swap in a freshly computed set.

        Candidates filled after ``since_sequence`` are dropped: the caller
        read open positions before those fills landed. Returns what was
        actually installed; a closed book installs nothing.
        """
        if self._closed:
            LOGGER.debug("safe bet book closed, ignoring replacement")
            return []

        floor = self._fill_sequence if since_sequence is None else since_sequence
        fresh: dict[str, SafeBet] = {}
        for bet in bets:
            if self._filled_at.get(bet.key, -1) > floor:
                LOGGER.debug("dropping %s: filled during promotion", bet.key)
                continue
            fresh[bet.key] = bet

        self._bets = fresh
        self._claimed &= set(fresh)
        self._filled_at = {key: seq for key, seq in self._filled_at.items() if seq > floor}
        return list(fresh.values())

    def claim(self, key: str) -> SafeBet:
        bet = self._bets.get(key)
        if bet is None:
            raise UnknownSafeBetError(key)
        if key in self._claimed:
            raise UnknownSafeBetError(key, "execution already in flight")
        self._claimed.add(key)
        return bet

    def release(self, key: str) -> None:
        self._claimed.discard(key)

    def complete(self, key: str) -> None:
        """Record a fill: the bet leaves the set and cannot be re-promoted by a stale tick."""
        self._claimed.discard(key)
        self._bets.pop(key, None)
        self._fill_sequence += 1
        self._filled_at[key] = self._fill_sequence

    def close(self) -> None:
        self._closed = True
        self._bets.clear()
        self._claimed.clear()

    def reopen(self) -> None:
        self._closed = False
