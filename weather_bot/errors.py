"""Exception types raised across the engine.

Transient I/O failures are not wrapped: adapters let ``httpx`` errors
propagate and the polling loops log and skip them.
"""

from __future__ import annotations


class WeatherBotError(Exception):
    """Base class for engine errors."""


class InvariantViolation(WeatherBotError):
    """Shared state would become inconsistent; the operation is abandoned."""


class DuplicatePositionError(InvariantViolation):
    def __init__(self, instrument_id: str, side: str) -> None:
        super().__init__(f"open position already exists for {instrument_id}:{side}")
        self.instrument_id = instrument_id
        self.side = side


class UnknownSafeBetError(InvariantViolation):
    def __init__(self, key: str, detail: str = "no live safe bet") -> None:
        super().__init__(f"{detail}: {key}")
        self.key = key


class OrderTooSmallError(WeatherBotError, ValueError):
    """Normalization left nothing the venue would accept."""
