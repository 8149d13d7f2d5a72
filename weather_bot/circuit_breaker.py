"""Health circuit for an external endpoint.

Consecutive request failures open the circuit. After a cool-down it moves
to HALF_OPEN and lets trial calls through; enough consecutive successful trials
close it again, and any failed trial re-opens it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

LOGGER = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitConfig:
    name: str = "endpoint"
    failure_threshold: int = 3
    recovery_timeout_seconds: float = 60.0
    success_threshold: int = 2


@dataclass(frozen=True)
class CircuitSnapshot:
    name: str
    state: CircuitState
    consecutive_failures: int
    trial_successes: int
    total_trips: int
    last_error: str


class EndpointCircuit:
    def __init__(
        self,
        config: CircuitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or CircuitConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._trial_successes = 0
        self._opened_at = 0.0
        self._total_trips = 0
        self._last_error = ""

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN:
            waited = self._clock() - self._opened_at
            if waited >= self._config.recovery_timeout_seconds:
                self._state = CircuitState.HALF_OPEN
                self._trial_successes = 0
                LOGGER.info("circuit '%s' half-open after %.1fs", self.name, waited)
        return self._state

    @property
    def healthy(self) -> bool:
        return self.state is CircuitState.CLOSED

    @property
    def last_error(self) -> str:
        return self._last_error

    def record_success(self) -> None:
        current = self.state
        if current is CircuitState.HALF_OPEN:
            self._trial_successes += 1
            if self._trial_successes >= self._config.success_threshold:
                self._close()
                LOGGER.info("circuit '%s' closed after %d good trials", self.name, self._config.success_threshold)
        elif current is CircuitState.CLOSED:
            self._failures = 0

    def record_failure(self, error: str = "") -> None:
        self._last_error = error
        current = self.state
        if current is CircuitState.HALF_OPEN:
            self._open()
            LOGGER.warning("circuit '%s' re-opened by failed trial: %s", self.name, error)
        elif current is CircuitState.CLOSED:
            self._failures += 1
            if self._failures >= self._config.failure_threshold:
                self._open()
                self._total_trips += 1
                LOGGER.warning(
                    "circuit '%s' opened after %d consecutive failures (trip #%d): %s",
                    self.name,
                    self._failures,
                    self._total_trips,
                    error,
                )

    def snapshot(self) -> CircuitSnapshot:
        return CircuitSnapshot(
            name=self.name,
            state=self.state,
            consecutive_failures=self._failures,
            trial_successes=self._trial_successes,
            total_trips=self._total_trips,
            last_error=self._last_error,
        )

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_successes = 0

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._trial_successes = 0
