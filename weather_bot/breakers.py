"""Named risk gates that veto new order submission.

Each gate is INACTIVE or ACTIVE. Automatic gates are recomputed by an
evaluator on every evaluation pass and clear themselves once their
condition clears. The manual gate has no evaluator: only an operator
emergency stop sets it and only an explicit resume clears it. State is
persisted through the store so it survives restarts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Iterable

from weather_bot.circuit_breaker import CircuitState, EndpointCircuit
from weather_bot.config import BreakerSettings, TrackedLocation
from weather_bot.models import BreakerState, utc_now
from weather_bot.store import WeatherStore

LOGGER = logging.getLogger(__name__)


class BreakerName(str, Enum):
    LOSS_LIMIT = "loss_limit"
    WIN_RATE = "win_rate"
    DATA_FRESHNESS = "data_freshness"
    API_HEALTH = "api_health"
    BALANCE_CHECK = "balance_check"
    MANUAL_STOP = "manual_stop"


@dataclass(frozen=True)
class BreakerContext:
    now: datetime
    balance: float | None = None


Evaluator = Callable[[BreakerContext], Awaitable[tuple[bool, str]]]
TransitionHook = Callable[[BreakerState], None]


@dataclass(frozen=True)
class EvaluationResult:
    active: list[BreakerState] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return not self.active and not self.errors

    @property
    def reason(self) -> str:
        parts = [f"{state.name}: {state.reason}" for state in self.active]
        parts.extend(f"{name}: evaluation failed ({error})" for name, error in self.errors.items())
        return "; ".join(parts) if parts else "ok"


class BreakerRegistry:
    def __init__(
        self,
        store: WeatherStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        on_transition: TransitionHook | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._on_transition = on_transition
        self._evaluators: dict[str, Evaluator] = {}
        self._states: dict[str, BreakerState] = {
            name.value: BreakerState(name=name.value) for name in BreakerName
        }
        # Persisted state wins over the defaults, including a manual stop
        # left active by a previous run.
        self._states.update(store.load_breakers())

    def register(self, name: BreakerName | str, evaluator: Evaluator) -> None:
        key = BreakerName(name).value
        if key == BreakerName.MANUAL_STOP.value:
            raise ValueError("manual_stop is operator controlled and takes no evaluator")
        self._evaluators[key] = evaluator

    def set_transition_hook(self, hook: TransitionHook | None) -> None:
        self._on_transition = hook

    @property
    def names(self) -> list[str]:
        return list(self._states)

    def state(self, name: BreakerName | str) -> BreakerState:
        return self._states[BreakerName(name).value]

    def states(self) -> list[BreakerState]:
        return list(self._states.values())

    def active_states(self) -> list[BreakerState]:
        return [state for state in self._states.values() if state.active]

    def any_active(self) -> bool:
        """Cached view from the last evaluation pass."""
        return any(state.active for state in self._states.values())

    async def evaluate_all(self, balance: float | None = None) -> EvaluationResult:
        """Run every evaluator once and persist the resulting states."""
        now = self._clock()
        context = BreakerContext(now=now, balance=balance)
        errors: dict[str, str] = {}

        for name, evaluator in self._evaluators.items():
            try:
                tripped, reason = await evaluator(context)
            except Exception as exc:
                LOGGER.warning("breaker %s evaluation failed: %s", name, exc)
                errors[name] = str(exc)
                continue
            self._apply(name, bool(tripped), reason, now)

        return EvaluationResult(active=self.active_states(), errors=errors)

    def trip_manual(self, reason: str = "operator emergency stop") -> BreakerState:
        self._apply(BreakerName.MANUAL_STOP.value, True, reason, self._clock())
        return self._states[BreakerName.MANUAL_STOP.value]

    def clear_manual(self, reason: str = "operator resume") -> BreakerState:
        self._apply(BreakerName.MANUAL_STOP.value, False, reason, self._clock())
        return self._states[BreakerName.MANUAL_STOP.value]

    def _apply(self, name: str, active: bool, reason: str, now: datetime) -> None:
        previous = self._states[name]
        if previous.active == active:
            updated = replace(previous, last_checked=now, reason=reason if active else previous.reason)
            self._states[name] = updated
            self._store.upsert_breaker(updated)
            return

        updated = BreakerState(
            name=name,
            active=active,
            reason=reason,
            triggered_at=now if active else previous.triggered_at,
            last_checked=now,
        )
        self._states[name] = updated
        self._store.upsert_breaker(updated)

        action = "BREAKER_TRIPPED" if active else "BREAKER_CLEARED"
        if active:
            LOGGER.warning("breaker %s ACTIVE: %s", name, reason)
        else:
            LOGGER.info("breaker %s cleared: %s", name, reason)
        self._store.record_audit(action, f"{name}: {reason}", {"breaker": name, "active": active})
        if self._on_transition is not None:
            self._on_transition(updated)


# ---------------------------------------------------------------------------
# Evaluators
# ---------------------------------------------------------------------------


def loss_limit_evaluator(store: WeatherStore, max_loss_usd: float) -> Evaluator:
    async def _evaluate(_context: BreakerContext) -> tuple[bool, str]:
        pnl = store.realized_pnl()
        if pnl < max_loss_usd:
            return True, f"realized pnl {pnl:.2f} below limit {max_loss_usd:.2f}"
        return False, f"realized pnl {pnl:.2f}"

    return _evaluate


def win_rate_evaluator(
    store: WeatherStore,
    min_win_rate_pct: float,
    window: int = 10,
    min_samples: int = 5,
) -> Evaluator:
    async def _evaluate(_context: BreakerContext) -> tuple[bool, str]:
        recent = store.resolved_positions(limit=window)
        if len(recent) < min_samples:
            return False, f"only {len(recent)} resolved positions"
        wins = sum(1 for position in recent if (position.pnl or 0.0) > 0)
        rate = wins / len(recent) * 100.0
        if rate < min_win_rate_pct:
            return True, f"win rate {rate:.1f}% over last {len(recent)} below {min_win_rate_pct:.1f}%"
        return False, f"win rate {rate:.1f}%"

    return _evaluate


def data_freshness_evaluator(
    store: WeatherStore,
    locations: Iterable[TrackedLocation],
    max_age_seconds: float,
) -> Evaluator:
    names = [location.name for location in locations]

    async def _evaluate(context: BreakerContext) -> tuple[bool, str]:
        stale: list[str] = []
        for name in names:
            reading = store.latest_reading(name)
            if reading is None:
                stale.append(f"{name} (no reading)")
                continue
            age = (context.now - reading.observed_at).total_seconds()
            if age > max_age_seconds:
                stale.append(f"{name} ({age / 60:.0f} min old)")
        if stale:
            return True, "stale weather data: " + ", ".join(stale)
        return False, "weather data fresh"

    return _evaluate


def api_health_evaluator(
    circuit: EndpointCircuit,
    health_check: Callable[[], Awaitable[bool]] | None = None,
) -> Evaluator:
    async def _evaluate(_context: BreakerContext) -> tuple[bool, str]:
        if health_check is not None and circuit.state is CircuitState.HALF_OPEN:
            try:
                ok = await health_check()
            except Exception as exc:
                circuit.record_failure(str(exc))
            else:
                if ok:
                    circuit.record_success()
                else:
                    circuit.record_failure("health check returned unhealthy")
        if circuit.healthy:
            return False, "api healthy"
        return True, f"api circuit {circuit.state.value}: {circuit.last_error or 'unreachable'}"

    return _evaluate


def balance_evaluator(min_balance_usd: float) -> Evaluator:
    async def _evaluate(context: BreakerContext) -> tuple[bool, str]:
        if context.balance is None:
            return True, "balance unavailable"
        if context.balance < min_balance_usd:
            return True, f"balance {context.balance:.2f} below {min_balance_usd:.2f}"
        return False, f"balance {context.balance:.2f}"

    return _evaluate


def build_registry(
    store: WeatherStore,
    settings: BreakerSettings,
    *,
    locations: Iterable[TrackedLocation],
    api_circuit: EndpointCircuit,
    health_check: Callable[[], Awaitable[bool]] | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> BreakerRegistry:
    registry = BreakerRegistry(store, clock=clock)
    registry.register(BreakerName.LOSS_LIMIT, loss_limit_evaluator(store, settings.max_loss_usd))
    registry.register(
        BreakerName.WIN_RATE,
        win_rate_evaluator(
            store,
            settings.min_win_rate_pct,
            window=settings.win_rate_window,
            min_samples=settings.win_rate_min_samples,
        ),
    )
    registry.register(
        BreakerName.DATA_FRESHNESS,
        data_freshness_evaluator(store, locations, settings.max_data_age_seconds),
    )
    registry.register(BreakerName.API_HEALTH, api_health_evaluator(api_circuit, health_check))
    registry.register(BreakerName.BALANCE_CHECK, balance_evaluator(settings.min_balance_usd))
    return registry
