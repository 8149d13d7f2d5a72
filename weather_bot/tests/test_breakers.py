"""Tests for the risk breaker registry and its evaluators."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from weather_bot.breakers import (
    BreakerContext,
    BreakerName,
    BreakerRegistry,
    api_health_evaluator,
    balance_evaluator,
    build_registry,
    data_freshness_evaluator,
    loss_limit_evaluator,
    win_rate_evaluator,
)
from weather_bot.circuit_breaker import CircuitConfig, CircuitState, EndpointCircuit
from weather_bot.config import BreakerSettings, TrackedLocation
from weather_bot.models import BreakerState, Reading, Side
from weather_bot.store import WeatherStore

NOW = datetime(2026, 7, 14, 15, 0, tzinfo=timezone.utc)
LONDON = TrackedLocation("London", 51.5, -0.13, "Europe/London")


@pytest.fixture()
def store(tmp_path: Path) -> WeatherStore:
    s = WeatherStore(db_path=tmp_path / "breakers.db")
    yield s
    s.close()


class Toggle:
    """Evaluator whose verdict is flipped by the test."""

    def __init__(self, tripped: bool = False) -> None:
        self.tripped = tripped
        self.error: Exception | None = None

    async def __call__(self, _context: BreakerContext) -> tuple[bool, str]:
        if self.error is not None:
            raise self.error
        return self.tripped, "toggle tripped" if self.tripped else "toggle ok"


def _context(balance: float | None = 100.0) -> BreakerContext:
    return BreakerContext(now=NOW, balance=balance)


def _resolve(store: WeatherStore, instrument_id: str, pnl: float) -> None:
    position = store.create_position(instrument_id, Side.YES, entry_price=0.9, size=10, cost_basis=9.0)
    store.resolve_position(position.position_id, pnl)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def test_automatic_breaker_trips_and_clears(store: WeatherStore) -> None:
    transitions: list[BreakerState] = []
    registry = BreakerRegistry(store, clock=lambda: NOW, on_transition=transitions.append)
    toggle = Toggle(tripped=True)
    registry.register(BreakerName.BALANCE_CHECK, toggle)

    result = asyncio.run(registry.evaluate_all())
    assert not result.allowed
    assert "balance_check" in result.reason
    assert registry.state("balance_check").triggered_at == NOW

    toggle.tripped = False
    result = asyncio.run(registry.evaluate_all())
    assert result.allowed
    assert not registry.any_active()
    assert [t.active for t in transitions] == [True, False]

    actions = [entry["action"] for entry in store.recent_audit()]
    assert actions == ["BREAKER_CLEARED", "BREAKER_TRIPPED"]


def test_unchanged_state_is_not_a_transition(store: WeatherStore) -> None:
    transitions: list[BreakerState] = []
    registry = BreakerRegistry(store, clock=lambda: NOW, on_transition=transitions.append)
    registry.register(BreakerName.LOSS_LIMIT, Toggle(tripped=False))

    asyncio.run(registry.evaluate_all())
    asyncio.run(registry.evaluate_all())

    assert transitions == []
    assert store.recent_audit() == []
    assert store.load_breakers()["loss_limit"].last_checked == NOW


def test_evaluator_error_vetoes_and_keeps_previous_state(store: WeatherStore) -> None:
    registry = BreakerRegistry(store, clock=lambda: NOW)
    toggle = Toggle(tripped=False)
    registry.register(BreakerName.API_HEALTH, toggle)
    toggle.error = RuntimeError("evaluator exploded")

    result = asyncio.run(registry.evaluate_all())

    assert not result.allowed
    assert "evaluator exploded" in result.reason
    assert not registry.state(BreakerName.API_HEALTH).active


def test_manual_stop_only_cleared_explicitly(store: WeatherStore) -> None:
    registry = BreakerRegistry(store, clock=lambda: NOW)
    registry.register(BreakerName.LOSS_LIMIT, Toggle(tripped=False))

    registry.trip_manual("operator panic")
    result = asyncio.run(registry.evaluate_all())
    assert not result.allowed
    assert [s.name for s in result.active] == ["manual_stop"]

    registry.clear_manual()
    assert asyncio.run(registry.evaluate_all()).allowed


def test_manual_stop_survives_restart(store: WeatherStore) -> None:
    BreakerRegistry(store, clock=lambda: NOW).trip_manual()

    reloaded = BreakerRegistry(store, clock=lambda: NOW)
    assert reloaded.state(BreakerName.MANUAL_STOP).active
    assert reloaded.any_active()


def test_manual_stop_takes_no_evaluator(store: WeatherStore) -> None:
    registry = BreakerRegistry(store)
    with pytest.raises(ValueError):
        registry.register(BreakerName.MANUAL_STOP, Toggle())


def test_build_registry_covers_every_gate(store: WeatherStore) -> None:
    registry = build_registry(
        store,
        BreakerSettings(),
        locations=[LONDON],
        api_circuit=EndpointCircuit(),
        clock=lambda: NOW,
    )
    assert set(registry.names) == {name.value for name in BreakerName}

    # No reading on file yet: only data freshness trips.
    result = asyncio.run(registry.evaluate_all(balance=500.0))
    assert [s.name for s in result.active] == ["data_freshness"]


# ---------------------------------------------------------------------------
# Evaluators
# ---------------------------------------------------------------------------


def test_loss_limit(store: WeatherStore) -> None:
    evaluate = loss_limit_evaluator(store, max_loss_usd=-10.0)
    _resolve(store, "a", -9.0)
    assert asyncio.run(evaluate(_context()))[0] is False
    _resolve(store, "b", -2.0)
    assert asyncio.run(evaluate(_context()))[0] is True


def test_win_rate_needs_minimum_samples(store: WeatherStore) -> None:
    evaluate = win_rate_evaluator(store, min_win_rate_pct=80.0, window=10, min_samples=5)
    for i in range(4):
        _resolve(store, f"loss{i}", -9.0)
    tripped, reason = asyncio.run(evaluate(_context()))
    assert tripped is False
    assert "only 4" in reason

    _resolve(store, "loss4", -9.0)
    assert asyncio.run(evaluate(_context()))[0] is True


def test_win_rate_at_threshold_passes(store: WeatherStore) -> None:
    evaluate = win_rate_evaluator(store, min_win_rate_pct=80.0, window=10, min_samples=5)
    for i in range(4):
        _resolve(store, f"win{i}", 1.0)
    _resolve(store, "loss", -9.0)
    assert asyncio.run(evaluate(_context()))[0] is False


def test_data_freshness(store: WeatherStore) -> None:
    evaluate = data_freshness_evaluator(store, [LONDON], max_age_seconds=900)
    store.record_reading(Reading("London", 70.0, 72.0, 74.0, observed_at=NOW - timedelta(minutes=20)))
    tripped, reason = asyncio.run(evaluate(_context()))
    assert tripped is True
    assert "London" in reason

    store.record_reading(Reading("London", 71.0, 72.0, 74.0, observed_at=NOW - timedelta(minutes=2)))
    assert asyncio.run(evaluate(_context()))[0] is False


def test_balance_check() -> None:
    evaluate = balance_evaluator(min_balance_usd=10.0)
    assert asyncio.run(evaluate(_context(None)))[0] is True
    assert asyncio.run(evaluate(_context(9.99)))[0] is True
    assert asyncio.run(evaluate(_context(10.0)))[0] is False


def test_api_health_follows_circuit_and_checks_health_when_half_open() -> None:
    clock = [0.0]
    circuit = EndpointCircuit(
        CircuitConfig(failure_threshold=1, recovery_timeout_seconds=30.0, success_threshold=1),
        clock=lambda: clock[0],
    )
    checks: list[int] = []

    async def health_check() -> bool:
        checks.append(1)
        return True

    evaluate = api_health_evaluator(circuit, health_check)
    assert asyncio.run(evaluate(_context()))[0] is False
    assert checks == []

    circuit.record_failure("503")
    assert asyncio.run(evaluate(_context()))[0] is True
    assert checks == []

    clock[0] = 31.0
    assert asyncio.run(evaluate(_context()))[0] is False
    assert checks == [1]
    assert circuit.state is CircuitState.CLOSED
