"""Coordinator: owns the schedule, the SafeBet book and the operator commands.

Each coordinator tick runs whatever housekeeping is due (day rotation,
market refresh, weather refresh), evaluates the breakers, rebuilds the
SafeBet set and reconciles the polling tasks against it.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from weather_bot.alerts import AlertDispatcher
from weather_bot.breakers import BreakerRegistry, build_registry
from weather_bot.circuit_breaker import CircuitConfig, EndpointCircuit
from weather_bot.config import AppSettings, TrackedLocation
from weather_bot.day_rotation import DayRotationSweeper
from weather_bot.exchanges.base import MarketDiscovery, OrderVenue, QuoteSource
from weather_bot.execution import ExecutionEngine
from weather_bot.models import BreakerState, Instrument, PortfolioSnapshot, Reading, Side, utc_now
from weather_bot.promotion import PromotionLoop, PromotionReport
from weather_bot.safe_bets import SafeBetBook
from weather_bot.store import WeatherStore
from weather_bot.supervisor import BetSupervisor
from weather_bot.weather import WeatherSource

LOGGER = logging.getLogger(__name__)

StatePublisher = Callable[[dict[str, Any]], Awaitable[None]]


class EngineState(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class WeatherBotEngine:
    def __init__(
        self,
        settings: AppSettings,
        *,
        store: WeatherStore,
        discovery: MarketDiscovery,
        quotes: QuoteSource,
        venue: OrderVenue,
        weather: WeatherSource | None,
        alerts: AlertDispatcher | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._discovery = discovery
        self._quotes = quotes
        self._venue = venue
        self._weather = weather
        self._alerts = alerts
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep or asyncio.sleep

        self._state = EngineState.RUNNING
        self._closing = False
        self._last_run: dict[str, float] = {}
        self._last_report: PromotionReport | None = None
        self._publisher: StatePublisher | None = None

        self._book = SafeBetBook()
        self._api_circuit = EndpointCircuit(
            CircuitConfig(
                name="quote_api",
                failure_threshold=settings.breakers.api_failure_threshold,
                recovery_timeout_seconds=settings.breakers.api_recovery_seconds,
                success_threshold=settings.breakers.api_success_threshold,
            ),
            clock=monotonic,
        )
        self._registry = build_registry(
            store,
            settings.breakers,
            locations=settings.weather.locations,
            api_circuit=self._api_circuit,
            health_check=quotes.health_check,
            clock=clock,
        )
        self._registry.set_transition_hook(self._on_breaker_transition)
        self._execution = ExecutionEngine(
            store=store,
            book=self._book,
            registry=self._registry,
            venue=venue,
            settings=settings.execution,
            alerts=alerts,
        )
        self._supervisor = BetSupervisor(
            book=self._book,
            quotes=quotes,
            execution=self._execution,
            registry=self._registry,
            settings=settings.execution,
            api_circuit=self._api_circuit,
            is_paused=lambda: self._state is EngineState.PAUSED,
            rng=rng,
            sleep=sleep,
        )
        self._execution.set_fill_hook(self._supervisor.discard)
        self._promotion = PromotionLoop(store, self._book, settings.scoring, settings.weather, clock=clock)
        self._sweeper = DayRotationSweeper(
            store, local_today=lambda location: settings.weather.local_time(location, self._clock()).date()
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def book(self) -> SafeBetBook:
        return self._book

    @property
    def registry(self) -> BreakerRegistry:
        return self._registry

    @property
    def supervisor(self) -> BetSupervisor:
        return self._supervisor

    @property
    def execution(self) -> ExecutionEngine:
        return self._execution

    @property
    def api_circuit(self) -> EndpointCircuit:
        return self._api_circuit

    def set_state_publisher(self, publisher: StatePublisher | None) -> None:
        self._publisher = publisher

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._store.record_audit(
            "BOT_STARTED",
            "engine started",
            {"live_mode": self._settings.live_mode, "venue": getattr(self._venue, "name", "")},
        )
        self._sweeper.sweep()
        self._last_run["day_rotation"] = self._monotonic()
        if self._alerts is not None:
            mode = "LIVE" if self._settings.live_mode else "PAPER"
            await self._alerts.send("Bot started", f"mode={mode}")

    async def run_forever(self, run_once: bool = False) -> None:
        await self.start()
        try:
            while not self._closing:
                loop_start = self._monotonic()
                try:
                    await self.tick()
                except Exception as exc:
                    LOGGER.exception("coordinator tick failed")
                    self._store.record_audit("TICK_ERROR", str(exc))
                    if self._alerts is not None:
                        self._alerts.post("Coordinator error", str(exc))

                if run_once:
                    return

                elapsed = self._monotonic() - loop_start
                await self._sleep(max(0.0, self._settings.schedule.loop_interval_seconds - elapsed))
        finally:
            await self.aclose()

    async def tick(self) -> PromotionReport | None:
        """One coordinator pass. Skipped entirely while paused or stopped."""
        if self._state is not EngineState.RUNNING:
            LOGGER.debug("coordinator tick skipped: %s", self._state.value)
            return None

        schedule = self._settings.schedule
        if self._due("day_rotation", schedule.day_rotation_seconds):
            self._sweeper.sweep()
        if self._due("weather", schedule.weather_refresh_seconds):
            await self.refresh_weather()
        if self._due("markets", schedule.market_refresh_seconds):
            await self.refresh_markets()

        balance = await self._venue.get_available_cash()
        evaluation = await self._registry.evaluate_all(balance=balance)
        if not evaluation.allowed:
            LOGGER.warning("trading gated: %s", evaluation.reason)

        report = self._promotion.run_once()
        self._last_report = report
        self._supervisor.reconcile()
        self._record_portfolio(balance)
        await self._publish()
        return report

    def _due(self, name: str, interval: float) -> bool:
        now = self._monotonic()
        last = self._last_run.get(name)
        if last is not None and now - last < interval:
            return False
        self._last_run[name] = now
        return True

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def refresh_weather(self) -> list[Reading]:
        if self._weather is None:
            LOGGER.warning("no weather source configured; readings will go stale")
            return []

        readings: list[Reading] = []
        for location in self._settings.weather.locations:
            try:
                fetched = await self._weather.fetch(location)
            except Exception as exc:
                LOGGER.warning("weather fetch for %s failed: %s", location.name, exc)
                self._store.record_audit("WEATHER_FETCH_ERROR", f"{location.name}: {exc}")
                continue
            reading = self._merge_daily_extreme(location, fetched)
            self._store.record_reading(reading)
            readings.append(reading)
        LOGGER.info("weather refresh: %d/%d locations", len(readings), len(self._settings.weather.locations))
        return readings

    def _merge_daily_extreme(self, location: TrackedLocation, reading: Reading) -> Reading:
        previous = self._store.latest_reading(location.name)
        if previous is None or not previous.valid:
            return reading
        if location.local_time(previous.observed_at).date() != location.local_time(reading.observed_at).date():
            return reading
        if previous.daily_extreme <= reading.daily_extreme:
            return reading
        return Reading(
            location=reading.location,
            current_value=reading.current_value,
            daily_extreme=previous.daily_extreme,
            forecast_extreme=reading.forecast_extreme,
            source=reading.source,
            valid=reading.valid,
            observed_at=reading.observed_at,
        )

    async def refresh_markets(self) -> int:
        try:
            discovered = await self._discovery.discover()
        except Exception as exc:
            LOGGER.warning("market discovery failed: %s", exc)
            self._store.record_audit("MARKET_SCAN_ERROR", str(exc))
            discovered = []

        for instrument in discovered:
            self._store.upsert_instrument(instrument)

        await self.refresh_quotes()
        await self.resolve_positions()
        return len(discovered)

    async def refresh_quotes(self) -> int:
        instruments = self._promotion.tradable_instruments(self._clock())
        refreshed = 0
        for instrument in instruments:
            try:
                yes_book = await self._quotes.fetch_book(instrument.yes_token_id)
                no_book = await self._quotes.fetch_book(instrument.no_token_id)
            except Exception as exc:
                self._api_circuit.record_failure(str(exc))
                LOGGER.warning("quote refresh for %s failed: %s", instrument.instrument_id, exc)
                continue
            self._api_circuit.record_success()
            self._store.update_quotes(
                instrument.instrument_id,
                yes_price=yes_book.best_ask,
                no_price=no_book.best_ask,
                spread=yes_book.spread,
                depth=None,
            )
            refreshed += 1
        return refreshed

    async def resolve_positions(self) -> int:
        """Settle open positions on instruments the venue has resolved."""
        resolved = 0
        outcomes: dict[str, Side | None] = {}
        for position in self._store.open_positions():
            if position.instrument_id not in outcomes:
                outcomes[position.instrument_id] = await self._settled_side(position.instrument_id)
            winner = outcomes[position.instrument_id]
            if winner is None:
                continue

            won = position.side is winner
            payout = position.size if won else 0.0
            pnl = payout - position.cost_basis
            self._store.resolve_position(position.position_id, pnl)
            self._venue.record_payout(payout)
            resolved += 1
            message = f"{position.instrument_id} {position.side.value.upper()} {'WON' if won else 'LOST'} pnl={pnl:+.2f}"
            self._store.record_audit("POSITION_RESOLVED", message, {"position_id": position.position_id, "pnl": pnl})
            if self._alerts is not None:
                self._alerts.post("Position resolved", message)
        return resolved

    async def _settled_side(self, instrument_id: str) -> Side | None:
        instrument: Instrument | None = self._store.get_instrument(instrument_id)
        if instrument is not None and instrument.resolved and instrument.outcome is not None:
            return instrument.outcome
        try:
            winner = await self._discovery.resolution(instrument_id)
        except Exception as exc:
            LOGGER.warning("resolution lookup for %s failed: %s", instrument_id, exc)
            return None
        if winner is not None:
            self._store.mark_resolved(instrument_id, winner)
        return winner

    def _record_portfolio(self, balance: float | None) -> PortfolioSnapshot:
        open_positions = self._store.open_positions()
        resolved = self._store.resolved_positions()
        wins = sum(1 for position in resolved if (position.pnl or 0.0) > 0)
        snapshot = PortfolioSnapshot(
            open_positions=len(open_positions),
            open_value=sum(position.cost_basis for position in open_positions),
            realized_pnl=sum(position.pnl or 0.0 for position in resolved),
            win_rate_pct=wins / len(resolved) * 100.0 if resolved else None,
            balance=balance,
            live_bets=len(self._book),
            taken_at=self._clock(),
        )
        self._store.record_portfolio_snapshot(snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    def pause(self) -> EngineState:
        if self._state is EngineState.RUNNING:
            self._state = EngineState.PAUSED
            self._store.record_audit("BOT_PAUSED", "operator pause")
            LOGGER.info("engine paused")
        return self._state

    async def resume(self) -> EngineState:
        if self._registry.state("manual_stop").active:
            self._registry.clear_manual("operator resume")
        self._book.reopen()
        self._supervisor.reopen()
        if self._state is not EngineState.RUNNING:
            self._store.record_audit("BOT_RESUMED", f"resumed from {self._state.value}")
            LOGGER.info("engine resumed from %s", self._state.value)
        self._state = EngineState.RUNNING
        return self._state

    async def stop(self, reason: str = "operator stop") -> EngineState:
        """Tear down every worker and the SafeBet set; only resume restarts them."""
        state = await self._teardown(reason)
        if self._alerts is not None:
            await self._alerts.send("Bot stopped", reason)
        return state

    async def emergency_stop(self, reason: str = "operator emergency stop") -> EngineState:
        self._registry.trip_manual(reason)
        state = await self._teardown(reason)
        if self._alerts is not None:
            await self._alerts.send("EMERGENCY STOP", reason)
        return state

    async def _teardown(self, reason: str) -> EngineState:
        self._state = EngineState.STOPPED
        self._book.close()
        await self._supervisor.shutdown()
        self._store.record_audit("BOT_STOPPED", reason)
        LOGGER.warning("engine stopped: %s", reason)
        return self._state

    async def handle_command(self, command: str) -> dict[str, Any]:
        command = command.strip().lower()
        if command == "pause":
            self.pause()
        elif command == "resume":
            await self.resume()
        elif command == "stop":
            await self.stop()
        elif command == "emergency_stop":
            await self.emergency_stop()
        elif command != "status":
            return {"ok": False, "error": f"unknown command: {command}"}
        return {"ok": True, "status": self.status()}

    def status(self) -> dict[str, Any]:
        report = self._last_report
        circuit = self._api_circuit.snapshot()
        return {
            "state": self._state.value,
            "book_closed": self._book.closed,
            "live_bets": [
                {"key": bet.key, "score": bet.score, "price": bet.price, "expected_profit_pct": bet.expected_profit_pct}
                for bet in self._book.snapshot()
            ],
            "polling": self._supervisor.active_keys(),
            "breakers": [
                {"name": state.name, "active": state.active, "reason": state.reason}
                for state in self._registry.states()
            ],
            "api_circuit": {
                "state": circuit.state.value,
                "consecutive_failures": circuit.consecutive_failures,
                "trial_successes": circuit.trial_successes,
                "total_trips": circuit.total_trips,
                "last_error": circuit.last_error,
            },
            "tick_outcomes": dict(self._supervisor.outcomes),
            "last_promotion": None
            if report is None
            else {"promoted": report.promoted, "skipped": report.skipped, "failed": report.failed},
        }

    async def _publish(self) -> None:
        if self._publisher is None:
            return
        try:
            await self._publisher({"type": "status", **self.status()})
        except Exception as exc:
            LOGGER.debug("state publish failed: %s", exc)

    def _on_breaker_transition(self, state: BreakerState) -> None:
        if self._alerts is None:
            return
        if state.active:
            self._alerts.post(f"Breaker tripped: {state.name}", state.reason)
        else:
            self._alerts.post(f"Breaker cleared: {state.name}", state.reason)

    async def aclose(self) -> None:
        self._closing = True
        await self._supervisor.shutdown()
        closed: set[int] = set()
        for resource in (self._discovery, self._quotes, self._venue, self._weather, self._alerts):
            if resource is None or id(resource) in closed:
                continue
            closed.add(id(resource))
            try:
                await resource.aclose()
            except Exception as exc:
                LOGGER.debug("close of %s failed: %s", type(resource).__name__, exc)

