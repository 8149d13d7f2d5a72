"""One jittered polling task per live SafeBet.

The pool is reconciled against the book after every promotion tick: tasks
whose bet disappeared are cancelled and new bets get a task. Workers never
mutate the book themselves; a favorable quote is handed to the execution
engine, which owns claim/complete/release.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import Counter
from enum import Enum
from typing import Awaitable, Callable

from weather_bot.breakers import BreakerRegistry
from weather_bot.circuit_breaker import EndpointCircuit
from weather_bot.config import ExecutionSettings
from weather_bot.exchanges.base import QuoteSource
from weather_bot.execution import ExecutionEngine
from weather_bot.models import ExecutionOutcome, ExecutionStatus, SafeBet
from weather_bot.safe_bets import SafeBetBook

LOGGER = logging.getLogger(__name__)


class TickOutcome(str, Enum):
    PAUSED = "paused"
    NO_QUOTE = "no_quote"
    UNFAVORABLE = "unfavorable"
    FETCH_ERROR = "fetch_error"
    EXECUTED = "executed"
    VETOED = "vetoed"
    FAILED = "failed"
    REJECTED = "rejected"


_EXECUTION_TO_TICK = {
    ExecutionStatus.EXECUTED: TickOutcome.EXECUTED,
    ExecutionStatus.VETOED: TickOutcome.VETOED,
    ExecutionStatus.FAILED: TickOutcome.FAILED,
    ExecutionStatus.REJECTED: TickOutcome.REJECTED,
}


def is_favorable(ask: float, recorded_price: float, slippage_tolerance: float) -> bool:
    return ask <= recorded_price * (1.0 + slippage_tolerance)


class BetSupervisor:
    def __init__(
        self,
        *,
        book: SafeBetBook,
        quotes: QuoteSource,
        execution: ExecutionEngine,
        registry: BreakerRegistry,
        settings: ExecutionSettings,
        api_circuit: EndpointCircuit | None = None,
        is_paused: Callable[[], bool] = lambda: False,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._book = book
        self._quotes = quotes
        self._execution = execution
        self._registry = registry
        self._settings = settings
        self._api_circuit = api_circuit
        self._is_paused = is_paused
        self._rng = rng or random.Random()
        self._sleep = sleep or asyncio.sleep
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._inflight: dict[str, asyncio.Task[ExecutionOutcome]] = {}
        self._accepting = True
        self.outcomes: Counter[str] = Counter()

    @property
    def accepting(self) -> bool:
        return self._accepting

    def active_keys(self) -> list[str]:
        return [key for key, task in self._tasks.items() if not task.done()]

    def next_interval(self) -> float:
        """Fresh uniform draw from the poll band on every call."""
        return self._rng.uniform(self._settings.poll_min_seconds, self._settings.poll_max_seconds)

    def reconcile(self) -> tuple[list[str], list[str]]:
        """Bring the task pool in line with the book. Returns (started, stopped)."""
        desired = set(self._book.keys()) if self._accepting else set()
        stopped: list[str] = []
        for key in list(self._tasks):
            task = self._tasks[key]
            if key not in desired or task.done():
                if not task.done():
                    task.cancel()
                    stopped.append(key)
                self._tasks.pop(key, None)

        started: list[str] = []
        if not self._accepting or self._registry.any_active():
            return started, stopped

        for key in self._book.keys():
            if key in self._tasks:
                continue
            self._tasks[key] = asyncio.create_task(self._poll(key), name=f"poll:{key}")
            started.append(key)

        if started or stopped:
            LOGGER.info("supervisor: started=%d stopped=%d live=%d", len(started), len(stopped), len(self._tasks))
        return started, stopped

    def discard(self, key: str) -> None:
        """Forget a bet's task; cancels it unless it is the caller or is waiting on its own execution."""
        task = self._tasks.pop(key, None)
        if task is None or task.done() or task is asyncio.current_task() or key in self._inflight:
            return
        task.cancel()

    async def shutdown(self) -> None:
        """Stop accepting work and wait for every worker to finish cancelling.

        Executions already past their claim are not cancelled: the order may
        be on its way to the venue, so they run to completion and record the
        position (or release the claim) before this returns.
        """
        self._accepting = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        inflight = list(self._inflight.values())
        if inflight:
            LOGGER.info("supervisor: waiting for %d in-flight executions", len(inflight))
            await asyncio.gather(*inflight, return_exceptions=True)
        LOGGER.info("supervisor: shut down %d polling tasks", len(tasks))

    def reopen(self) -> None:
        self._accepting = True

    def _forget_execution(self, key: str, task: asyncio.Task[ExecutionOutcome]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _poll(self, key: str) -> None:
        try:
            while True:
                bet = self._book.get(key)
                if bet is None:
                    LOGGER.debug("poll %s: bet gone, exiting", key)
                    return
                if self._registry.any_active():
                    LOGGER.debug("poll %s: breaker active, exiting", key)
                    return

                outcome = await self.tick(bet)
                self.outcomes[outcome.value] += 1
                if outcome is TickOutcome.EXECUTED:
                    return

                await self._sleep(self.next_interval())
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                self._tasks.pop(key, None)

    async def tick(self, bet: SafeBet) -> TickOutcome:
        """One fetch-and-maybe-execute step. Transient errors never escape."""
        if self._is_paused():
            return TickOutcome.PAUSED

        try:
            quote = await self._quotes.fetch_book(bet.token_id)
        except Exception as exc:
            if self._api_circuit is not None:
                self._api_circuit.record_failure(str(exc))
            LOGGER.warning("poll %s: quote fetch failed: %s", bet.key, exc)
            return TickOutcome.FETCH_ERROR

        if self._api_circuit is not None:
            self._api_circuit.record_success()

        if quote.best_ask is None:
            return TickOutcome.NO_QUOTE
        if not is_favorable(quote.best_ask, bet.price, self._settings.slippage_tolerance):
            LOGGER.debug("poll %s: ask %.4f above %.4f", bet.key, quote.best_ask, bet.price)
            return TickOutcome.UNFAVORABLE

        # Shielded so cancelling the worker cannot strand a submitted order
        # without its position.
        execution = asyncio.ensure_future(self._execution.execute(bet.key, quote))
        self._inflight[bet.key] = execution
        execution.add_done_callback(lambda done, key=bet.key: self._forget_execution(key, done))
        outcome = await asyncio.shield(execution)
        return _EXECUTION_TO_TICK[outcome.status]
