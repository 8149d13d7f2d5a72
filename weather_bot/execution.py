"""Order execution for a single SafeBet.

A bet is claimed in the book before anything else happens, so two polling
ticks racing on the same bet produce at most one order: the loser of the
race is rejected. Breakers are re-evaluated right before submission and
nothing awaits between that evaluation and the submit call.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Callable

from weather_bot.alerts import AlertDispatcher
from weather_bot.breakers import BreakerRegistry
from weather_bot.config import ExecutionSettings
from weather_bot.errors import DuplicatePositionError, OrderTooSmallError, UnknownSafeBetError
from weather_bot.exchanges.base import OrderVenue
from weather_bot.models import (
    AllocationPolicy,
    BookQuote,
    ExecutionOutcome,
    ExecutionStatus,
    OrderRequest,
    OrderResult,
    Position,
    SafeBet,
)
from weather_bot.price_normalizer import PrecisionContract, normalize
from weather_bot.safe_bets import SafeBetBook
from weather_bot.store import WeatherStore

LOGGER = logging.getLogger(__name__)


def allocate(
    capital: float,
    live_bets: int,
    policy: AllocationPolicy,
    capital_fraction: float = 1.0,
) -> float:
    """Capital earmarked for one bet given how many bets are live right now."""
    deployable = max(0.0, capital) * max(0.0, capital_fraction)
    if policy is AllocationPolicy.FIXED_FRACTION:
        return deployable
    return deployable / max(1, live_bets)


class ExecutionEngine:
    def __init__(
        self,
        *,
        store: WeatherStore,
        book: SafeBetBook,
        registry: BreakerRegistry,
        venue: OrderVenue,
        settings: ExecutionSettings,
        alerts: AlertDispatcher | None = None,
        on_filled: Callable[[str], None] | None = None,
    ) -> None:
        self._store = store
        self._book = book
        self._registry = registry
        self._venue = venue
        self._settings = settings
        self._alerts = alerts
        self._on_filled = on_filled

    def set_fill_hook(self, hook: Callable[[str], None] | None) -> None:
        self._on_filled = hook

    async def execute(self, key: str, quote: BookQuote) -> ExecutionOutcome:
        try:
            bet = self._book.claim(key)
        except UnknownSafeBetError as exc:
            LOGGER.warning("execution rejected: %s", exc)
            self._store.record_audit("EXECUTION_REJECTED", str(exc), {"bet_key": key})
            return ExecutionOutcome(ExecutionStatus.REJECTED, key, str(exc))

        try:
            return await self._execute_claimed(bet, quote)
        except Exception as exc:
            self._book.release(key)
            LOGGER.exception("execution of %s failed unexpectedly", key)
            return self._finish(bet, ExecutionStatus.FAILED, f"unexpected error: {exc}", quote)

    async def _execute_claimed(self, bet: SafeBet, quote: BookQuote) -> ExecutionOutcome:
        price = quote.best_ask
        if price is None or not 0.0 < price < 1.0:
            self._book.release(bet.key)
            return self._finish(bet, ExecutionStatus.FAILED, f"invalid price {price}", quote)

        balance = await self._venue.get_available_cash()
        evaluation = await self._registry.evaluate_all(balance=balance)
        if not evaluation.allowed:
            self._book.release(bet.key)
            outcome = self._finish(bet, ExecutionStatus.VETOED, evaluation.reason, quote, balance=balance)
            self._alert("Execution vetoed", f"{bet.key}: {evaluation.reason}")
            return outcome

        live_bets = len(self._book)
        allocation = allocate(
            balance or 0.0,
            live_bets,
            self._settings.allocation_policy,
            self._settings.capital_fraction,
        )
        contract = PrecisionContract.build(
            quote.tick_size or self._settings.default_tick_size,
            size_decimals=self._settings.size_decimals,
            cost_decimals=self._settings.cost_decimals,
            min_order_size=quote.min_order_size,
        )
        try:
            normalized = normalize(Decimal(str(allocation)) / Decimal(str(price)), price, contract)
        except OrderTooSmallError as exc:
            self._book.release(bet.key)
            return self._finish(
                bet, ExecutionStatus.FAILED, str(exc), quote,
                allocation=allocation, balance=balance, live_bets=live_bets,
            )

        order = OrderRequest(
            instrument_id=bet.instrument_id,
            token_id=bet.token_id,
            side=bet.side,
            price=float(normalized.price),
            size=float(normalized.size),
            cost=float(normalized.cost),
        )
        result = await self._venue.submit(order)

        if not result.success:
            self._book.release(bet.key)
            return self._finish(
                bet, ExecutionStatus.FAILED, result.error or "order rejected", quote,
                allocation=allocation, order=order, result=result, balance=balance, live_bets=live_bets,
            )

        try:
            position = self._store.create_position(
                bet.instrument_id,
                bet.side,
                entry_price=order.price,
                size=result.filled_size or order.size,
                cost_basis=order.cost,
                order_id=result.order_id,
            )
        except DuplicatePositionError as exc:
            self._book.complete(bet.key)
            self._notify_filled(bet.key)
            return self._finish(
                bet, ExecutionStatus.REJECTED, str(exc), quote,
                allocation=allocation, order=order, result=result, balance=balance, live_bets=live_bets,
            )

        self._book.complete(bet.key)
        self._notify_filled(bet.key)
        outcome = self._finish(
            bet, ExecutionStatus.EXECUTED, f"filled at {order.price}", quote,
            allocation=allocation, order=order, result=result, balance=balance, live_bets=live_bets,
            position=position,
        )
        self._alert(
            "Position opened",
            f"{bet.question or bet.instrument_id} {bet.side.value.upper()} "
            f"size={order.size} @ {order.price} cost={order.cost:.2f} (score {bet.score})",
        )
        return outcome

    def _notify_filled(self, key: str) -> None:
        if self._on_filled is not None:
            self._on_filled(key)

    def _alert(self, title: str, body: str) -> None:
        if self._alerts is not None:
            self._alerts.post(title, body)

    def _finish(
        self,
        bet: SafeBet,
        status: ExecutionStatus,
        reason: str,
        quote: BookQuote,
        *,
        allocation: float | None = None,
        order: OrderRequest | None = None,
        result: OrderResult | None = None,
        balance: float | None = None,
        live_bets: int | None = None,
        position: Position | None = None,
    ) -> ExecutionOutcome:
        data: dict[str, Any] = {
            "score": bet.score,
            "expected_profit_pct": bet.expected_profit_pct,
            "recorded_price": bet.price,
            "quote_ask": quote.best_ask,
            "quote_ask_size": quote.ask_size,
            "balance": balance,
            "live_bets": live_bets,
        }
        if bet.inputs is not None:
            data["inputs"] = bet.inputs.to_dict()
        if result is not None:
            data["venue_response"] = result.raw
            if result.error:
                data["venue_error"] = result.error

        self._store.record_decision(
            bet_key=bet.key,
            instrument_id=bet.instrument_id,
            side=bet.side,
            status=status.value,
            reason=reason,
            allocation=allocation,
            price=order.price if order else None,
            size=order.size if order else None,
            cost=order.cost if order else None,
            order_id=result.order_id if result else None,
            data=data,
        )

        log = LOGGER.info if status is ExecutionStatus.EXECUTED else LOGGER.warning
        log("execution %s %s: %s", status.value, bet.key, reason)
        return ExecutionOutcome(
            status=status,
            bet_key=bet.key,
            reason=reason,
            allocation=allocation,
            order=order,
            result=result,
            position=position,
        )
