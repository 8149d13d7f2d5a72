from __future__ import annotations

import logging
import uuid

from weather_bot.models import OrderRequest, OrderResult

from .base import OrderVenue

LOGGER = logging.getLogger(__name__)


class PaperVenue(OrderVenue):
    """Dry-run venue: every affordable order fills at its limit price."""

    name = "paper"

    def __init__(self, bankroll: float) -> None:
        self._cash = float(bankroll)
        self.orders: list[OrderRequest] = []

    @property
    def cash(self) -> float:
        return self._cash

    async def submit(self, order: OrderRequest) -> OrderResult:
        if order.cost > self._cash + 1e-9:
            return OrderResult(
                success=False,
                order_id=None,
                error=f"insufficient paper balance: need {order.cost:.2f}, have {self._cash:.2f}",
            )
        self._cash -= order.cost
        self.orders.append(order)
        order_id = f"paper-{uuid.uuid4().hex[:12]}"
        LOGGER.info(
            "paper fill %s: %s %s size=%s @ %s cost=%.2f",
            order_id,
            order.instrument_id,
            order.side.value,
            order.size,
            order.price,
            order.cost,
        )
        return OrderResult(
            success=True,
            order_id=order_id,
            filled_size=order.size,
            average_price=order.price,
            raw={"paper": True},
        )

    async def get_available_cash(self) -> float | None:
        return self._cash

    def record_payout(self, amount: float) -> None:
        self._cash += amount
