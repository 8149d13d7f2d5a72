"""Venue-legal fixed-point order parameters.

The venue accepts prices on a tick grid, share sizes with a limited number
of decimals and a committed cost (maker amount) with even fewer decimals.
Everything here truncates toward zero so the committed cost never exceeds
what the caller authorized.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from math import gcd

from weather_bot.errors import OrderTooSmallError


def _to_decimal(value: float | str | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"not a number: {value!r}") from exc


def _quantum(decimals: int) -> Decimal:
    return Decimal(1).scaleb(-decimals)


def truncate(value: Decimal, decimals: int) -> Decimal:
    return value.quantize(_quantum(decimals), rounding=ROUND_DOWN)


def decimals_of(value: Decimal) -> int:
    exponent = value.normalize().as_tuple().exponent
    return max(0, -int(exponent))


@dataclass(frozen=True)
class PrecisionContract:
    tick_size: Decimal = Decimal("0.01")
    size_decimals: int = 5
    cost_decimals: int = 2
    price_decimals: int | None = None
    min_order_size: Decimal = Decimal("0")

    @classmethod
    def build(
        cls,
        tick_size: float | str | Decimal,
        *,
        size_decimals: int = 5,
        cost_decimals: int = 2,
        min_order_size: float | str | Decimal | None = None,
    ) -> "PrecisionContract":
        return cls(
            tick_size=_to_decimal(tick_size),
            size_decimals=size_decimals,
            cost_decimals=cost_decimals,
            min_order_size=_to_decimal(min_order_size) if min_order_size is not None else Decimal("0"),
        )

    @property
    def effective_price_decimals(self) -> int:
        if self.price_decimals is not None:
            return self.price_decimals
        return decimals_of(self.tick_size)


@dataclass(frozen=True)
class NormalizedOrder:
    price: Decimal
    size: Decimal
    cost: Decimal


def snap_price(price: float | str | Decimal, contract: PrecisionContract) -> Decimal:
    """Snap down onto the tick grid and clamp into [tick, 1 - tick]."""
    value = _to_decimal(price)
    tick = contract.tick_size
    if tick <= 0 or tick >= 1:
        raise ValueError(f"invalid tick size: {tick}")
    if value <= 0 or value >= 1:
        raise ValueError(f"price must be inside (0, 1): {value}")

    snapped = (value / tick).to_integral_value(rounding=ROUND_DOWN) * tick
    snapped = max(tick, min(Decimal(1) - tick, snapped))
    return truncate(snapped, contract.effective_price_decimals)


def _cost_lattice_step(price: Decimal, contract: PrecisionContract) -> int:
    """Smallest size increment (in size quanta) whose cost lands on the cost grid."""
    price_decimals = contract.effective_price_decimals
    price_units = int(price.scaleb(price_decimals))
    shift = contract.size_decimals + price_decimals - contract.cost_decimals
    if shift <= 0:
        return 1
    modulus = 10 ** shift
    return modulus // gcd(price_units, modulus)


def normalize(
    size: float | str | Decimal,
    price: float | str | Decimal,
    contract: PrecisionContract,
) -> NormalizedOrder:
    """Produce a venue-legal (price, size, cost) triple.

    1. price snapped down to the tick grid and clamped into the legal band
    2. size truncated to the size precision
    3. cost = size * price truncated to the cost precision
    4. size back-solved from that cost and truncated again
    5. size trimmed further, if needed, so size * price sits on the cost grid

    Raises ``OrderTooSmallError`` when nothing tradable remains.
    """
    raw_size = _to_decimal(size)
    if raw_size <= 0:
        raise OrderTooSmallError(f"size must be positive: {raw_size}")

    snapped = snap_price(price, contract)
    sized = truncate(raw_size, contract.size_decimals)
    cost = truncate(sized * snapped, contract.cost_decimals)
    back_solved = truncate(cost / snapped, contract.size_decimals)

    step = _cost_lattice_step(snapped, contract)
    quanta = int(back_solved.scaleb(contract.size_decimals))
    quanta -= quanta % step
    final_size = Decimal(quanta).scaleb(-contract.size_decimals)
    final_size = truncate(final_size, contract.size_decimals)
    final_cost = final_size * snapped

    if final_size <= 0 or final_cost <= 0:
        raise OrderTooSmallError(
            f"order rounds to nothing at price {snapped} (size {raw_size})"
        )
    if final_size < contract.min_order_size:
        raise OrderTooSmallError(
            f"size {final_size} below venue minimum {contract.min_order_size}"
        )

    return NormalizedOrder(
        price=snapped,
        size=final_size,
        cost=truncate(final_cost, contract.cost_decimals),
    )
