from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Side(str, Enum):
    YES = "yes"
    NO = "no"

    @property
    def opposite(self) -> "Side":
        return Side.NO if self is Side.YES else Side.YES


class Recommendation(str, Enum):
    BUY_YES = "buy_yes"
    BUY_NO = "buy_no"
    NO_ACTION = "no_action"

    @property
    def side(self) -> Side | None:
        if self is Recommendation.BUY_YES:
            return Side.YES
        if self is Recommendation.BUY_NO:
            return Side.NO
        return None


class PositionStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class AllocationPolicy(str, Enum):
    EQUAL_SPLIT = "equal_split"
    FIXED_FRACTION = "fixed_fraction"


class ExecutionStatus(str, Enum):
    EXECUTED = "executed"
    VETOED = "vetoed"
    FAILED = "failed"
    REJECTED = "rejected"


class ItemOutcome(str, Enum):
    PROMOTED = "promoted"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class Instrument:
    """A binary weather threshold market on the venue."""

    instrument_id: str
    question: str
    location: str
    threshold: float
    settlement_date: date
    yes_token_id: str
    no_token_id: str
    resolution_source: str = ""
    yes_price: float | None = None
    no_price: float | None = None
    spread: float | None = None
    depth: float | None = None
    active: bool = True
    resolved: bool = False
    outcome: Side | None = None
    updated_at: datetime = field(default_factory=utc_now)

    def token_for(self, side: Side) -> str:
        return self.yes_token_id if side is Side.YES else self.no_token_id

    def price_for(self, side: Side) -> float | None:
        return self.yes_price if side is Side.YES else self.no_price


@dataclass(frozen=True)
class Reading:
    location: str
    current_value: float
    daily_extreme: float
    forecast_extreme: float
    source: str = ""
    valid: bool = True
    observed_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ScoreInputs:
    current_value: float | None
    daily_extreme: float | None
    forecast_extreme: float | None
    threshold: float
    yes_price: float | None
    no_price: float | None
    spread: float | None
    depth: float | None
    local_hour: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_value": self.current_value,
            "daily_extreme": self.daily_extreme,
            "forecast_extreme": self.forecast_extreme,
            "threshold": self.threshold,
            "yes_price": self.yes_price,
            "no_price": self.no_price,
            "spread": self.spread,
            "depth": self.depth,
            "local_hour": self.local_hour,
        }


@dataclass(frozen=True)
class CertaintyScore:
    instrument_id: str
    outcome_certainty: int
    market_signal: int
    data_stability: int
    aggregate: int
    recommendation: Recommendation
    expected_profit_pct: float | None
    inputs: ScoreInputs
    reason: str = ""
    scored_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class SafeBet:
    """An instrument+side combination that currently qualifies for execution."""

    instrument_id: str
    side: Side
    token_id: str
    price: float
    score: int
    expected_profit_pct: float
    question: str = ""
    location: str = ""
    inputs: Optional[ScoreInputs] = None
    last_checked: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> str:
        return bet_key(self.instrument_id, self.side)


def bet_key(instrument_id: str, side: Side) -> str:
    return f"{instrument_id}:{side.value}"


@dataclass(frozen=True)
class Position:
    position_id: str
    instrument_id: str
    side: Side
    entry_price: float
    size: float
    cost_basis: float
    status: PositionStatus = PositionStatus.OPEN
    order_id: str | None = None
    pnl: float | None = None
    opened_at: datetime = field(default_factory=utc_now)
    resolved_at: datetime | None = None

    @property
    def key(self) -> str:
        return bet_key(self.instrument_id, self.side)


@dataclass(frozen=True)
class BreakerState:
    name: str
    active: bool = False
    reason: str = ""
    triggered_at: datetime | None = None
    last_checked: datetime | None = None


@dataclass(frozen=True)
class BookQuote:
    token_id: str
    best_ask: float | None
    ask_size: float = 0.0
    best_bid: float | None = None
    bid_size: float = 0.0
    tick_size: float | None = None
    min_order_size: float | None = None
    fetched_at: datetime = field(default_factory=utc_now)

    @property
    def spread(self) -> float | None:
        if self.best_ask is None or self.best_bid is None:
            return None
        return max(0.0, self.best_ask - self.best_bid)


@dataclass(frozen=True)
class OrderRequest:
    instrument_id: str
    token_id: str
    side: Side
    price: float
    size: float
    cost: float


@dataclass(frozen=True)
class OrderResult:
    success: bool
    order_id: str | None
    filled_size: float = 0.0
    average_price: float | None = None
    error: str | None = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutionOutcome:
    status: ExecutionStatus
    bet_key: str
    reason: str = ""
    allocation: float | None = None
    order: OrderRequest | None = None
    result: OrderResult | None = None
    position: Position | None = None


@dataclass(frozen=True)
class PortfolioSnapshot:
    open_positions: int
    open_value: float
    realized_pnl: float
    win_rate_pct: float | None
    balance: float | None
    live_bets: int = 0
    taken_at: datetime = field(default_factory=utc_now)
