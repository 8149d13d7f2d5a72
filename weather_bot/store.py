"""Persistent SQLite store for instruments, readings, scores and positions.

Scores, audit entries and trade decisions are append-only. Breaker rows
are upserted by name. At most one OPEN position per instrument+side is
enforced by a partial unique index.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from weather_bot.errors import DuplicatePositionError
from weather_bot.models import (
    BreakerState,
    CertaintyScore,
    Instrument,
    PortfolioSnapshot,
    Position,
    PositionStatus,
    Reading,
    Side,
    utc_now,
)

LOGGER = logging.getLogger(__name__)

DB_FILENAME = "weather_bot.db"

SCHEMA_VERSION = 1

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS instruments (
    instrument_id     TEXT PRIMARY KEY,
    question          TEXT NOT NULL,
    location          TEXT NOT NULL,
    threshold         REAL NOT NULL,
    settlement_date   TEXT NOT NULL,
    resolution_source TEXT NOT NULL DEFAULT '',
    yes_token_id      TEXT NOT NULL,
    no_token_id       TEXT NOT NULL,
    yes_price         REAL,
    no_price          REAL,
    spread            REAL,
    depth             REAL,
    active            INTEGER NOT NULL DEFAULT 1,
    resolved          INTEGER NOT NULL DEFAULT 0,
    retired           INTEGER NOT NULL DEFAULT 0,
    outcome           TEXT,
    updated_at        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS readings (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    location         TEXT NOT NULL,
    observed_at      TEXT NOT NULL,
    current_value    REAL NOT NULL,
    daily_extreme    REAL NOT NULL,
    forecast_extreme REAL NOT NULL,
    source           TEXT NOT NULL DEFAULT '',
    valid            INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS certainty_scores (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    instrument_id       TEXT NOT NULL,
    scored_at           TEXT NOT NULL,
    outcome_certainty   INTEGER NOT NULL,
    market_signal       INTEGER NOT NULL,
    data_stability      INTEGER NOT NULL,
    aggregate           INTEGER NOT NULL,
    recommendation      TEXT NOT NULL,
    expected_profit_pct REAL,
    reason              TEXT NOT NULL DEFAULT '',
    inputs_json         TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS positions (
    position_id   TEXT PRIMARY KEY,
    instrument_id TEXT NOT NULL,
    side          TEXT NOT NULL,
    entry_price   REAL NOT NULL,
    size          REAL NOT NULL,
    cost_basis    REAL NOT NULL,
    status        TEXT NOT NULL DEFAULT 'open',
    order_id      TEXT,
    pnl           REAL,
    opened_at     TEXT NOT NULL,
    resolved_at   TEXT
);

CREATE TABLE IF NOT EXISTS breakers (
    name         TEXT PRIMARY KEY,
    active       INTEGER NOT NULL DEFAULT 0,
    reason       TEXT NOT NULL DEFAULT '',
    triggered_at TEXT,
    last_checked TEXT
);

CREATE TABLE IF NOT EXISTS audit_log (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    ts        TEXT NOT NULL,
    action    TEXT NOT NULL,
    message   TEXT NOT NULL,
    data_json TEXT
);

CREATE TABLE IF NOT EXISTS trade_decisions (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    ts            TEXT NOT NULL,
    bet_key       TEXT NOT NULL,
    instrument_id TEXT NOT NULL,
    side          TEXT NOT NULL,
    status        TEXT NOT NULL,
    reason        TEXT NOT NULL DEFAULT '',
    allocation    REAL,
    price         REAL,
    size          REAL,
    cost          REAL,
    order_id      TEXT,
    data_json     TEXT
);

CREATE TABLE IF NOT EXISTS portfolio_snapshots (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    taken_at       TEXT NOT NULL,
    open_positions INTEGER NOT NULL,
    open_value     REAL NOT NULL,
    realized_pnl   REAL NOT NULL,
    win_rate_pct   REAL,
    balance        REAL,
    live_bets      INTEGER NOT NULL DEFAULT 0
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_positions_one_open
    ON positions(instrument_id, side) WHERE status = 'open';
CREATE INDEX IF NOT EXISTS idx_positions_status ON positions(status);
CREATE INDEX IF NOT EXISTS idx_instruments_active ON instruments(active, resolved, settlement_date);
CREATE INDEX IF NOT EXISTS idx_readings_location ON readings(location, observed_at);
CREATE INDEX IF NOT EXISTS idx_scores_instrument ON certainty_scores(instrument_id);
"""


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class StoredDecision:
    bet_key: str
    status: str
    reason: str
    allocation: float | None
    price: float | None
    size: float | None
    cost: float | None
    order_id: str | None
    data: dict[str, Any]


class WeatherStore:
    """SQLite-backed store shared by the coordinator and the execution path."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        if db_path is None:
            db_path = Path("data") / DB_FILENAME
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._open()

    def _open(self) -> None:
        self._conn = sqlite3.connect(
            str(self._db_path),
            isolation_level="DEFERRED",
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._apply_schema()

    def _apply_schema(self) -> None:
        assert self._conn is not None
        cur = self._conn.cursor()
        cur.executescript(_SCHEMA_SQL)
        row = cur.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            cur.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        self._conn.commit()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Cursor]:
        assert self._conn is not None
        cur = self._conn.cursor()
        try:
            yield cur
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Instruments
    # ------------------------------------------------------------------

    def upsert_instrument(self, instrument: Instrument) -> None:
        """Insert or refresh a discovered instrument.

        Quotes already on file are kept when the discovered record carries
        none. A resolved or retired instrument stays inactive.
        """
        with self._tx() as cur:
            cur.execute(
                """INSERT INTO instruments
                   (instrument_id, question, location, threshold, settlement_date,
                    resolution_source, yes_token_id, no_token_id, yes_price, no_price,
                    spread, depth, active, resolved, outcome, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(instrument_id) DO UPDATE SET
                       question = excluded.question,
                       location = excluded.location,
                       threshold = excluded.threshold,
                       settlement_date = excluded.settlement_date,
                       resolution_source = excluded.resolution_source,
                       yes_token_id = excluded.yes_token_id,
                       no_token_id = excluded.no_token_id,
                       yes_price = COALESCE(excluded.yes_price, instruments.yes_price),
                       no_price = COALESCE(excluded.no_price, instruments.no_price),
                       spread = COALESCE(excluded.spread, instruments.spread),
                       depth = COALESCE(excluded.depth, instruments.depth),
                       active = CASE WHEN instruments.resolved = 1 OR instruments.retired = 1 THEN 0 ELSE excluded.active END,
                       resolved = MAX(instruments.resolved, excluded.resolved),
                       outcome = COALESCE(instruments.outcome, excluded.outcome),
                       updated_at = excluded.updated_at""",
                (
                    instrument.instrument_id,
                    instrument.question,
                    instrument.location,
                    instrument.threshold,
                    instrument.settlement_date.isoformat(),
                    instrument.resolution_source,
                    instrument.yes_token_id,
                    instrument.no_token_id,
                    instrument.yes_price,
                    instrument.no_price,
                    instrument.spread,
                    instrument.depth,
                    int(instrument.active),
                    int(instrument.resolved),
                    instrument.outcome.value if instrument.outcome else None,
                    _ts(instrument.updated_at),
                ),
            )

    def update_quotes(
        self,
        instrument_id: str,
        *,
        yes_price: float | None,
        no_price: float | None,
        spread: float | None,
        depth: float | None,
    ) -> None:
        with self._tx() as cur:
            cur.execute(
                """UPDATE instruments
                   SET yes_price = ?, no_price = ?, spread = ?, depth = COALESCE(?, depth), updated_at = ?
                   WHERE instrument_id = ?""",
                (yes_price, no_price, spread, depth, _ts(utc_now()), instrument_id),
            )

    def get_instrument(self, instrument_id: str) -> Instrument | None:
        assert self._conn is not None
        row = self._conn.execute(
            "SELECT * FROM instruments WHERE instrument_id = ?", (instrument_id,)
        ).fetchone()
        return _row_to_instrument(row) if row else None

    def active_instruments(self) -> list[Instrument]:
        assert self._conn is not None
        rows = self._conn.execute(
            "SELECT * FROM instruments WHERE active = 1 AND resolved = 0 ORDER BY settlement_date, instrument_id"
        ).fetchall()
        return [_row_to_instrument(row) for row in rows]

    def active_instruments_between(self, start: date, end: date) -> list[Instrument]:
        assert self._conn is not None
        rows = self._conn.execute(
            """SELECT * FROM instruments
               WHERE active = 1 AND resolved = 0
                 AND settlement_date >= ? AND settlement_date <= ?
               ORDER BY settlement_date, instrument_id""",
            (start.isoformat(), end.isoformat()),
        ).fetchall()
        return [_row_to_instrument(row) for row in rows]

    def retire(self, instrument_ids: Iterable[str]) -> list[str]:
        """Deactivate instruments whose settlement day has passed.

        Retirement is permanent: rediscovery of the same market does not
        bring it back. Returns the ids that were still active.
        """
        ids = list(instrument_ids)
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self._tx() as cur:
            rows = cur.execute(
                f"SELECT instrument_id FROM instruments WHERE active = 1 AND instrument_id IN ({placeholders})",
                ids,
            ).fetchall()
            retired = [row["instrument_id"] for row in rows]
            cur.execute(
                f"UPDATE instruments SET active = 0, retired = 1, updated_at = ? WHERE instrument_id IN ({placeholders})",
                (_ts(utc_now()), *ids),
            )
        return retired

    def mark_resolved(self, instrument_id: str, outcome: Side) -> None:
        with self._tx() as cur:
            cur.execute(
                """UPDATE instruments SET resolved = 1, active = 0, outcome = ?, updated_at = ?
                   WHERE instrument_id = ?""",
                (outcome.value, _ts(utc_now()), instrument_id),
            )

    # ------------------------------------------------------------------
    # Readings and scores
    # ------------------------------------------------------------------

    def record_reading(self, reading: Reading) -> None:
        with self._tx() as cur:
            cur.execute(
                """INSERT INTO readings
                   (location, observed_at, current_value, daily_extreme, forecast_extreme, source, valid)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    reading.location,
                    _ts(reading.observed_at),
                    reading.current_value,
                    reading.daily_extreme,
                    reading.forecast_extreme,
                    reading.source,
                    int(reading.valid),
                ),
            )

    def latest_reading(self, location: str) -> Reading | None:
        assert self._conn is not None
        row = self._conn.execute(
            """SELECT * FROM readings WHERE lower(location) = lower(?)
               ORDER BY observed_at DESC, id DESC LIMIT 1""",
            (location,),
        ).fetchone()
        if row is None:
            return None
        return Reading(
            location=row["location"],
            current_value=row["current_value"],
            daily_extreme=row["daily_extreme"],
            forecast_extreme=row["forecast_extreme"],
            source=row["source"],
            valid=bool(row["valid"]),
            observed_at=_parse_ts(row["observed_at"]) or utc_now(),
        )

    def record_score(self, score: CertaintyScore) -> None:
        with self._tx() as cur:
            cur.execute(
                """INSERT INTO certainty_scores
                   (instrument_id, scored_at, outcome_certainty, market_signal, data_stability,
                    aggregate, recommendation, expected_profit_pct, reason, inputs_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    score.instrument_id,
                    _ts(score.scored_at),
                    score.outcome_certainty,
                    score.market_signal,
                    score.data_stability,
                    score.aggregate,
                    score.recommendation.value,
                    score.expected_profit_pct,
                    score.reason,
                    json.dumps(score.inputs.to_dict()),
                ),
            )

    def score_count(self, instrument_id: str | None = None) -> int:
        assert self._conn is not None
        if instrument_id is None:
            row = self._conn.execute("SELECT COUNT(*) FROM certainty_scores").fetchone()
        else:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM certainty_scores WHERE instrument_id = ?", (instrument_id,)
            ).fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def create_position(
        self,
        instrument_id: str,
        side: Side,
        *,
        entry_price: float,
        size: float,
        cost_basis: float,
        order_id: str | None = None,
    ) -> Position:
        position = Position(
            position_id=uuid.uuid4().hex,
            instrument_id=instrument_id,
            side=side,
            entry_price=entry_price,
            size=size,
            cost_basis=cost_basis,
            order_id=order_id,
        )
        try:
            with self._tx() as cur:
                cur.execute(
                    """INSERT INTO positions
                       (position_id, instrument_id, side, entry_price, size, cost_basis,
                        status, order_id, opened_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        position.position_id,
                        instrument_id,
                        side.value,
                        entry_price,
                        size,
                        cost_basis,
                        PositionStatus.OPEN.value,
                        order_id,
                        _ts(position.opened_at),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicatePositionError(instrument_id, side.value) from exc
        LOGGER.debug("Opened position %s on %s:%s", position.position_id, instrument_id, side.value)
        return position

    def has_open_position(self, instrument_id: str, side: Side) -> bool:
        assert self._conn is not None
        row = self._conn.execute(
            "SELECT 1 FROM positions WHERE instrument_id = ? AND side = ? AND status = ? LIMIT 1",
            (instrument_id, side.value, PositionStatus.OPEN.value),
        ).fetchone()
        return row is not None

    def open_positions(self) -> list[Position]:
        return self._positions_where("status = ?", (PositionStatus.OPEN.value,), "opened_at")

    def open_position_keys(self) -> set[str]:
        return {position.key for position in self.open_positions()}

    def resolved_positions(self, limit: int | None = None) -> list[Position]:
        """Most recently resolved first."""
        positions = self._positions_where(
            "status = ?", (PositionStatus.RESOLVED.value,), "resolved_at DESC"
        )
        return positions[:limit] if limit is not None else positions

    def open_positions_for(self, instrument_id: str) -> list[Position]:
        return self._positions_where(
            "status = ? AND instrument_id = ?",
            (PositionStatus.OPEN.value, instrument_id),
            "opened_at",
        )

    def resolve_position(self, position_id: str, pnl: float) -> None:
        with self._tx() as cur:
            cur.execute(
                """UPDATE positions SET status = ?, pnl = ?, resolved_at = ?
                   WHERE position_id = ? AND status = ?""",
                (
                    PositionStatus.RESOLVED.value,
                    pnl,
                    _ts(utc_now()),
                    position_id,
                    PositionStatus.OPEN.value,
                ),
            )

    def realized_pnl(self) -> float:
        assert self._conn is not None
        row = self._conn.execute(
            "SELECT COALESCE(SUM(pnl), 0) FROM positions WHERE status = ?",
            (PositionStatus.RESOLVED.value,),
        ).fetchone()
        return float(row[0])

    def _positions_where(self, clause: str, params: tuple[Any, ...], order: str) -> list[Position]:
        assert self._conn is not None
        rows = self._conn.execute(
            f"SELECT * FROM positions WHERE {clause} ORDER BY {order}", params
        ).fetchall()
        return [_row_to_position(row) for row in rows]

    # ------------------------------------------------------------------
    # Breakers
    # ------------------------------------------------------------------

    def load_breakers(self) -> dict[str, BreakerState]:
        assert self._conn is not None
        rows = self._conn.execute("SELECT * FROM breakers").fetchall()
        return {
            row["name"]: BreakerState(
                name=row["name"],
                active=bool(row["active"]),
                reason=row["reason"],
                triggered_at=_parse_ts(row["triggered_at"]),
                last_checked=_parse_ts(row["last_checked"]),
            )
            for row in rows
        }

    def upsert_breaker(self, state: BreakerState) -> None:
        with self._tx() as cur:
            cur.execute(
                """INSERT INTO breakers (name, active, reason, triggered_at, last_checked)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(name) DO UPDATE SET
                       active = excluded.active,
                       reason = excluded.reason,
                       triggered_at = excluded.triggered_at,
                       last_checked = excluded.last_checked""",
                (
                    state.name,
                    int(state.active),
                    state.reason,
                    _ts(state.triggered_at),
                    _ts(state.last_checked),
                ),
            )

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def record_audit(self, action: str, message: str, data: dict[str, Any] | None = None) -> None:
        with self._tx() as cur:
            cur.execute(
                "INSERT INTO audit_log (ts, action, message, data_json) VALUES (?, ?, ?, ?)",
                (_ts(utc_now()), action, message, json.dumps(data, default=str) if data else None),
            )

    def recent_audit(self, limit: int = 50, action: str | None = None) -> list[dict[str, Any]]:
        assert self._conn is not None
        if action is None:
            rows = self._conn.execute(
                "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM audit_log WHERE action = ? ORDER BY id DESC LIMIT ?", (action, limit)
            ).fetchall()
        return [
            {
                "ts": row["ts"],
                "action": row["action"],
                "message": row["message"],
                "data": json.loads(row["data_json"]) if row["data_json"] else None,
            }
            for row in rows
        ]

    def record_decision(
        self,
        *,
        bet_key: str,
        instrument_id: str,
        side: Side,
        status: str,
        reason: str,
        allocation: float | None = None,
        price: float | None = None,
        size: float | None = None,
        cost: float | None = None,
        order_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        with self._tx() as cur:
            cur.execute(
                """INSERT INTO trade_decisions
                   (ts, bet_key, instrument_id, side, status, reason, allocation,
                    price, size, cost, order_id, data_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    _ts(utc_now()),
                    bet_key,
                    instrument_id,
                    side.value,
                    status,
                    reason,
                    allocation,
                    price,
                    size,
                    cost,
                    order_id,
                    json.dumps(data, default=str) if data else None,
                ),
            )

    def decisions(self, bet_key: str | None = None) -> list[StoredDecision]:
        assert self._conn is not None
        if bet_key is None:
            rows = self._conn.execute("SELECT * FROM trade_decisions ORDER BY id").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM trade_decisions WHERE bet_key = ? ORDER BY id", (bet_key,)
            ).fetchall()
        return [
            StoredDecision(
                bet_key=row["bet_key"],
                status=row["status"],
                reason=row["reason"],
                allocation=row["allocation"],
                price=row["price"],
                size=row["size"],
                cost=row["cost"],
                order_id=row["order_id"],
                data=json.loads(row["data_json"]) if row["data_json"] else {},
            )
            for row in rows
        ]

    def record_portfolio_snapshot(self, snapshot: PortfolioSnapshot) -> None:
        with self._tx() as cur:
            cur.execute(
                """INSERT INTO portfolio_snapshots
                   (taken_at, open_positions, open_value, realized_pnl, win_rate_pct, balance, live_bets)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    _ts(snapshot.taken_at),
                    snapshot.open_positions,
                    snapshot.open_value,
                    snapshot.realized_pnl,
                    snapshot.win_rate_pct,
                    snapshot.balance,
                    snapshot.live_bets,
                ),
            )

    def latest_portfolio_snapshot(self) -> PortfolioSnapshot | None:
        assert self._conn is not None
        row = self._conn.execute(
            "SELECT * FROM portfolio_snapshots ORDER BY id DESC LIMIT 1"
        ).fetchone()
        if row is None:
            return None
        return PortfolioSnapshot(
            open_positions=row["open_positions"],
            open_value=row["open_value"],
            realized_pnl=row["realized_pnl"],
            win_rate_pct=row["win_rate_pct"],
            balance=row["balance"],
            live_bets=row["live_bets"],
            taken_at=_parse_ts(row["taken_at"]) or utc_now(),
        )


def _row_to_instrument(row: sqlite3.Row) -> Instrument:
    return Instrument(
        instrument_id=row["instrument_id"],
        question=row["question"],
        location=row["location"],
        threshold=row["threshold"],
        settlement_date=date.fromisoformat(row["settlement_date"]),
        resolution_source=row["resolution_source"],
        yes_token_id=row["yes_token_id"],
        no_token_id=row["no_token_id"],
        yes_price=row["yes_price"],
        no_price=row["no_price"],
        spread=row["spread"],
        depth=row["depth"],
        active=bool(row["active"]),
        resolved=bool(row["resolved"]),
        outcome=Side(row["outcome"]) if row["outcome"] else None,
        updated_at=_parse_ts(row["updated_at"]) or utc_now(),
    )


def _row_to_position(row: sqlite3.Row) -> Position:
    return Position(
        position_id=row["position_id"],
        instrument_id=row["instrument_id"],
        side=Side(row["side"]),
        entry_price=row["entry_price"],
        size=row["size"],
        cost_basis=row["cost_basis"],
        status=PositionStatus(row["status"]),
        order_id=row["order_id"],
        pnl=row["pnl"],
        opened_at=_parse_ts(row["opened_at"]) or utc_now(),
        resolved_at=_parse_ts(row["resolved_at"]),
    )
