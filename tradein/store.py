"""
tradein/store.py -- SQLAlchemy-backed persistence for trade-ins.

Uses SQLAlchemy Core (not ORM) so the dataclasses in tradein/models.py remain
the authoritative domain representation. The _row_to_* functions translate
rows back into dataclasses; the controller never touches SQL directly.

Concurrency: every trade-in row carries a version. save() issues
    UPDATE trade_ins ... WHERE id = :id AND version = :expected
and bumps the version. When no row matches, another writer got there first
and StaleVersionError is raised; nothing from the losing write is committed.
Label, inspection and adjustment rows have a unique trade_in_id and are
written in the same transaction as the trade-in row.

status_history is append-only: rows are inserted, never updated or deleted.

Usage:
    store = TradeInStore()                               # SQLite default
    store = TradeInStore("postgresql://user:pw@host/db") # PostgreSQL
    store.create(item)
    item = store.get("TI-...")
    item.status = TradeInStatus.label_sent
    item = store.save(item, expected_version=item.version, change=change)
    store.close()
"""

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from core.models import ConditionGrade
from shipping.models import ShipmentStatus, ShipmentTracking, ShippingLabel, TrackingEvent
from tradein.models import (
    AdjustmentStatus,
    InspectionResult,
    StatusChange,
    TradeInEvent,
    TradeInItem,
    TradeInStatus,
    ValueAdjustment,
)

logger = logging.getLogger("equipped.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'equipped_tradeins.db'}"


class StaleVersionError(Exception):
    """Raised when a versioned write loses a race with another writer."""


class DuplicateValuationError(Exception):
    """Raised when a valuation has already been turned into a trade-in."""


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_trade_ins = Table(
    "trade_ins",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("serial", String(32), nullable=False),
    Column("model", String(255), nullable=False),
    Column("year", Integer, nullable=False),
    Column("color", String(100), nullable=False),
    Column("condition_grade", String(20), nullable=False),
    Column("estimated_value", Float, nullable=False),
    Column("valuation_id", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("status", String(20), nullable=False, server_default="quote"),
    Column("created_at", String(32), nullable=False),
    Column("final_value", Float),
    Column("tracking", Text),  # latest ShipmentTracking as JSON
    Column("credited_at", String(32)),
    Column("credit_amount", Float),
    Column("version", Integer, nullable=False, server_default="1"),
)

_labels = Table(
    "shipping_labels",
    metadata,
    Column("label_id", String(64), primary_key=True),
    Column("trade_in_id", String(64), nullable=False, unique=True),
    Column("tracking_number", String(64), nullable=False, unique=True),
    Column("carrier", String(50), nullable=False),
    Column("label_url", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

_inspections = Table(
    "inspections",
    metadata,
    Column("inspection_id", String(64), primary_key=True),
    Column("trade_in_id", String(64), nullable=False, unique=True),
    Column("inspected_at", String(32), nullable=False),
    Column("actual_condition", String(20), nullable=False),
    Column("estimated_value", Float, nullable=False),
    Column("final_value", Float, nullable=False),
    Column("requires_approval", Integer, nullable=False, server_default="0"),  # boolean stored as 0/1
    Column("adjustment_reason", Text),
    Column("inspector", String(255)),
)

_adjustments = Table(
    "value_adjustments",
    metadata,
    Column("adjustment_id", String(64), primary_key=True),
    Column("trade_in_id", String(64), nullable=False, unique=True),
    Column("original_value", Float, nullable=False),
    Column("new_value", Float, nullable=False),
    Column("reason", Text, nullable=False),
    Column("status", String(30), nullable=False, server_default="pending_approval"),
    Column("created_at", String(32), nullable=False),
    Column("resolved_at", String(32)),
    Column("dispute_reason", Text),
)

_history = Table(
    "status_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("trade_in_id", String(64), nullable=False, index=True),
    Column("from_status", String(20), nullable=False),
    Column("to_status", String(20), nullable=False),
    Column("event", String(30), nullable=False),
    Column("changed_at", String(32), nullable=False),
    Column("actor", String(255)),
    Column("note", Text),
)


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------


def _add_missing_columns(conn: Connection, table: str, additions: list[tuple[str, str]]) -> None:
    """Add columns to an existing table without dropping data.

    metadata.create_all() only creates missing tables; it never alters
    existing ones. Table and column names are constants, not user input:
    SQLite does not support parameter binding for identifiers.
    """
    existing = {row[1] for row in conn.execute(text(f"PRAGMA table_info({table})"))}
    for col, typ in additions:
        if col not in existing:
            conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {col} {typ}"))  # nosemgrep
    conn.commit()


# table -> [(column, type)] added after that table was first released.
# Append here; create_all() will not add them to existing databases.
ADDED_COLUMNS: dict[str, list[tuple[str, str]]] = {}


def _migrate(conn: Connection) -> None:
    for table, additions in ADDED_COLUMNS.items():
        _add_missing_columns(conn, table, additions)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode; PRAGMAs are per-connection in SQLite."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TradeInStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        self._sqlite = db_url.startswith("sqlite")
        if self._sqlite:
            # The same connection may be used across threads of the ASGI server.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if self._sqlite:
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)
        if self._sqlite:
            with self.engine.connect() as conn:
                _migrate(conn)

    # ------------------------------------------------------------------
    # Trade-ins
    # ------------------------------------------------------------------

    def create(self, item: TradeInItem) -> TradeInItem:
        """Insert a new trade-in in its initial state.

        Raises DuplicateValuationError when the valuation was already accepted.
        """
        with self.engine.connect() as conn:
            try:
                conn.execute(_trade_ins.insert().values(id=item.id, **_trade_in_values(item)))
            except IntegrityError as exc:
                conn.rollback()
                raise DuplicateValuationError(item.valuation_id) from exc
            conn.commit()
        return item

    def get(self, trade_in_id: str) -> Optional[TradeInItem]:
        with self.engine.connect() as conn:
            row = conn.execute(_trade_ins.select().where(_trade_ins.c.id == trade_in_id)).fetchone()
            return self._load(conn, row) if row is not None else None

    def get_by_valuation_id(self, valuation_id: str) -> Optional[TradeInItem]:
        with self.engine.connect() as conn:
            row = conn.execute(_trade_ins.select().where(_trade_ins.c.valuation_id == valuation_id)).fetchone()
            return self._load(conn, row) if row is not None else None

    def get_by_tracking_number(self, tracking_number: str) -> Optional[TradeInItem]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_trade_ins)
                .join(_labels, _labels.c.trade_in_id == _trade_ins.c.id)
                .where(_labels.c.tracking_number == tracking_number)
            ).fetchone()
            return self._load(conn, row) if row is not None else None

    def list_trade_ins(self, status: Optional[TradeInStatus] = None) -> list[TradeInItem]:
        """Return trade-ins newest first, optionally filtered by status."""
        query = _trade_ins.select().order_by(_trade_ins.c.created_at.desc(), _trade_ins.c.id)
        if status is not None:
            query = query.where(_trade_ins.c.status == status.value)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            return [self._load(conn, r) for r in rows]

    def save(
        self,
        item: TradeInItem,
        expected_version: int,
        change: Optional[StatusChange] = None,
    ) -> TradeInItem:
        """Persist the whole aggregate if nobody else has written since expected_version.

        Labels and inspections are insert-once; the adjustment row is inserted
        or updated. The optional status change is appended to the audit trail.
        Returns the item with its new version. Raises StaleVersionError on a
        lost race (including a duplicate nested row from a concurrent writer).
        """
        new_version = expected_version + 1
        with self.engine.connect() as conn:
            result = conn.execute(
                _trade_ins.update()
                .where((_trade_ins.c.id == item.id) & (_trade_ins.c.version == expected_version))
                .values(version=new_version, **_trade_in_values(item))
            )
            if result.rowcount == 0:
                conn.rollback()
                logger.warning("Stale write to %s (expected version %d)", item.id, expected_version)
                raise StaleVersionError(item.id)
            try:
                self._write_children(conn, item)
                if change is not None:
                    conn.execute(_history.insert().values(**_change_values(change)))
            except IntegrityError as exc:
                conn.rollback()
                raise StaleVersionError(item.id) from exc
            conn.commit()
        item.version = new_version
        return item

    def get_history(self, trade_in_id: str) -> list[StatusChange]:
        """Return all status changes for a trade-in, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _history.select().where(_history.c.trade_in_id == trade_in_id).order_by(_history.c.id)
            ).fetchall()
        return [_row_to_change(r) for r in rows]

    def ping(self) -> None:
        """Raise if the database is unreachable."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, conn: Connection, row) -> TradeInItem:
        label = conn.execute(_labels.select().where(_labels.c.trade_in_id == row.id)).fetchone()
        inspection = conn.execute(_inspections.select().where(_inspections.c.trade_in_id == row.id)).fetchone()
        adjustment = conn.execute(_adjustments.select().where(_adjustments.c.trade_in_id == row.id)).fetchone()
        return _row_to_trade_in(row, label, inspection, adjustment)

    def _write_children(self, conn: Connection, item: TradeInItem) -> None:
        if item.shipping_label is not None:
            exists = conn.execute(
                select(_labels.c.label_id).where(_labels.c.trade_in_id == item.id)
            ).fetchone()
            if exists is None:
                conn.execute(_labels.insert().values(trade_in_id=item.id, **asdict(item.shipping_label)))

        if item.inspection is not None:
            exists = conn.execute(
                select(_inspections.c.inspection_id).where(_inspections.c.trade_in_id == item.id)
            ).fetchone()
            if exists is None:
                ins = item.inspection
                conn.execute(
                    _inspections.insert().values(
                        inspection_id=ins.inspection_id,
                        trade_in_id=item.id,
                        inspected_at=ins.inspected_at,
                        actual_condition=ins.actual_condition.value,
                        estimated_value=ins.estimated_value,
                        final_value=ins.final_value,
                        requires_approval=1 if ins.requires_approval else 0,
                        adjustment_reason=ins.adjustment_reason,
                        inspector=ins.inspector,
                    )
                )

        if item.adjustment is not None:
            adj = item.adjustment
            values = dict(
                original_value=adj.original_value,
                new_value=adj.new_value,
                reason=adj.reason,
                status=adj.status.value,
                created_at=adj.created_at,
                resolved_at=adj.resolved_at,
                dispute_reason=adj.dispute_reason,
            )
            result = conn.execute(
                _adjustments.update()
                .where((_adjustments.c.trade_in_id == item.id) & (_adjustments.c.adjustment_id == adj.adjustment_id))
                .values(**values)
            )
            if result.rowcount == 0:
                conn.execute(
                    _adjustments.insert().values(adjustment_id=adj.adjustment_id, trade_in_id=item.id, **values)
                )


# ---------------------------------------------------------------------------
# Row mappers (DB row <-> domain dataclass)
# ---------------------------------------------------------------------------


def _trade_in_values(item: TradeInItem) -> dict:
    return dict(
        serial=item.serial,
        model=item.model,
        year=item.year,
        color=item.color,
        condition_grade=item.condition_grade.value,
        estimated_value=item.estimated_value,
        valuation_id=item.valuation_id,
        expires_at=item.expires_at,
        status=item.status.value,
        created_at=item.created_at,
        final_value=item.final_value,
        tracking=json.dumps(asdict(item.tracking)) if item.tracking is not None else None,
        credited_at=item.credited_at,
        credit_amount=item.credit_amount,
    )


def _change_values(change: StatusChange) -> dict:
    return dict(
        trade_in_id=change.trade_in_id,
        from_status=change.from_status.value,
        to_status=change.to_status.value,
        event=change.event.value,
        changed_at=change.changed_at,
        actor=change.actor,
        note=change.note,
    )


def _tracking_from_json(raw: Optional[str]) -> Optional[ShipmentTracking]:
    if not raw:
        return None
    data = json.loads(raw)
    return ShipmentTracking(
        tracking_number=data["tracking_number"],
        carrier=data["carrier"],
        status=ShipmentStatus(data["status"]),
        events=[TrackingEvent(**e) for e in data.get("events", [])],
        current_location=data.get("current_location"),
        estimated_delivery=data.get("estimated_delivery"),
        tracking_url=data.get("tracking_url"),
    )


def _row_to_label(row) -> ShippingLabel:
    return ShippingLabel(
        label_id=row.label_id,
        tracking_number=row.tracking_number,
        carrier=row.carrier,
        label_url=row.label_url,
        created_at=row.created_at,
        expires_at=row.expires_at,
    )


def _row_to_inspection(row) -> InspectionResult:
    return InspectionResult(
        inspection_id=row.inspection_id,
        inspected_at=row.inspected_at,
        actual_condition=ConditionGrade(row.actual_condition),
        estimated_value=row.estimated_value,
        final_value=row.final_value,
        requires_approval=bool(row.requires_approval),
        adjustment_reason=row.adjustment_reason,
        inspector=row.inspector,
    )


def _row_to_adjustment(row) -> ValueAdjustment:
    return ValueAdjustment(
        adjustment_id=row.adjustment_id,
        original_value=row.original_value,
        new_value=row.new_value,
        reason=row.reason,
        created_at=row.created_at,
        status=AdjustmentStatus(row.status),
        resolved_at=row.resolved_at,
        dispute_reason=row.dispute_reason,
    )


def _row_to_trade_in(row, label=None, inspection=None, adjustment=None) -> TradeInItem:
    return TradeInItem(
        id=row.id,
        serial=row.serial,
        model=row.model,
        year=row.year,
        color=row.color,
        condition_grade=ConditionGrade(row.condition_grade),
        estimated_value=row.estimated_value,
        valuation_id=row.valuation_id,
        expires_at=row.expires_at,
        status=TradeInStatus(row.status),
        created_at=row.created_at,
        final_value=row.final_value,
        shipping_label=_row_to_label(label) if label is not None else None,
        tracking=_tracking_from_json(row.tracking),
        inspection=_row_to_inspection(inspection) if inspection is not None else None,
        adjustment=_row_to_adjustment(adjustment) if adjustment is not None else None,
        credited_at=row.credited_at,
        credit_amount=row.credit_amount,
        version=row.version,
    )


def _row_to_change(row) -> StatusChange:
    return StatusChange(
        id=row.id,
        trade_in_id=row.trade_in_id,
        from_status=TradeInStatus(row.from_status),
        to_status=TradeInStatus(row.to_status),
        event=TradeInEvent(row.event),
        changed_at=row.changed_at,
        actor=row.actor,
        note=row.note,
    )
