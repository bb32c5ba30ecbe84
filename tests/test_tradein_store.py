"""
tests/test_tradein_store.py -- Unit tests for tradein/store.py.

Uses the same named shared-memory SQLite URI pattern as conftest.py, one
database per test, so the schema is created fresh each time.
"""

from __future__ import annotations

import uuid
from unittest.mock import patch

import pytest
from sqlalchemy import text

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
from tradein.store import ADDED_COLUMNS, DuplicateValuationError, StaleVersionError, TradeInStore

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    s = TradeInStore(db_url=f"sqlite:///file:store_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    yield s
    s.close()


def _item(item_id: str = "TI-1", valuation_id: str = "VAL-1", created_at: str = "2025-03-01T09:00:00+00:00"):
    return TradeInItem(
        id=item_id,
        serial="C02XYZ123ABC",
        model="MacBook Air M1",
        year=2021,
        color="Space Gray",
        condition_grade=ConditionGrade.excellent,
        estimated_value=600,
        valuation_id=valuation_id,
        expires_at="2025-03-31T09:00:00+00:00",
        created_at=created_at,
    )


def _label(trade_in_id: str = "TI-1", tracking_number: str = "1Z999AA100000001") -> ShippingLabel:
    return ShippingLabel(
        label_id=f"LBL-{trade_in_id}",
        tracking_number=tracking_number,
        carrier="FedEx",
        label_url=f"/api/trade-in/label-pdf/LBL-{trade_in_id}",
        created_at="2025-03-01T10:00:00+00:00",
        expires_at="2025-03-31T10:00:00+00:00",
    )


def _change(trade_in_id: str, src: TradeInStatus, dst: TradeInStatus, event: TradeInEvent) -> StatusChange:
    return StatusChange(
        trade_in_id=trade_in_id,
        from_status=src,
        to_status=dst,
        event=event,
        changed_at="2025-03-01T10:00:00+00:00",
        actor="tester",
    )


# ---------------------------------------------------------------------------
# TestCreateAndGet
# ---------------------------------------------------------------------------


class TestCreateAndGet:
    def test_round_trip(self, store):
        store.create(_item())
        loaded = store.get("TI-1")
        assert loaded == _item()
        assert loaded.version == 1
        assert loaded.status == TradeInStatus.quote

    def test_get_missing_returns_none(self, store):
        assert store.get("TI-missing") is None

    def test_duplicate_valuation_rejected(self, store):
        store.create(_item("TI-1", "VAL-1"))
        with pytest.raises(DuplicateValuationError):
            store.create(_item("TI-2", "VAL-1"))
        assert store.get("TI-2") is None

    def test_get_by_valuation_id(self, store):
        store.create(_item("TI-1", "VAL-9"))
        assert store.get_by_valuation_id("VAL-9").id == "TI-1"
        assert store.get_by_valuation_id("VAL-0") is None

    def test_list_newest_first_with_status_filter(self, store):
        store.create(_item("TI-old", "VAL-1", created_at="2025-01-01T00:00:00+00:00"))
        store.create(_item("TI-new", "VAL-2", created_at="2025-02-01T00:00:00+00:00"))
        assert [i.id for i in store.list_trade_ins()] == ["TI-new", "TI-old"]
        assert [i.id for i in store.list_trade_ins(TradeInStatus.quote)] == ["TI-new", "TI-old"]
        assert store.list_trade_ins(TradeInStatus.credited) == []


# ---------------------------------------------------------------------------
# TestSave
# ---------------------------------------------------------------------------


class TestSave:
    def test_save_bumps_version_and_records_change(self, store):
        item = store.create(_item())
        item.status = TradeInStatus.label_sent
        item.shipping_label = _label()
        change = _change(item.id, TradeInStatus.quote, TradeInStatus.label_sent, TradeInEvent.issue_label)
        saved = store.save(item, expected_version=1, change=change)
        assert saved.version == 2

        loaded = store.get("TI-1")
        assert loaded.status == TradeInStatus.label_sent
        assert loaded.shipping_label == _label()
        assert loaded.version == 2

        history = store.get_history("TI-1")
        assert len(history) == 1
        assert history[0].event == TradeInEvent.issue_label
        assert history[0].actor == "tester"
        assert history[0].id is not None

    def test_stale_version_rejected(self, store):
        """Two writers load version 1; the second save loses."""
        store.create(_item())
        first = store.get("TI-1")
        second = store.get("TI-1")

        first.status = TradeInStatus.label_sent
        store.save(first, expected_version=1)

        second.status = TradeInStatus.disputed
        with pytest.raises(StaleVersionError):
            store.save(
                second,
                expected_version=1,
                change=_change("TI-1", TradeInStatus.quote, TradeInStatus.disputed, TradeInEvent.dispute),
            )

        loaded = store.get("TI-1")
        assert loaded.status == TradeInStatus.label_sent
        assert store.get_history("TI-1") == []

    def test_save_unknown_item_is_stale(self, store):
        with pytest.raises(StaleVersionError):
            store.save(_item("TI-ghost"), expected_version=1)

    def test_nested_rows_round_trip(self, store):
        item = store.create(_item())
        item.shipping_label = _label()
        item.tracking = ShipmentTracking(
            tracking_number="1Z999AA100000001",
            carrier="FedEx",
            status=ShipmentStatus.in_transit,
            events=[
                TrackingEvent(
                    timestamp="2025-03-02T10:00:00+00:00",
                    status="Picked Up",
                    location="New York, NY",
                    description="Picked up by FedEx",
                )
            ],
            current_location="New York, NY",
        )
        item.inspection = InspectionResult(
            inspection_id="INS-1",
            inspected_at="2025-03-05T10:00:00+00:00",
            actual_condition=ConditionGrade.fair,
            estimated_value=600,
            final_value=300,
            requires_approval=True,
            adjustment_reason="Dented corner",
            inspector="alex",
        )
        item.adjustment = ValueAdjustment(
            adjustment_id="ADJ-1",
            original_value=600,
            new_value=300,
            reason="Dented corner",
            created_at="2025-03-05T10:05:00+00:00",
        )
        item.final_value = 300
        store.save(item, expected_version=1)

        loaded = store.get("TI-1")
        assert loaded.tracking == item.tracking
        assert loaded.inspection == item.inspection
        assert loaded.adjustment == item.adjustment
        assert loaded.final_value == 300

    def test_adjustment_updated_in_place(self, store):
        item = store.create(_item())
        item.adjustment = ValueAdjustment(
            adjustment_id="ADJ-1",
            original_value=600,
            new_value=300,
            reason="Dented corner",
            created_at="2025-03-05T10:05:00+00:00",
        )
        item = store.save(item, expected_version=1)
        item.adjustment.status = AdjustmentStatus.disputed
        item.adjustment.dispute_reason = "It was fine when I shipped it"
        store.save(item, expected_version=2)

        loaded = store.get("TI-1")
        assert loaded.adjustment.status == AdjustmentStatus.disputed
        assert loaded.adjustment.dispute_reason == "It was fine when I shipped it"

    def test_tracking_number_shared_across_trade_ins_is_rejected(self, store):
        """Tracking numbers are unique; a clash rolls the whole write back."""
        a = store.create(_item("TI-A", "VAL-A"))
        b = store.create(_item("TI-B", "VAL-B"))
        a.shipping_label = _label("TI-A", tracking_number="1Z999AA1SHARED00")
        store.save(a, expected_version=1)

        b.shipping_label = _label("TI-B", tracking_number="1Z999AA1SHARED00")
        b.status = TradeInStatus.label_sent
        with pytest.raises(StaleVersionError):
            store.save(b, expected_version=1)
        loaded = store.get("TI-B")
        assert loaded.shipping_label is None
        assert loaded.status == TradeInStatus.quote

    def test_get_by_tracking_number(self, store):
        item = store.create(_item())
        item.shipping_label = _label(tracking_number="1Z999AA1FINDME00")
        store.save(item, expected_version=1)
        assert store.get_by_tracking_number("1Z999AA1FINDME00").id == "TI-1"
        assert store.get_by_tracking_number("1Z999AA1NOPE0000") is None


class TestHistory:
    def test_history_oldest_first(self, store):
        item = store.create(_item())
        steps = [
            (TradeInStatus.quote, TradeInStatus.label_sent, TradeInEvent.issue_label),
            (TradeInStatus.label_sent, TradeInStatus.in_transit, TradeInEvent.carrier_pickup),
            (TradeInStatus.in_transit, TradeInStatus.received, TradeInEvent.carrier_delivered),
        ]
        for src, dst, event in steps:
            item.status = dst
            item = store.save(item, expected_version=item.version, change=_change(item.id, src, dst, event))
        assert [c.event for c in store.get_history("TI-1")] == [e for _, _, e in steps]

    def test_ping(self, store):
        store.ping()


# ---------------------------------------------------------------------------
# TestMigration
# ---------------------------------------------------------------------------


class TestMigration:
    def test_added_columns_applied_to_existing_database(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'tradeins.db'}"
        first = TradeInStore(db_url=url)
        first.create(_item())
        first.close()

        with patch.dict(ADDED_COLUMNS, {"trade_ins": [("referral_code", "TEXT")]}):
            second = TradeInStore(db_url=url)
            # Reopening with the column already present is a no-op.
            third = TradeInStore(db_url=url)
        with second.engine.connect() as conn:
            columns = {row[1] for row in conn.execute(text("PRAGMA table_info(trade_ins)"))}
        assert "referral_code" in columns
        assert second.get("TI-1").estimated_value == 600
        second.close()
        third.close()
