"""
tradein/models.py -- Domain dataclasses for the trade-in lifecycle.

These are pure data containers with zero logic. Transition rules live in
tradein/lifecycle.py and persistence in tradein/store.py.

TradeInItem is the aggregate root: label, tracking, inspection and adjustment
hang off it and are only ever created or changed through the controller.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from core.models import ConditionGrade
from shipping.models import ShipmentTracking, ShippingLabel


class TradeInStatus(str, Enum):
    quote = "quote"
    label_sent = "label_sent"
    in_transit = "in_transit"
    received = "received"
    inspecting = "inspecting"
    credited = "credited"
    disputed = "disputed"


class TradeInEvent(str, Enum):
    issue_label = "issue_label"
    carrier_pickup = "carrier_pickup"
    carrier_delivered = "carrier_delivered"
    open_inspection = "open_inspection"
    apply_credit = "apply_credit"
    dispute = "dispute"


class AdjustmentStatus(str, Enum):
    pending_approval = "pending_approval"
    approved = "approved"
    disputed = "disputed"
    device_returned = "device_returned"


@dataclass
class InspectionResult:
    """What the inspector found. Written once; re-inspection is not supported.

    actual_condition is graded independently by a person, not recomputed from
    the customer's original answers.
    """

    inspection_id: str
    inspected_at: str  # ISO 8601
    actual_condition: ConditionGrade
    estimated_value: float
    final_value: float
    requires_approval: bool
    adjustment_reason: Optional[str] = None
    inspector: Optional[str] = None


@dataclass
class ValueAdjustment:
    adjustment_id: str
    original_value: float
    new_value: float
    reason: str
    created_at: str  # ISO 8601
    status: AdjustmentStatus = AdjustmentStatus.pending_approval
    resolved_at: Optional[str] = None
    dispute_reason: Optional[str] = None


@dataclass
class TradeInItem:
    """A device moving from accepted quote to credit.

    version is the optimistic-concurrency token: every write checks it and
    bumps it. id is assigned by the controller ("TI-..."), not the database.
    """

    id: str
    serial: str
    model: str
    year: int
    color: str
    condition_grade: ConditionGrade
    estimated_value: float
    valuation_id: str
    expires_at: str  # ISO 8601
    status: TradeInStatus = TradeInStatus.quote
    created_at: str = ""
    final_value: Optional[float] = None
    shipping_label: Optional[ShippingLabel] = None
    tracking: Optional[ShipmentTracking] = None
    inspection: Optional[InspectionResult] = None
    adjustment: Optional[ValueAdjustment] = None
    credited_at: Optional[str] = None
    credit_amount: Optional[float] = None
    version: int = 1


@dataclass
class StatusChange:
    """Immutable audit entry written whenever a trade-in changes status.

    Records are never updated or deleted -- only inserted.
    """

    trade_in_id: str
    from_status: TradeInStatus
    to_status: TradeInStatus
    event: TradeInEvent
    changed_at: str  # ISO 8601
    actor: Optional[str] = None
    note: Optional[str] = None
    id: Optional[int] = None
