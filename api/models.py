"""
API request and response models for the Equipped trade-in REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py and
tradein/models.py, which own the internal domain representation. Route
handlers map between the two.

Separation of concerns: core/ + tradein/ models = domain truth; api/ models = API contract.
"""

import re
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.models import SERIAL_PATTERN, ConditionAssessment, ConditionGrade, normalize_serial
from shipping.models import ShipmentStatus
from tradein.lifecycle import allowed_events
from tradein.models import AdjustmentStatus, TradeInEvent, TradeInItem, TradeInStatus

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class ConditionAssessmentIn(BaseModel):
    """Condition rubric answers. cosmetic_damage=true means damage is present."""

    power_on: bool
    screen_condition: bool
    cosmetic_damage: bool
    keyboard_trackpad: bool
    battery_health: Optional[bool] = None
    ports_working: Optional[bool] = None
    find_my_disabled: Optional[bool] = None

    def to_domain(self) -> ConditionAssessment:
        return ConditionAssessment(**self.model_dump())


class ValuationRequest(BaseModel):
    """Request body for POST /api/v1/devices/valuation.

    The serial is normalized (trimmed, upper-cased) before the pattern check,
    so callers may submit lowercase serials.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    serial: str
    model: str = Field(min_length=1, max_length=255)
    condition: ConditionAssessmentIn

    @field_validator("serial")
    @classmethod
    def normalize(cls, value: str) -> str:
        normalized = normalize_serial(value)
        if not re.match(SERIAL_PATTERN, normalized):
            raise ValueError("serial must be 8-20 letters or digits")
        return normalized


class TradeInCreate(BaseModel):
    """Request body for POST /api/v1/trade-ins: accept an issued valuation."""

    model_config = ConfigDict(str_strip_whitespace=True)

    valuation_id: str = Field(min_length=1, max_length=64)
    estimated_value: float


class TransitionRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    event: TradeInEvent
    actor: Optional[str] = Field(default=None, max_length=255)
    note: Optional[str] = Field(default=None, max_length=2000)


class InspectionCreate(BaseModel):
    """Request body for POST /api/v1/trade-ins/{id}/inspection.

    estimated_value defaults to the trade-in's accepted value and, when
    given, must equal it. Omit requires_approval to let the service decide
    from the values.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    actual_condition: ConditionGrade
    final_value: float
    estimated_value: Optional[float] = None
    adjustment_reason: Optional[str] = Field(default=None, max_length=2000)
    requires_approval: Optional[bool] = None
    inspector: Optional[str] = Field(default=None, max_length=255)


class AdjustmentCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    original_value: float
    new_value: float
    reason: str = Field(max_length=2000)


class DisputeRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    reason: str = Field(max_length=2000)


class CreditRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    amount: float
    actor: Optional[str] = Field(default=None, max_length=255)


# ---------------------------------------------------------------------------
# Response models -- devices and valuations
# ---------------------------------------------------------------------------


class DeviceModelOut(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    model: str
    year: int
    color: str
    storage: Optional[str] = None
    specs: dict[str, str] = {}
    image_url: Optional[str] = None


class DeviceLookupOut(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    success: bool
    serial: str
    device: Optional[DeviceModelOut] = None
    error: Optional[str] = None


class ValuationBreakdownOut(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    base_value: float
    condition_multiplier: float
    final_value: int


class ValuationOut(BaseModel):
    """An issued offer. Quote valuation_id when creating the trade-in."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    success: bool
    serial: str
    model: str
    condition_grade: ConditionGrade
    estimated_value: int
    expires_at: str
    valuation_id: str
    original_value: Optional[float] = None
    breakdown: Optional[ValuationBreakdownOut] = None
    issued_at: str = ""
    error: Optional[str] = None


class FindMyOut(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    success: bool
    serial: str
    find_my_enabled: bool
    activation_locked: bool
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Response models -- shipping
# ---------------------------------------------------------------------------


class ShippingLabelOut(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    label_id: str
    tracking_number: str
    carrier: str
    label_url: str
    created_at: str
    expires_at: str


class TrackingEventOut(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    timestamp: str
    status: str
    location: str
    description: str


class ShipmentTrackingOut(BaseModel):
    """Carrier view of a shipment. events are newest first."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    tracking_number: str
    carrier: str
    status: ShipmentStatus
    events: list[TrackingEventOut] = []
    current_location: Optional[str] = None
    estimated_delivery: Optional[str] = None
    tracking_url: Optional[str] = None


# ---------------------------------------------------------------------------
# Response models -- trade-ins
# ---------------------------------------------------------------------------


class InspectionOut(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    inspection_id: str
    inspected_at: str
    actual_condition: ConditionGrade
    estimated_value: float
    final_value: float
    requires_approval: bool
    adjustment_reason: Optional[str] = None
    inspector: Optional[str] = None


class AdjustmentOut(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    adjustment_id: str
    original_value: float
    new_value: float
    reason: str
    created_at: str
    status: AdjustmentStatus
    resolved_at: Optional[str] = None
    dispute_reason: Optional[str] = None


class TradeInOut(BaseModel):
    """Full trade-in aggregate. allowed_events lists what may happen next."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    serial: str
    model: str
    year: int
    color: str
    condition_grade: ConditionGrade
    estimated_value: float
    valuation_id: str
    expires_at: str
    status: TradeInStatus
    created_at: str
    final_value: Optional[float] = None
    shipping_label: Optional[ShippingLabelOut] = None
    tracking: Optional[ShipmentTrackingOut] = None
    inspection: Optional[InspectionOut] = None
    adjustment: Optional[AdjustmentOut] = None
    credited_at: Optional[str] = None
    credit_amount: Optional[float] = None
    version: int
    allowed_events: list[TradeInEvent] = []

    @classmethod
    def from_item(cls, item: TradeInItem) -> "TradeInOut":
        """Build the response from the domain aggregate, adding the next allowed events."""
        base = cls.model_validate(item)
        return base.model_copy(update={"allowed_events": allowed_events(item.status)})


class TradeInListOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    items: list[TradeInOut]


class StatusChangeOut(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: Optional[int] = None
    from_status: TradeInStatus
    to_status: TradeInStatus
    event: TradeInEvent
    changed_at: str
    actor: Optional[str] = None
    note: Optional[str] = None


class StatusHistoryOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    trade_in_id: str
    changes: list[StatusChangeOut]


# ---------------------------------------------------------------------------
# Shared envelopes
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Union[str, dict]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = {}
