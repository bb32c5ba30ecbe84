"""
api/routes/v1/tradeins.py -- Trade-in lifecycle routes.

Routes (literal segments before path parameters):
  POST  /trade-ins                                           -- accept a valuation (201)
  GET   /trade-ins                                           -- list, optional ?status=
  GET   /trade-ins/{trade_in_id}                             -- full aggregate + live tracking
  GET   /trade-ins/{trade_in_id}/history                     -- status audit trail
  POST  /trade-ins/{trade_in_id}/label                       -- issue prepaid label (idempotent)
  POST  /trade-ins/{trade_in_id}/tracking/refresh            -- apply carrier scans
  POST  /trade-ins/{trade_in_id}/transitions                 -- fire a carrier/inspection event
  POST  /trade-ins/{trade_in_id}/inspection                  -- record the inspection
  POST  /trade-ins/{trade_in_id}/adjustments                 -- propose a value adjustment
  POST  /trade-ins/{trade_in_id}/adjustments/{adj}/accept    -- accept and credit
  POST  /trade-ins/{trade_in_id}/adjustments/{adj}/dispute   -- dispute (terminal)
  POST  /trade-ins/{trade_in_id}/adjustments/{adj}/device-returned
  POST  /trade-ins/{trade_in_id}/credit                      -- credit (idempotent)
  GET   /tracking/{tracking_number}                          -- carrier tracking relay

Every handler calls one TradeInController operation and unwraps its
OperationResult. Error kinds map to status codes in _STATUS_BY_KIND.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Request

from api.limiter import limiter
from api.models import (
    AdjustmentCreate,
    AdjustmentOut,
    CreditRequest,
    DisputeRequest,
    ErrorDetail,
    InspectionCreate,
    InspectionOut,
    ShipmentTrackingOut,
    ShippingLabelOut,
    StatusChangeOut,
    StatusHistoryOut,
    TradeInCreate,
    TradeInListOut,
    TradeInOut,
    TransitionRequest,
)
from tradein.lifecycle import ErrorKind, OperationResult, TradeInController
from tradein.models import TradeInStatus

router = APIRouter()

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.not_found: 404,
    ErrorKind.invalid_state: 409,
    ErrorKind.conflict: 409,
    ErrorKind.validation: 400,
    ErrorKind.upstream: 502,
}


def _controller(request: Request) -> TradeInController:
    return request.app.state.controller


def _unwrap(result: OperationResult):
    """Return the operation's value or raise the matching HTTPException."""
    if result.ok:
        return result.value
    error = result.error
    raise HTTPException(
        status_code=_STATUS_BY_KIND[error.kind],
        detail=ErrorDetail(code=error.kind.value, message=error.message, detail=error.detail).model_dump(),
    )


# ---------------------------------------------------------------------------
# Creation and queries
# ---------------------------------------------------------------------------


@limiter.limit("30/minute")
@router.post("/trade-ins", response_model=TradeInOut, status_code=201)
def create_trade_in(request: Request, body: TradeInCreate) -> TradeInOut:
    """Accept an issued, unexpired valuation and open a trade-in in 'quote'."""
    item = _unwrap(_controller(request).create_trade_in_from_valuation(body.valuation_id, body.estimated_value))
    return TradeInOut.from_item(item)


@limiter.limit("60/minute")
@router.get("/trade-ins", response_model=TradeInListOut)
def list_trade_ins(request: Request, status: Optional[TradeInStatus] = None) -> TradeInListOut:
    items = _unwrap(_controller(request).list_trade_ins(status))
    return TradeInListOut(total=len(items), items=[TradeInOut.from_item(i) for i in items])


@limiter.limit("60/minute")
@router.get("/trade-ins/{trade_in_id}", response_model=TradeInOut)
def get_trade_in(request: Request, trade_in_id: str) -> TradeInOut:
    return TradeInOut.from_item(_unwrap(_controller(request).get_trade_in_status(trade_in_id)))


@limiter.limit("60/minute")
@router.get("/trade-ins/{trade_in_id}/history", response_model=StatusHistoryOut)
def get_history(request: Request, trade_in_id: str) -> StatusHistoryOut:
    changes = _unwrap(_controller(request).get_status_history(trade_in_id))
    return StatusHistoryOut(
        trade_in_id=trade_in_id,
        changes=[StatusChangeOut.model_validate(c) for c in changes],
    )


# ---------------------------------------------------------------------------
# Shipping
# ---------------------------------------------------------------------------


@limiter.limit("30/minute")
@router.post("/trade-ins/{trade_in_id}/label", response_model=ShippingLabelOut)
def generate_label(request: Request, trade_in_id: str) -> ShippingLabelOut:
    """Issue the prepaid return label. Repeated calls return the same label."""
    label = _unwrap(_controller(request).generate_shipping_label(trade_in_id))
    return ShippingLabelOut.model_validate(label)


@limiter.limit("60/minute")
@router.post("/trade-ins/{trade_in_id}/tracking/refresh", response_model=TradeInOut)
def refresh_tracking(request: Request, trade_in_id: str) -> TradeInOut:
    return TradeInOut.from_item(_unwrap(_controller(request).refresh_tracking(trade_in_id)))


@limiter.limit("60/minute")
@router.post("/trade-ins/{trade_in_id}/transitions", response_model=TradeInOut)
def apply_transition(request: Request, trade_in_id: str, body: TransitionRequest) -> TradeInOut:
    """Fire carrier_pickup, carrier_delivered or open_inspection directly."""
    item = _unwrap(_controller(request).transition(trade_in_id, body.event, actor=body.actor, note=body.note))
    return TradeInOut.from_item(item)


@limiter.limit("60/minute")
@router.get("/tracking/{tracking_number}", response_model=ShipmentTrackingOut)
def get_tracking(request: Request, tracking_number: str) -> ShipmentTrackingOut:
    tracking = _unwrap(_controller(request).get_shipment_tracking(tracking_number))
    return ShipmentTrackingOut.model_validate(tracking)


# ---------------------------------------------------------------------------
# Inspection, adjustment and credit
# ---------------------------------------------------------------------------


@limiter.limit("30/minute")
@router.post("/trade-ins/{trade_in_id}/inspection", response_model=InspectionOut, status_code=201)
def record_inspection(request: Request, trade_in_id: str, body: InspectionCreate) -> InspectionOut:
    inspection = _unwrap(
        _controller(request).record_inspection(
            trade_in_id,
            actual_condition=body.actual_condition,
            final_value=body.final_value,
            estimated_value=body.estimated_value,
            adjustment_reason=body.adjustment_reason,
            requires_approval=body.requires_approval,
            inspector=body.inspector,
        )
    )
    return InspectionOut.model_validate(inspection)


@limiter.limit("30/minute")
@router.post("/trade-ins/{trade_in_id}/adjustments", response_model=AdjustmentOut, status_code=201)
def create_adjustment(request: Request, trade_in_id: str, body: AdjustmentCreate) -> AdjustmentOut:
    adjustment = _unwrap(
        _controller(request).create_value_adjustment(
            trade_in_id,
            original_value=body.original_value,
            new_value=body.new_value,
            reason=body.reason,
        )
    )
    return AdjustmentOut.model_validate(adjustment)


@limiter.limit("30/minute")
@router.post("/trade-ins/{trade_in_id}/adjustments/{adjustment_id}/accept", response_model=TradeInOut)
def accept_adjustment(request: Request, trade_in_id: str, adjustment_id: str) -> TradeInOut:
    """Accept the adjusted value; the trade-in is credited in the same step."""
    return TradeInOut.from_item(_unwrap(_controller(request).accept_adjustment(trade_in_id, adjustment_id)))


@limiter.limit("30/minute")
@router.post("/trade-ins/{trade_in_id}/adjustments/{adjustment_id}/dispute", response_model=TradeInOut)
def dispute_adjustment(request: Request, trade_in_id: str, adjustment_id: str, body: DisputeRequest) -> TradeInOut:
    item = _unwrap(_controller(request).dispute_adjustment(trade_in_id, adjustment_id, body.reason))
    return TradeInOut.from_item(item)


@limiter.limit("30/minute")
@router.post("/trade-ins/{trade_in_id}/adjustments/{adjustment_id}/device-returned", response_model=TradeInOut)
def mark_device_returned(request: Request, trade_in_id: str, adjustment_id: str) -> TradeInOut:
    return TradeInOut.from_item(_unwrap(_controller(request).mark_device_returned(trade_in_id, adjustment_id)))


@limiter.limit("30/minute")
@router.post("/trade-ins/{trade_in_id}/credit", response_model=TradeInOut)
def apply_credit(request: Request, trade_in_id: str, body: CreditRequest) -> TradeInOut:
    """Credit an inspected trade-in. Calling again returns the original credit."""
    item = _unwrap(_controller(request).apply_credit(trade_in_id, body.amount, actor=body.actor))
    return TradeInOut.from_item(item)
