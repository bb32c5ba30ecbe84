"""
tradein/lifecycle.py -- Trade-in state machine and the controller that drives it.

State machine (TRANSITIONS):
    quote       --issue_label-------> label_sent
    label_sent  --carrier_pickup----> in_transit
    label_sent  --carrier_delivered-> received     (pickup scan missed)
    in_transit  --carrier_delivered-> received
    received    --open_inspection---> inspecting
    inspecting  --apply_credit------> credited     [terminal]
    inspecting  --dispute-----------> disputed     [terminal, manual resolution]

Every status change goes through _transition(), which validates against the
table and produces the StatusChange audit row that is saved in the same
transaction as the new status. Operations that carry data (label, inspection,
adjustment, credit) mutate the loaded aggregate and persist it with one
versioned save.

Failure semantics: public controller methods never raise domain errors.
They return an OperationResult whose error.kind is one of ErrorKind; only
unexpected storage failures propagate. A lost optimistic-concurrency race is
reported as ErrorKind.conflict and the caller may retry.

Usage:
    controller = TradeInController(store, valuations, provider, carrier)
    result = controller.create_trade_in_from_valuation("VAL-...", 850)
    if result.ok:
        label = controller.generate_shipping_label(result.value.id).value
"""

import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from cache.store import ValuationCache
from core.models import ConditionGrade, new_id, parse_timestamp
from shipping.carriers import CarrierError, ShippingAdapter
from shipping.models import ShipmentStatus, ShipmentTracking, ShippingLabel

from .models import (
    AdjustmentStatus,
    InspectionResult,
    StatusChange,
    TradeInEvent,
    TradeInItem,
    TradeInStatus,
    ValueAdjustment,
)
from .store import DuplicateValuationError, StaleVersionError, TradeInStore

logger = logging.getLogger("equipped.lifecycle")

# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

TRANSITIONS: dict[tuple[TradeInStatus, TradeInEvent], TradeInStatus] = {
    (TradeInStatus.quote, TradeInEvent.issue_label): TradeInStatus.label_sent,
    (TradeInStatus.label_sent, TradeInEvent.carrier_pickup): TradeInStatus.in_transit,
    (TradeInStatus.label_sent, TradeInEvent.carrier_delivered): TradeInStatus.received,
    (TradeInStatus.in_transit, TradeInEvent.carrier_delivered): TradeInStatus.received,
    (TradeInStatus.received, TradeInEvent.open_inspection): TradeInStatus.inspecting,
    (TradeInStatus.inspecting, TradeInEvent.apply_credit): TradeInStatus.credited,
    (TradeInStatus.inspecting, TradeInEvent.dispute): TradeInStatus.disputed,
}

TERMINAL_STATUSES = frozenset({TradeInStatus.credited, TradeInStatus.disputed})

# Events that carry no payload and may be fired directly through transition().
# The others are only reachable through the operation that supplies their data.
MANUAL_EVENTS = frozenset(
    {
        TradeInEvent.carrier_pickup,
        TradeInEvent.carrier_delivered,
        TradeInEvent.open_inspection,
    }
)

_EVENT_OPERATIONS: dict[TradeInEvent, str] = {
    TradeInEvent.issue_label: "generate_shipping_label",
    TradeInEvent.apply_credit: "apply_credit",
    TradeInEvent.dispute: "dispute_adjustment",
}


def allowed_events(status: TradeInStatus) -> list[TradeInEvent]:
    """Events accepted from status, in declaration order."""
    return [event for (source, event) in TRANSITIONS if source == status]


def next_status(status: TradeInStatus, event: TradeInEvent) -> TradeInStatus:
    """Return the status reached by event, or raise an invalid-state TradeInError."""
    target = TRANSITIONS.get((status, event))
    if target is None:
        allowed = allowed_events(status)
        allowed_text = ", ".join(e.value for e in allowed) if allowed else "none (terminal status)"
        raise TradeInError(
            ErrorKind.invalid_state,
            f"Cannot apply '{event.value}' to a trade-in in status '{status.value}'. "
            f"Allowed events: {allowed_text}.",
            detail={"status": status.value, "allowed_events": [e.value for e in allowed]},
        )
    return target


# ---------------------------------------------------------------------------
# Results and errors
# ---------------------------------------------------------------------------


class ErrorKind(str, Enum):
    not_found = "not_found"
    invalid_state = "invalid_state"
    validation = "validation"
    conflict = "conflict"
    upstream = "upstream"


@dataclass
class OperationError:
    kind: ErrorKind
    message: str
    detail: Optional[dict] = None


@dataclass
class OperationResult:
    """Outcome of a controller operation: value when ok, error otherwise."""

    ok: bool
    value: Any = None
    error: Optional[OperationError] = None

    @classmethod
    def success(cls, value: Any = None) -> "OperationResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, detail: Optional[dict] = None) -> "OperationResult":
        return cls(ok=False, error=OperationError(kind=kind, message=message, detail=detail))


class TradeInError(Exception):
    """Domain failure raised inside the controller and converted to a result at its boundary."""

    def __init__(self, kind: ErrorKind, message: str, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.detail = detail


def _operation(fn: Callable) -> Callable:
    """Wrap a controller method so domain failures come back as OperationResult."""

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs) -> OperationResult:
        try:
            return OperationResult.success(fn(self, *args, **kwargs))
        except TradeInError as exc:
            if exc.kind == ErrorKind.upstream:
                logger.warning("%s failed upstream: %s", fn.__name__, exc.message)
            return OperationResult.failure(exc.kind, exc.message, exc.detail)
        except StaleVersionError as exc:
            return OperationResult.failure(
                ErrorKind.conflict,
                f"Trade-in {exc} was modified concurrently. Reload and retry.",
            )

    return wrapper


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_text(value: Optional[str], field_name: str) -> str:
    if value is None or not value.strip():
        raise TradeInError(ErrorKind.validation, f"{field_name} is required", detail={"field": field_name})
    return value.strip()


def _require_non_negative(value: float, field_name: str) -> float:
    if value is None or value < 0:
        raise TradeInError(ErrorKind.validation, f"{field_name} must be >= 0", detail={"field": field_name})
    return value


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class TradeInController:
    def __init__(
        self,
        store: TradeInStore,
        valuations: ValuationCache,
        provider,
        carrier: ShippingAdapter,
        trade_in_ttl_days: int = 30,
        adjustment_tolerance: float = 0.0,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.valuations = valuations
        self.provider = provider  # ValuationEngine or AlchemyClient
        self.carrier = carrier
        self.trade_in_ttl_days = trade_in_ttl_days
        self.adjustment_tolerance = adjustment_tolerance
        self._now = now or _utcnow

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @_operation
    def create_trade_in_from_valuation(self, valuation_id: str, estimated_value: float) -> TradeInItem:
        """Accept an issued valuation and open a trade-in in 'quote'."""
        valuation_id = _require_text(valuation_id, "valuation_id")
        valuation = self.valuations.get(valuation_id, include_expired=True)
        if valuation is None:
            raise TradeInError(ErrorKind.not_found, f"Valuation {valuation_id} not found")
        if not valuation.success:
            raise TradeInError(ErrorKind.invalid_state, f"Valuation {valuation_id} was not successful")

        now = self._now()
        try:
            valuation_expires = parse_timestamp(valuation.expires_at)
        except ValueError:
            raise TradeInError(
                ErrorKind.upstream,
                f"Valuation {valuation_id} has an unreadable expiry {valuation.expires_at!r}",
            ) from None
        if valuation_expires <= now:
            raise TradeInError(
                ErrorKind.invalid_state,
                f"Valuation {valuation_id} expired at {valuation.expires_at}. Request a new valuation.",
            )
        if estimated_value is None or estimated_value <= 0 or estimated_value > valuation.estimated_value:
            raise TradeInError(
                ErrorKind.validation,
                f"estimated_value must be greater than 0 and at most the offered {valuation.estimated_value}",
                detail={"field": "estimated_value"},
            )

        existing = self.store.get_by_valuation_id(valuation_id)
        if existing is not None:
            raise TradeInError(
                ErrorKind.invalid_state,
                f"Valuation {valuation_id} was already accepted as trade-in {existing.id}",
            )

        lock = self.provider.check_find_my(valuation.serial)
        if not lock.success:
            raise TradeInError(ErrorKind.upstream, lock.error or "Activation lock check failed")
        if lock.activation_locked:
            raise TradeInError(
                ErrorKind.invalid_state,
                f"Device {valuation.serial} is activation-locked. Disable Find My before trading it in.",
            )

        year, color = 0, "Unknown"
        lookup = self.provider.lookup_device(valuation.serial)
        if lookup.success and lookup.device is not None:
            year, color = lookup.device.year, lookup.device.color
        else:
            logger.warning("No device record for %s: %s", valuation.serial, lookup.error)

        item = TradeInItem(
            id=new_id("TI"),
            serial=valuation.serial,
            model=valuation.model,
            year=year,
            color=color,
            condition_grade=valuation.condition_grade,
            estimated_value=estimated_value,
            valuation_id=valuation_id,
            expires_at=(now + timedelta(days=self.trade_in_ttl_days)).isoformat(),
            status=TradeInStatus.quote,
            created_at=now.isoformat(),
        )
        try:
            self.store.create(item)
        except DuplicateValuationError:
            raise TradeInError(
                ErrorKind.invalid_state, f"Valuation {valuation_id} was already accepted"
            ) from None
        logger.info("Created trade-in %s from %s (%s, $%s)", item.id, valuation_id, item.model, estimated_value)
        return item

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @_operation
    def transition(
        self,
        trade_in_id: str,
        event: TradeInEvent,
        actor: Optional[str] = None,
        note: Optional[str] = None,
    ) -> TradeInItem:
        """Fire a payload-free event (carrier scans, opening inspection) against a trade-in."""
        item = self._load(trade_in_id)
        if event not in MANUAL_EVENTS:
            raise TradeInError(
                ErrorKind.validation,
                f"Event '{event.value}' must be applied through {_EVENT_OPERATIONS[event]}",
                detail={"field": "event"},
            )
        expected = item.version
        change = self._transition(item, event, actor=actor, note=note)
        return self.store.save(item, expected, change)

    def _transition(
        self,
        item: TradeInItem,
        event: TradeInEvent,
        actor: Optional[str] = None,
        note: Optional[str] = None,
    ) -> StatusChange:
        target = next_status(item.status, event)
        change = StatusChange(
            trade_in_id=item.id,
            from_status=item.status,
            to_status=target,
            event=event,
            changed_at=self._now().isoformat(),
            actor=actor,
            note=note,
        )
        item.status = target
        logger.info("Trade-in %s: %s -> %s (%s)", item.id, change.from_status.value, target.value, event.value)
        return change

    # ------------------------------------------------------------------
    # Shipping
    # ------------------------------------------------------------------

    @_operation
    def generate_shipping_label(self, trade_in_id: str, actor: Optional[str] = None) -> ShippingLabel:
        """Issue the prepaid return label and move the trade-in to label_sent.

        Idempotent: once a label exists it is returned unchanged.
        """
        item = self._load(trade_in_id)
        if item.shipping_label is not None:
            return item.shipping_label

        next_status(item.status, TradeInEvent.issue_label)
        if parse_timestamp(item.expires_at) <= self._now():
            raise TradeInError(
                ErrorKind.invalid_state,
                f"Quote for trade-in {item.id} expired at {item.expires_at}. Request a new valuation.",
            )

        expected = item.version
        try:
            label = self.carrier.issue_label(item.id)
            tracking = self.carrier.track(label.tracking_number, shipped_at=label.created_at)
        except CarrierError as exc:
            raise TradeInError(ErrorKind.upstream, f"Carrier could not issue a label: {exc}") from exc
        item.shipping_label = label
        item.tracking = tracking
        change = self._transition(item, TradeInEvent.issue_label, actor=actor)
        self.store.save(item, expected, change)
        return label

    @_operation
    def get_shipment_tracking(self, tracking_number: str) -> ShipmentTracking:
        """Relay the carrier's current view of a shipment (events newest first)."""
        tracking_number = _require_text(tracking_number, "tracking_number")
        try:
            tracking = self.carrier.track(tracking_number)
            if tracking is None:
                # Labels issued before a restart are only known to our own records.
                item = self.store.get_by_tracking_number(tracking_number)
                if item is not None and item.shipping_label is not None:
                    tracking = self.carrier.track(tracking_number, shipped_at=item.shipping_label.created_at)
        except CarrierError as exc:
            raise TradeInError(ErrorKind.upstream, f"Carrier tracking failed: {exc}") from exc
        if tracking is None:
            raise TradeInError(ErrorKind.not_found, f"No shipment found for tracking number {tracking_number}")
        return tracking

    @_operation
    def refresh_tracking(self, trade_in_id: str) -> TradeInItem:
        """Poll the carrier and apply the pickup/delivery transition it reports."""
        item = self._load(trade_in_id)
        label = item.shipping_label
        if label is None:
            raise TradeInError(ErrorKind.invalid_state, f"Trade-in {item.id} has no shipping label yet")
        tracking = self._track(label.tracking_number, label.created_at)
        if tracking is None:
            raise TradeInError(ErrorKind.upstream, f"Carrier has no record of {label.tracking_number}")

        expected = item.version
        item.tracking = tracking
        change = None
        if tracking.status == ShipmentStatus.delivered and item.status in (
            TradeInStatus.label_sent,
            TradeInStatus.in_transit,
        ):
            change = self._transition(item, TradeInEvent.carrier_delivered, actor=tracking.carrier)
        elif tracking.status == ShipmentStatus.in_transit and item.status == TradeInStatus.label_sent:
            change = self._transition(item, TradeInEvent.carrier_pickup, actor=tracking.carrier)
        return self.store.save(item, expected, change)

    def _track(self, tracking_number: str, shipped_at: str) -> Optional[ShipmentTracking]:
        try:
            return self.carrier.track(tracking_number, shipped_at=shipped_at)
        except CarrierError as exc:
            raise TradeInError(ErrorKind.upstream, f"Carrier tracking failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Inspection and adjustment
    # ------------------------------------------------------------------

    @_operation
    def record_inspection(
        self,
        trade_in_id: str,
        actual_condition: ConditionGrade,
        final_value: float,
        estimated_value: Optional[float] = None,
        adjustment_reason: Optional[str] = None,
        requires_approval: Optional[bool] = None,
        inspector: Optional[str] = None,
    ) -> InspectionResult:
        """Record the one inspection of a received device.

        A final value outside the adjustment tolerance needs a reason and
        always requires customer approval. The comparison is always against
        the accepted quote; a caller-supplied estimated_value must match it.
        """
        try:
            grade = ConditionGrade(actual_condition)
        except ValueError:
            raise TradeInError(
                ErrorKind.validation,
                f"actual_condition must be one of: {', '.join(g.value for g in ConditionGrade)}",
                detail={"field": "actual_condition"},
            ) from None
        _require_non_negative(final_value, "final_value")
        item = self._load(trade_in_id)
        if item.inspection is not None:
            raise TradeInError(
                ErrorKind.invalid_state,
                f"Trade-in {item.id} was already inspected ({item.inspection.inspection_id})",
            )

        estimated = item.estimated_value
        if estimated_value is not None and estimated_value != estimated:
            raise TradeInError(
                ErrorKind.validation,
                f"estimated_value {estimated_value} does not match the accepted quote {estimated}",
                detail={"field": "estimated_value"},
            )
        reason = adjustment_reason.strip() if adjustment_reason else None
        differs = abs(final_value - estimated) > self.adjustment_tolerance
        if differs:
            if not reason:
                raise TradeInError(
                    ErrorKind.validation,
                    "adjustment_reason is required when final_value differs from estimated_value",
                    detail={"field": "adjustment_reason"},
                )
            if requires_approval is False:
                raise TradeInError(
                    ErrorKind.validation,
                    "requires_approval must be true when final_value differs from estimated_value",
                    detail={"field": "requires_approval"},
                )
            approval = True
        else:
            approval = bool(requires_approval)

        expected = item.version
        change = None
        if item.status != TradeInStatus.inspecting:
            change = self._transition(item, TradeInEvent.open_inspection, actor=inspector)

        inspection = InspectionResult(
            inspection_id=new_id("INS"),
            inspected_at=self._now().isoformat(),
            actual_condition=grade,
            estimated_value=estimated,
            final_value=final_value,
            requires_approval=approval,
            adjustment_reason=reason,
            inspector=inspector,
        )
        item.inspection = inspection
        item.final_value = final_value
        self.store.save(item, expected, change)
        logger.info(
            "Inspected %s: %s, $%s -> $%s%s",
            item.id,
            inspection.actual_condition.value,
            estimated,
            final_value,
            " (approval required)" if approval else "",
        )
        return inspection

    @_operation
    def create_value_adjustment(
        self,
        trade_in_id: str,
        original_value: float,
        new_value: float,
        reason: str,
    ) -> ValueAdjustment:
        reason = _require_text(reason, "reason")
        _require_non_negative(original_value, "original_value")
        _require_non_negative(new_value, "new_value")
        item = self._load(trade_in_id)
        if item.status != TradeInStatus.inspecting:
            raise TradeInError(
                ErrorKind.invalid_state,
                f"Value adjustments require status 'inspecting'; trade-in {item.id} is '{item.status.value}'",
            )
        if item.inspection is None or not item.inspection.requires_approval:
            raise TradeInError(
                ErrorKind.invalid_state,
                f"Trade-in {item.id} has no inspection requiring approval",
            )
        if item.adjustment is not None:
            raise TradeInError(
                ErrorKind.invalid_state,
                f"Trade-in {item.id} already has adjustment {item.adjustment.adjustment_id} "
                f"({item.adjustment.status.value})",
            )

        expected = item.version
        adjustment = ValueAdjustment(
            adjustment_id=new_id("ADJ"),
            original_value=original_value,
            new_value=new_value,
            reason=reason,
            created_at=self._now().isoformat(),
        )
        item.adjustment = adjustment
        self.store.save(item, expected)
        logger.info("Adjustment %s on %s: $%s -> $%s", adjustment.adjustment_id, item.id, original_value, new_value)
        return adjustment

    @_operation
    def accept_adjustment(self, trade_in_id: str, adjustment_id: str, actor: Optional[str] = None) -> TradeInItem:
        """Approve the adjustment and credit its new value in one transaction."""
        item = self._load(trade_in_id)
        adjustment = self._adjustment(item, adjustment_id)
        if adjustment.status == AdjustmentStatus.approved and item.status == TradeInStatus.credited:
            return item
        self._require_pending(adjustment)

        expected = item.version
        now = self._now().isoformat()
        change = self._transition(item, TradeInEvent.apply_credit, actor=actor, note=f"accepted {adjustment_id}")
        adjustment.status = AdjustmentStatus.approved
        adjustment.resolved_at = now
        item.final_value = adjustment.new_value
        item.credit_amount = adjustment.new_value
        item.credited_at = now
        self.store.save(item, expected, change)
        logger.info("Credited %s $%s via adjustment %s", item.id, item.credit_amount, adjustment_id)
        return item

    @_operation
    def dispute_adjustment(
        self,
        trade_in_id: str,
        adjustment_id: str,
        reason: str,
        actor: Optional[str] = None,
    ) -> TradeInItem:
        reason = _require_text(reason, "reason")
        item = self._load(trade_in_id)
        adjustment = self._adjustment(item, adjustment_id)
        self._require_pending(adjustment)

        expected = item.version
        change = self._transition(item, TradeInEvent.dispute, actor=actor, note=reason)
        adjustment.status = AdjustmentStatus.disputed
        adjustment.dispute_reason = reason
        adjustment.resolved_at = self._now().isoformat()
        return self.store.save(item, expected, change)

    @_operation
    def mark_device_returned(self, trade_in_id: str, adjustment_id: str) -> TradeInItem:
        """Close out a disputed adjustment by shipping the device back. Status stays disputed."""
        item = self._load(trade_in_id)
        adjustment = self._adjustment(item, adjustment_id)
        if adjustment.status == AdjustmentStatus.device_returned:
            return item
        if adjustment.status != AdjustmentStatus.disputed:
            raise TradeInError(
                ErrorKind.invalid_state,
                f"Adjustment {adjustment_id} is '{adjustment.status.value}'; only disputed adjustments can be returned",
            )
        expected = item.version
        adjustment.status = AdjustmentStatus.device_returned
        adjustment.resolved_at = self._now().isoformat()
        logger.info("Device for %s returned to customer", item.id)
        return self.store.save(item, expected)

    def _adjustment(self, item: TradeInItem, adjustment_id: str) -> ValueAdjustment:
        if item.adjustment is None or item.adjustment.adjustment_id != adjustment_id:
            raise TradeInError(ErrorKind.not_found, f"Adjustment {adjustment_id} not found")
        return item.adjustment

    @staticmethod
    def _require_pending(adjustment: ValueAdjustment) -> None:
        if adjustment.status != AdjustmentStatus.pending_approval:
            raise TradeInError(
                ErrorKind.invalid_state,
                f"Adjustment {adjustment.adjustment_id} is '{adjustment.status.value}', "
                "expected 'pending_approval'",
            )

    # ------------------------------------------------------------------
    # Credit
    # ------------------------------------------------------------------

    @_operation
    def apply_credit(self, trade_in_id: str, amount: float, actor: Optional[str] = None) -> TradeInItem:
        """Credit an inspected trade-in at its final value.

        Idempotent once credited: the first credit stands.
        """
        _require_non_negative(amount, "amount")
        item = self._load(trade_in_id)
        if item.status == TradeInStatus.credited:
            return item

        next_status(item.status, TradeInEvent.apply_credit)
        if item.inspection is None:
            raise TradeInError(ErrorKind.invalid_state, f"Trade-in {item.id} has not been inspected")
        if item.inspection.requires_approval and (
            item.adjustment is None or item.adjustment.status != AdjustmentStatus.approved
        ):
            raise TradeInError(
                ErrorKind.invalid_state,
                f"Trade-in {item.id} needs customer approval. Accept the value adjustment to credit it.",
            )
        if amount != item.final_value:
            raise TradeInError(
                ErrorKind.validation,
                f"amount {amount} does not match the inspected final value {item.final_value}",
                detail={"field": "amount", "final_value": item.final_value},
            )

        expected = item.version
        change = self._transition(item, TradeInEvent.apply_credit, actor=actor)
        item.credit_amount = amount
        item.credited_at = self._now().isoformat()
        self.store.save(item, expected, change)
        logger.info("Credited %s $%s", item.id, amount)
        return item

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @_operation
    def get_trade_in_status(self, trade_in_id: str) -> TradeInItem:
        """Full aggregate with live tracking when a label exists. Read-only."""
        item = self._load(trade_in_id)
        label = item.shipping_label
        if label is not None:
            try:
                tracking = self.carrier.track(label.tracking_number, shipped_at=label.created_at)
            except CarrierError as exc:
                logger.warning("Live tracking unavailable for %s: %s", item.id, exc)
                tracking = None
            if tracking is not None:
                item.tracking = tracking
        return item

    @_operation
    def list_trade_ins(self, status: Optional[TradeInStatus] = None) -> list[TradeInItem]:
        return self.store.list_trade_ins(status)

    @_operation
    def get_status_history(self, trade_in_id: str) -> list[StatusChange]:
        self._load(trade_in_id)
        return self.store.get_history(trade_in_id)

    def _load(self, trade_in_id: str) -> TradeInItem:
        trade_in_id = _require_text(trade_in_id, "trade_in_id")
        item = self.store.get(trade_in_id)
        if item is None:
            raise TradeInError(ErrorKind.not_found, f"Trade-in {trade_in_id} not found")
        return item
