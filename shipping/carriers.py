"""
shipping/carriers.py -- Carrier interface and the mock carrier used in development.

ShippingAdapter is the boundary the trade-in controller talks to:
  issue_label(trade_in_id)            -> ShippingLabel
  track(tracking_number, shipped_at)  -> ShipmentTracking | None

MockCarrier synthesizes both locally. Tracking follows a fixed schedule
relative to label creation and only shows events whose time has passed, so
repeated queries for the same shipment never lose events (the timeline only
grows) and always start with "Label Created".
Labels are forgotten once their TTL passes; callers that still need to track
one pass the label creation time as shipped_at.
"""

import logging
import secrets
import string
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from core.models import new_id, parse_timestamp

from .models import ShipmentStatus, ShipmentTracking, ShippingLabel, TrackingEvent

logger = logging.getLogger("equipped.shipping")

_TRACKING_URLS: dict[str, str] = {
    "ups": "https://www.ups.com/track?tracknum={tn}",
    "fedex": "https://www.fedex.com/fedextrack/?trknbr={tn}",
    "usps": "https://tools.usps.com/go/TrackConfirmAction?tLabels={tn}",
    "dhl": "https://www.dhl.com/en/express/tracking.html?AWB={tn}",
}

_TRACKING_ALPHABET = string.digits + string.ascii_uppercase


def tracking_url(carrier: str, tracking_number: str) -> Optional[str]:
    """Return the public tracking page for a carrier, or None if the carrier is unknown."""
    template = _TRACKING_URLS.get(carrier.strip().lower())
    return template.format(tn=tracking_number) if template else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso(value: str) -> Optional[datetime]:
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError):
        return None


class CarrierError(Exception):
    """Raised by a carrier integration when the carrier cannot be reached or answers unexpectedly."""


class ShippingAdapter(ABC):
    @property
    @abstractmethod
    def carrier_name(self) -> str:
        """Human-readable carrier name printed on labels."""

    @abstractmethod
    def issue_label(self, trade_in_id: str) -> ShippingLabel:
        """Create a prepaid return label with a tracking number unique to this carrier."""

    @abstractmethod
    def track(self, tracking_number: str, shipped_at: Optional[str] = None) -> Optional[ShipmentTracking]:
        """Return the current tracking view, or None if the carrier has no such shipment.

        shipped_at is the label creation time known to the caller; carriers
        that cannot resolve tracking numbers from their own records use it.
        """


# (offset from label creation, carrier status text, normalized status, location, description)
_MOCK_SCHEDULE: list[tuple[timedelta, str, ShipmentStatus, str, str]] = [
    (timedelta(0), "Label Created", ShipmentStatus.label_created, "New York, NY", "Shipping label created"),
    (timedelta(days=1), "Picked Up", ShipmentStatus.in_transit, "New York, NY", "Picked up by {carrier}"),
    (timedelta(days=1, hours=12), "In Transit", ShipmentStatus.in_transit, "Atlanta, GA", "Departed {carrier} facility"),
    (timedelta(days=2), "In Transit", ShipmentStatus.in_transit, "Memphis, TN", "Package arrived at {carrier} facility"),
    (timedelta(days=3), "Delivered", ShipmentStatus.delivered, "Memphis, TN", "Delivered to trade-in processing center"),
]

_DELIVERY_OFFSET = timedelta(days=3)


class MockCarrier(ShippingAdapter):
    def __init__(
        self,
        carrier: str = "FedEx",
        label_ttl_days: int = 30,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._carrier = carrier
        self.label_ttl_days = label_ttl_days
        self._now = now or _utcnow
        # tracking number -> label creation time, for unexpired labels issued by this process
        self._issued: dict[str, datetime] = {}

    @property
    def carrier_name(self) -> str:
        return self._carrier

    def _new_tracking_number(self) -> str:
        while True:
            suffix = "".join(secrets.choice(_TRACKING_ALPHABET) for _ in range(8))
            candidate = f"1Z999AA1{suffix}"
            if candidate not in self._issued:
                return candidate

    def _evict_expired(self, now: datetime) -> None:
        cutoff = now - timedelta(days=self.label_ttl_days)
        expired = [tn for tn, created in self._issued.items() if created < cutoff]
        for tn in expired:
            del self._issued[tn]
        if expired:
            logger.debug("Evicted %d expired labels", len(expired))

    def issue_label(self, trade_in_id: str) -> ShippingLabel:
        created = self._now()
        self._evict_expired(created)
        label_id = new_id("LBL")
        tracking_number = self._new_tracking_number()
        self._issued[tracking_number] = created
        logger.info("Issued %s label %s (%s) for %s", self._carrier, label_id, tracking_number, trade_in_id)
        return ShippingLabel(
            label_id=label_id,
            tracking_number=tracking_number,
            carrier=self._carrier,
            label_url=f"/api/trade-in/label-pdf/{label_id}",
            created_at=created.isoformat(),
            expires_at=(created + timedelta(days=self.label_ttl_days)).isoformat(),
        )

    def track(self, tracking_number: str, shipped_at: Optional[str] = None) -> Optional[ShipmentTracking]:
        created = self._issued.get(tracking_number)
        if created is None and shipped_at:
            created = _parse_iso(shipped_at)
        if created is None:
            return None

        now = self._now()
        events: list[TrackingEvent] = []
        status = ShipmentStatus.label_created
        for offset, carrier_status, normalized, location, description in _MOCK_SCHEDULE:
            at = created + offset
            # The label event is always present, even if the clocks disagree slightly.
            if offset and at > now:
                break
            events.append(
                TrackingEvent(
                    timestamp=at.isoformat(),
                    status=carrier_status,
                    location=location,
                    description=description.format(carrier=self._carrier),
                )
            )
            status = normalized
        events.reverse()

        return ShipmentTracking(
            tracking_number=tracking_number,
            carrier=self._carrier,
            status=status,
            events=events,
            current_location=events[0].location,
            estimated_delivery=None if status == ShipmentStatus.delivered else (created + _DELIVERY_OFFSET).isoformat(),
            tracking_url=tracking_url(self._carrier, tracking_number),
        )
