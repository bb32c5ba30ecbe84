"""
shipping/models.py -- Carrier-agnostic shipping dataclasses.

Every carrier implementation returns these, so swapping the mock carrier for a
real FedEx/UPS/USPS/DHL integration does not change the trade-in controller.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class ShipmentStatus(str, Enum):
    label_created = "label_created"
    in_transit = "in_transit"
    delivered = "delivered"
    exception = "exception"


@dataclass
class ShippingLabel:
    """Prepaid return label. One per trade-in, never re-issued."""

    label_id: str
    tracking_number: str
    carrier: str
    label_url: str
    created_at: str  # ISO 8601
    expires_at: str  # ISO 8601, created_at + label TTL


@dataclass
class TrackingEvent:
    timestamp: str  # ISO 8601
    status: str
    location: str
    description: str


@dataclass
class ShipmentTracking:
    """Carrier view of a shipment. events are ordered newest first."""

    tracking_number: str
    carrier: str
    status: ShipmentStatus
    events: list[TrackingEvent] = field(default_factory=list)
    current_location: Optional[str] = None
    estimated_delivery: Optional[str] = None
    tracking_url: Optional[str] = None
