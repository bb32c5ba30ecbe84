"""
tests/test_shipping.py -- Unit tests for shipping/carriers.py.

Covers:
  - label issuance: unique tracking numbers, 1Z999AA1 format, 30-day expiry
  - labels past their TTL are forgotten unless shipped_at is supplied
  - tracking: newest-first events, Label Created always present
  - timeline only grows as the clock advances, ending in delivered
  - unknown tracking numbers resolve only when shipped_at is supplied
  - public tracking URLs per carrier
"""

import re
from datetime import datetime, timedelta, timezone

import pytest

from core.models import parse_timestamp
from shipping.carriers import MockCarrier, ShippingAdapter, tracking_url
from shipping.models import ShipmentStatus

_START = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class _Clock:
    """Settable clock so tests can move time forward."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return _Clock(_START)


@pytest.fixture
def carrier(clock):
    return MockCarrier(now=clock)


# ---------------------------------------------------------------------------
# Labels
# ---------------------------------------------------------------------------


class TestIssueLabel:
    def test_is_a_shipping_adapter(self, carrier):
        assert isinstance(carrier, ShippingAdapter)
        assert carrier.carrier_name == "FedEx"

    def test_tracking_number_format(self, carrier):
        label = carrier.issue_label("TI-1")
        assert re.fullmatch(r"1Z999AA1[0-9A-Z]{8}", label.tracking_number)
        assert label.carrier == "FedEx"
        assert label.label_id.startswith("LBL-")
        assert label.label_url == f"/api/trade-in/label-pdf/{label.label_id}"

    def test_two_labels_are_distinct(self, carrier):
        """Two trade-ins never share a tracking number or label id."""
        a = carrier.issue_label("TI-A")
        b = carrier.issue_label("TI-B")
        assert a.tracking_number != b.tracking_number
        assert a.label_id != b.label_id

    def test_many_labels_unique(self, carrier):
        numbers = {carrier.issue_label(f"TI-{i}").tracking_number for i in range(200)}
        assert len(numbers) == 200

    def test_label_expires_after_ttl(self, carrier):
        label = carrier.issue_label("TI-1")
        created = parse_timestamp(label.created_at)
        assert created == _START
        assert parse_timestamp(label.expires_at) - created == timedelta(days=30)

    def test_custom_label_ttl(self, clock):
        label = MockCarrier(label_ttl_days=10, now=clock).issue_label("TI-1")
        assert parse_timestamp(label.expires_at) - parse_timestamp(label.created_at) == timedelta(days=10)

    def test_expired_labels_are_forgotten(self, carrier, clock):
        old = carrier.issue_label("TI-old")
        clock.advance(days=31)
        carrier.issue_label("TI-new")
        assert carrier.track(old.tracking_number) is None
        # Still trackable from the caller's own record of the label.
        tracking = carrier.track(old.tracking_number, shipped_at=old.created_at)
        assert tracking.status == ShipmentStatus.delivered

    def test_unexpired_labels_are_kept(self, carrier, clock):
        label = carrier.issue_label("TI-1")
        clock.advance(days=29)
        carrier.issue_label("TI-2")
        assert carrier.track(label.tracking_number) is not None


# ---------------------------------------------------------------------------
# Tracking
# ---------------------------------------------------------------------------


class TestTrack:
    def test_fresh_label_shows_label_created_only(self, carrier):
        label = carrier.issue_label("TI-1")
        tracking = carrier.track(label.tracking_number)
        assert tracking.status == ShipmentStatus.label_created
        assert [e.status for e in tracking.events] == ["Label Created"]
        assert tracking.events[0].description == "Shipping label created"
        assert tracking.estimated_delivery is not None

    def test_events_newest_first(self, carrier, clock):
        label = carrier.issue_label("TI-1")
        clock.advance(days=2, hours=1)
        tracking = carrier.track(label.tracking_number)
        timestamps = [parse_timestamp(e.timestamp) for e in tracking.events]
        assert timestamps == sorted(timestamps, reverse=True)
        assert tracking.events[-1].status == "Label Created"
        assert tracking.status == ShipmentStatus.in_transit
        assert tracking.current_location == tracking.events[0].location

    def test_timeline_only_grows(self, carrier, clock):
        label = carrier.issue_label("TI-1")
        previous = carrier.track(label.tracking_number).events
        for _ in range(8):
            clock.advance(hours=12)
            current = carrier.track(label.tracking_number).events
            assert len(current) >= len(previous)
            # Every earlier event is still reported, unchanged.
            assert current[len(current) - len(previous) :] == previous
            previous = current

    def test_delivered_after_three_days(self, carrier, clock):
        label = carrier.issue_label("TI-1")
        clock.advance(days=3)
        tracking = carrier.track(label.tracking_number)
        assert tracking.status == ShipmentStatus.delivered
        assert tracking.events[0].status == "Delivered"
        assert tracking.estimated_delivery is None
        assert len(tracking.events) == 5

    def test_descriptions_name_the_carrier(self, clock):
        carrier = MockCarrier(carrier="UPS", now=clock)
        label = carrier.issue_label("TI-1")
        clock.advance(days=1)
        tracking = carrier.track(label.tracking_number)
        assert tracking.events[0].description == "Picked up by UPS"
        assert tracking.tracking_url == tracking_url("UPS", label.tracking_number)

    def test_unknown_tracking_number(self, carrier):
        assert carrier.track("1Z999AA1NOTREAL0") is None

    def test_unknown_tracking_number_with_shipped_at(self, carrier, clock):
        """A label issued before a restart is rebuilt from its creation time."""
        shipped = (_START - timedelta(days=4)).isoformat()
        tracking = carrier.track("1Z999AA1OLDLABEL", shipped_at=shipped)
        assert tracking is not None
        assert tracking.status == ShipmentStatus.delivered

    def test_unparseable_shipped_at(self, carrier):
        assert carrier.track("1Z999AA1OLDLABEL", shipped_at="not-a-date") is None


class TestTrackingUrl:
    @pytest.mark.parametrize(
        "carrier,fragment",
        [
            ("UPS", "ups.com"),
            ("FedEx", "fedex.com"),
            ("usps", "usps.com"),
            (" DHL ", "dhl.com"),
        ],
    )
    def test_known_carriers(self, carrier, fragment):
        url = tracking_url(carrier, "1Z999AA100000000")
        assert fragment in url
        assert url.endswith("1Z999AA100000000")

    def test_unknown_carrier(self):
        assert tracking_url("Pigeon Post", "123") is None
