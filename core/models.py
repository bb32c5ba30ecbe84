"""
core/models.py -- Domain dataclasses for device lookup and valuation.

Pure data containers. Grading lives in core/grading.py and pricing in
core/valuation.py. The trade-in lifecycle has its own models in
tradein/models.py; it imports from here, never the other way around.
"""

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

# Serial numbers are upper-case alphanumerics. A domain rule shared by the CLI
# and the API layer.
SERIAL_PATTERN = r"^[A-Z0-9]{8,20}$"


def new_id(prefix: str) -> str:
    """Return a log-greppable identifier like VAL-1718000000000-K3J9QZ."""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


def normalize_serial(serial: str) -> str:
    return serial.strip().upper()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC. Raises ValueError."""
    if not isinstance(value, str):
        raise ValueError(f"not a timestamp: {value!r}")
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class ConditionGrade(str, Enum):
    excellent = "excellent"
    good = "good"
    fair = "fair"
    poor = "poor"

    @property
    def rank(self) -> int:
        """Desirability order: poor=0 ... excellent=3."""
        return _GRADE_RANK[self]


_GRADE_RANK: dict[ConditionGrade, int] = {
    ConditionGrade.poor: 0,
    ConditionGrade.fair: 1,
    ConditionGrade.good: 2,
    ConditionGrade.excellent: 3,
}


@dataclass
class ConditionAssessment:
    """Answers to the fixed condition rubric.

    cosmetic_damage is phrased as a defect: True means damage is present.
    The optional answers default to "fine" when grading.
    """

    power_on: bool
    screen_condition: bool
    cosmetic_damage: bool
    keyboard_trackpad: bool
    battery_health: Optional[bool] = None
    ports_working: Optional[bool] = None
    find_my_disabled: Optional[bool] = None


@dataclass
class DeviceModel:
    model: str
    year: int
    color: str
    storage: Optional[str] = None
    specs: dict[str, str] = field(default_factory=dict)
    image_url: Optional[str] = None


@dataclass
class DeviceLookupResponse:
    success: bool
    serial: str
    device: Optional[DeviceModel] = None
    error: Optional[str] = None


@dataclass
class ValuationBreakdown:
    base_value: float
    condition_multiplier: float
    final_value: int


@dataclass
class ValuationResponse:
    """A time-limited offer. Immutable once issued; request a new one after expiry."""

    success: bool
    serial: str
    model: str
    condition_grade: ConditionGrade
    estimated_value: int
    expires_at: str  # ISO 8601
    valuation_id: str
    original_value: Optional[float] = None
    breakdown: Optional[ValuationBreakdown] = None
    issued_at: str = ""  # ISO 8601
    error: Optional[str] = None


@dataclass
class FindMyStatusResponse:
    """Activation-lock status. A locked device is not eligible for trade-in."""

    success: bool
    serial: str
    find_my_enabled: bool
    activation_locked: bool
    error: Optional[str] = None
