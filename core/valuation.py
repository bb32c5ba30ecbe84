"""
valuation.py -- Local valuation engine: device lookup, pricing and FindMy checks.

ValuationEngine is the mock-mode provider (and the reference pricing rules).
core/fetcher.AlchemyClient exposes the same three methods against the partner
API; build_provider() picks one based on settings. Callers only ever see the
response dataclasses from core/models.py -- both providers report failures as
success=False results instead of raising.

No persistence here. Issued valuations are registered by the caller
(see cache/store.ValuationCache).
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .catalog import DeviceCatalog
from .config import Settings
from .grading import condition_multiplier, grade_condition
from .models import (
    ConditionAssessment,
    ConditionGrade,
    DeviceLookupResponse,
    FindMyStatusResponse,
    ValuationBreakdown,
    ValuationResponse,
    new_id,
    normalize_serial,
)

logger = logging.getLogger("equipped.valuation")

NOT_FOUND_MESSAGE = "Device not found. Please check the serial number and try again."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def round_half_up(value: float) -> int:
    """Round to the nearest whole dollar, .5 going up (not banker's rounding)."""
    return int(math.floor(value + 0.5))


class ValuationEngine:
    def __init__(
        self,
        catalog: DeviceCatalog,
        valuation_ttl_days: int = 30,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.catalog = catalog
        self.valuation_ttl_days = valuation_ttl_days
        self._now = now or _utcnow

    def lookup_device(self, serial: str) -> DeviceLookupResponse:
        """Resolve a serial to a DeviceModel: exact match, then prefix pattern."""
        normalized = normalize_serial(serial)
        device = self.catalog.find_exact(normalized)
        if device is None:
            device = self.catalog.find_by_pattern(normalized)
        if device is None:
            return DeviceLookupResponse(success=False, serial=normalized, error=NOT_FOUND_MESSAGE)
        return DeviceLookupResponse(success=True, serial=normalized, device=device)

    def get_valuation(self, serial: str, model: str, condition: ConditionAssessment) -> ValuationResponse:
        """Grade the device and price it against the catalog's base value.

        final = round(base * multiplier). The offer expires valuation_ttl_days
        after issuance.
        """
        issued = self._now()
        try:
            base_value, known = self.catalog.base_value(model)
        except (LookupError, TypeError, ValueError) as exc:
            logger.warning("Base value lookup failed for model %r: %s", model, exc)
            return ValuationResponse(
                success=False,
                serial=serial,
                model=model,
                condition_grade=ConditionGrade.poor,
                estimated_value=0,
                expires_at="",
                valuation_id="",
                error=f"Failed to get valuation: {exc}",
            )
        if not known:
            logger.info("No base value for model %r, using fallback %.0f", model, base_value)

        grade = grade_condition(condition)
        multiplier = condition_multiplier(grade)
        final_value = round_half_up(base_value * multiplier)

        return ValuationResponse(
            success=True,
            serial=serial,
            model=model,
            condition_grade=grade,
            estimated_value=final_value,
            original_value=base_value,
            breakdown=ValuationBreakdown(
                base_value=base_value,
                condition_multiplier=multiplier,
                final_value=final_value,
            ),
            issued_at=issued.isoformat(),
            expires_at=(issued + timedelta(days=self.valuation_ttl_days)).isoformat(),
            valuation_id=new_id("VAL"),
        )

    def check_find_my(self, serial: str) -> FindMyStatusResponse:
        """Mock activation-lock check: serials ending in X are locked."""
        normalized = normalize_serial(serial)
        locked = normalized.endswith("X")
        return FindMyStatusResponse(
            success=True,
            serial=normalized,
            find_my_enabled=locked,
            activation_locked=locked,
        )


def build_provider(settings: Settings, catalog: DeviceCatalog):
    """Return the valuation provider for this deployment.

    AlchemyClient when a partner API key is configured (and DEBUG is off),
    otherwise the local ValuationEngine backed by catalog.
    """
    if settings.use_remote_valuations:
        from .fetcher import AlchemyClient

        logger.info("Using remote valuation provider at %s", settings.alchemy_api_url)
        return AlchemyClient(settings.alchemy_api_url, settings.alchemy_api_key)
    logger.info("Using local valuation engine (mock mode)")
    return ValuationEngine(catalog, valuation_ttl_days=settings.valuation_ttl_days)
