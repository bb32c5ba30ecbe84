"""
fetcher.py -- HTTP client for the Alchemy device-valuation partner API.

Same interface as core/valuation.ValuationEngine: lookup_device, get_valuation,
check_find_my. Every transport or HTTP failure is logged and converted into a
success=False response so callers never see a requests exception.

The partner API speaks camelCase JSON; the _parse_* helpers map it onto the
snake_case dataclasses in core/models.py.
"""

import logging
from dataclasses import asdict
from typing import Any, Optional
from urllib.parse import quote

import requests

from .models import (
    ConditionAssessment,
    ConditionGrade,
    DeviceLookupResponse,
    DeviceModel,
    FindMyStatusResponse,
    ValuationBreakdown,
    ValuationResponse,
    normalize_serial,
    parse_timestamp,
)

logger = logging.getLogger("equipped.fetcher")

_TIMEOUT = 10


def _parse_device(raw: dict[str, Any]) -> DeviceModel:
    return DeviceModel(
        model=raw["model"],
        year=int(raw.get("year", 0)),
        color=raw.get("color", ""),
        storage=raw.get("storage"),
        specs=dict(raw.get("specs") or {}),
        image_url=raw.get("imageUrl"),
    )


def _parse_valuation(raw: dict[str, Any]) -> ValuationResponse:
    success = bool(raw.get("success", False))
    expires_at = raw.get("expiresAt", "")
    if success:
        # Successful quotes must carry a parseable expiry.
        parse_timestamp(expires_at)
    breakdown = None
    if raw.get("breakdown"):
        b = raw["breakdown"]
        breakdown = ValuationBreakdown(
            base_value=float(b["baseValue"]),
            condition_multiplier=float(b["conditionMultiplier"]),
            final_value=int(b["finalValue"]),
        )
    return ValuationResponse(
        success=success,
        serial=raw.get("serial", ""),
        model=raw.get("model", ""),
        condition_grade=ConditionGrade(raw.get("conditionGrade", "poor")),
        estimated_value=int(raw.get("estimatedValue", 0)),
        original_value=raw.get("originalValue"),
        breakdown=breakdown,
        expires_at=expires_at,
        valuation_id=raw.get("valuationId", ""),
        issued_at=raw.get("issuedAt", ""),
        error=raw.get("error"),
    )


def _condition_payload(condition: ConditionAssessment) -> dict[str, Optional[bool]]:
    d = asdict(condition)
    return {
        "powerOn": d["power_on"],
        "screenCondition": d["screen_condition"],
        "cosmeticDamage": d["cosmetic_damage"],
        "keyboardTrackpad": d["keyboard_trackpad"],
        "batteryHealth": d["battery_health"],
        "portsWorking": d["ports_working"],
        "findMyDisabled": d["find_my_disabled"],
    }


class AlchemyClient:
    def __init__(self, base_url: str, api_key: str, session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        # One session per client for connection pooling. max_redirects=3: these
        # are known partner endpoints, long redirect chains are not expected.
        self._session = session or requests.Session()
        self._session.max_redirects = 3
        self._session.headers.update(
            {
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            }
        )

    def lookup_device(self, serial: str) -> DeviceLookupResponse:
        normalized = normalize_serial(serial)
        try:
            resp = self._session.get(f"{self.base_url}/lookup/{quote(normalized)}", timeout=_TIMEOUT)
            resp.raise_for_status()
            raw = resp.json()
            device = _parse_device(raw["device"]) if raw.get("device") else None
            return DeviceLookupResponse(
                success=bool(raw.get("success", device is not None)),
                serial=raw.get("serial", normalized),
                device=device,
                error=raw.get("error"),
            )
        except requests.RequestException as e:
            logger.warning("Device lookup failed for %s: %s", normalized, e)
            return DeviceLookupResponse(success=False, serial=normalized, error=f"Failed to lookup device: {e}")
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Unexpected lookup payload for %s: %s", normalized, e)
            return DeviceLookupResponse(success=False, serial=normalized, error="Failed to lookup device: bad response")

    def get_valuation(self, serial: str, model: str, condition: ConditionAssessment) -> ValuationResponse:
        body = {"serial": serial, "model": model, "condition": _condition_payload(condition)}
        try:
            resp = self._session.post(f"{self.base_url}/valuation", json=body, timeout=_TIMEOUT)
            resp.raise_for_status()
            return _parse_valuation(resp.json())
        except requests.RequestException as e:
            logger.warning("Valuation failed for %s (%s): %s", serial, model, e)
            error = f"Failed to get valuation: {e}"
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Unexpected valuation payload for %s: %s", serial, e)
            error = "Failed to get valuation: bad response"
        return ValuationResponse(
            success=False,
            serial=serial,
            model=model,
            condition_grade=ConditionGrade.poor,
            estimated_value=0,
            expires_at="",
            valuation_id="",
            error=error,
        )

    def check_find_my(self, serial: str) -> FindMyStatusResponse:
        """Check activation lock. Any failure reports the device as locked."""
        normalized = normalize_serial(serial)
        try:
            resp = self._session.get(f"{self.base_url}/findmy/{quote(normalized)}", timeout=_TIMEOUT)
            resp.raise_for_status()
            raw = resp.json()
            return FindMyStatusResponse(
                success=bool(raw.get("success", True)),
                serial=raw.get("serial", normalized),
                find_my_enabled=bool(raw["findMyEnabled"]),
                activation_locked=bool(raw["activationLocked"]),
                error=raw.get("error"),
            )
        except requests.RequestException as e:
            logger.warning("FindMy check failed for %s: %s", normalized, e)
            error = f"Failed to check FindMy status: {e}"
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Unexpected FindMy payload for %s: %s", normalized, e)
            error = "Failed to check FindMy status: bad response"
        return FindMyStatusResponse(
            success=False,
            serial=normalized,
            find_my_enabled=True,
            activation_locked=True,
            error=error,
        )
