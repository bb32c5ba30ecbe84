"""
api/routes/v1/devices.py -- Device lookup, valuation and activation-lock routes.

Routes:
  GET   /devices/lookup/{serial}  -- resolve a serial to a device model
  POST  /devices/valuation        -- grade a condition report and issue an offer
  GET   /devices/findmy/{serial}  -- activation-lock (Find My) status

The valuation provider (local engine or partner API) lives on
app.state.provider. Every successful valuation is recorded in
app.state.valuations so POST /trade-ins can verify it was really issued.

Rate limits are applied via slowapi; the @limiter.limit() decorator sits
ABOVE @router.get/post so the limit string is attached to the function
object that SlowAPIMiddleware looks up.
"""

import re

from fastapi import APIRouter, HTTPException, Request

from api.limiter import limiter
from api.models import DeviceLookupOut, ErrorDetail, FindMyOut, ValuationOut, ValuationRequest
from cache.store import ValuationCache
from core.models import SERIAL_PATTERN, normalize_serial

router = APIRouter()


def _validated_serial(serial: str) -> str:
    normalized = normalize_serial(serial)
    if not re.match(SERIAL_PATTERN, normalized):
        raise HTTPException(
            status_code=400,
            detail=ErrorDetail(
                code="invalid_serial",
                message=f"'{serial}' is not a valid serial number. Expected 8-20 letters or digits.",
            ).model_dump(),
        )
    return normalized


@limiter.limit("60/minute")
@router.get("/devices/lookup/{serial}", response_model=DeviceLookupOut)
def lookup_device(request: Request, serial: str) -> DeviceLookupOut:
    """Return the device model for a serial number (404 if unknown)."""
    lookup = request.app.state.provider.lookup_device(_validated_serial(serial))
    if not lookup.success:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="device_not_found", message=lookup.error or "Device not found.").model_dump(),
        )
    return DeviceLookupOut.model_validate(lookup)


@limiter.limit("30/minute")
@router.post("/devices/valuation", response_model=ValuationOut)
def create_valuation(request: Request, body: ValuationRequest) -> ValuationOut:
    """Grade the condition report, price the device and register the offer.

    The offer is valid for 30 days. Accept it with POST /trade-ins using the
    returned valuation_id.
    """
    valuation = request.app.state.provider.get_valuation(body.serial, body.model, body.condition.to_domain())
    if not valuation.success:
        raise HTTPException(
            status_code=502,
            detail=ErrorDetail(
                code="upstream",
                message=valuation.error or "Valuation failed.",
            ).model_dump(),
        )
    valuations: ValuationCache = request.app.state.valuations
    valuations.set(valuation)
    return ValuationOut.model_validate(valuation)


@limiter.limit("60/minute")
@router.get("/devices/findmy/{serial}", response_model=FindMyOut)
def check_find_my(request: Request, serial: str) -> FindMyOut:
    """Report whether Find My / activation lock is still enabled on the device."""
    status = request.app.state.provider.check_find_my(_validated_serial(serial))
    if not status.success:
        raise HTTPException(
            status_code=502,
            detail=ErrorDetail(
                code="upstream",
                message=status.error or "Activation lock check failed.",
            ).model_dump(),
        )
    return FindMyOut.model_validate(status)
