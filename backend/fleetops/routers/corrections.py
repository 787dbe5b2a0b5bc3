"""API routes for trip odometer corrections and chain health checks."""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Header, HTTPException

from fleetops.core.logging import logger
from fleetops.models.trips import (
    AuditEntry,
    CascadeResult,
    ContinuityGap,
    Correction,
    CorrectionPreviewRequest,
    MileageCheck,
    MileageRecalculationRequest,
    OdometerCorrectionRequest,
    RecalculationSummary,
)
from fleetops.services.correction_service import CorrectionService, get_correction_service
from fleetops.services.errors import CorrectionError, RecalculationError

router = APIRouter(prefix="/corrections", tags=["corrections"])

_FAILURE_STATUS = {
    "not_found": 404,
    "validation": 400,
    "conflict": 409,
    "persistence": 503,
}


def _http_error(exc: CorrectionError) -> HTTPException:
    return HTTPException(
        status_code=_FAILURE_STATUS.get(exc.code, 400),
        detail=exc.to_failure().model_dump(),
    )


@router.post("/trips/{trip_id}/preview", response_model=CascadeResult)
def preview_correction(
    trip_id: str,
    request: CorrectionPreviewRequest,
    service: CorrectionService = Depends(get_correction_service),
):
    try:
        return service.preview_cascade_impact(trip_id, request.new_end_km)
    except CorrectionError as exc:
        raise _http_error(exc)


@router.post("/trips/{trip_id}/odometer", response_model=CascadeResult)
def correct_odometer(
    trip_id: str,
    request: OdometerCorrectionRequest,
    service: CorrectionService = Depends(get_correction_service),
    actor: str | None = Header(default=None, alias="X-Actor"),
):
    try:
        result = service.cascade_odometer_correction(
            trip_id,
            request.new_end_km,
            request.reason,
            actor=actor,
        )
    except CorrectionError as exc:
        raise _http_error(exc)

    if not result.success and result.error is not None:
        logger.warning("Odometer correction failed", trip_id=trip_id, code=result.error.code)
        raise HTTPException(
            status_code=_FAILURE_STATUS.get(result.error.code, 400),
            detail=result.error.model_dump(),
        )
    return result


@router.get("/trips/{trip_id}/history", response_model=List[Correction])
def correction_history(
    trip_id: str,
    service: CorrectionService = Depends(get_correction_service),
):
    return service.get_correction_history(trip_id)


@router.get("/trips/{trip_id}/audit", response_model=List[AuditEntry])
def audit_trail(
    trip_id: str,
    service: CorrectionService = Depends(get_correction_service),
):
    return service.get_audit_trail(trip_id)


@router.get("/trips/{trip_id}/cascade", response_model=List[AuditEntry])
def cascade_entries(
    trip_id: str,
    service: CorrectionService = Depends(get_correction_service),
):
    """Audit entries of the later trips shifted by corrections to this trip."""
    return service.get_cascade_entries(trip_id)


@router.get("/vehicles/{vehicle_id}/continuity", response_model=List[ContinuityGap])
def vehicle_continuity(
    vehicle_id: str,
    service: CorrectionService = Depends(get_correction_service),
):
    return service.check_continuity(vehicle_id)


@router.get("/vehicles/{vehicle_id}/mileage", response_model=List[MileageCheck])
def vehicle_mileage_chain(
    vehicle_id: str,
    service: CorrectionService = Depends(get_correction_service),
):
    return service.validate_mileage_chain(vehicle_id)


@router.post("/vehicles/{vehicle_id}/mileage/recalculate", response_model=RecalculationSummary)
def recalculate_vehicle_mileage(
    vehicle_id: str,
    request: MileageRecalculationRequest,
    service: CorrectionService = Depends(get_correction_service),
):
    try:
        return service.recalculate_mileage(vehicle_id, request.from_date)
    except RecalculationError as exc:
        logger.error("Manual mileage recalculation failed", vehicle_id=vehicle_id, error=exc.message)
        raise HTTPException(status_code=503, detail=exc.to_failure().model_dump())
