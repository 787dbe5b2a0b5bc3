"""Domain models for trip odometer corrections, cascades, and audit history."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Trip(BaseModel):
    """One recorded vehicle movement."""

    trip_id: str
    vehicle_id: str
    vehicle_registration: str = ""
    serial_number: str = ""
    start_km: int = Field(ge=0)
    end_km: int = Field(ge=0)
    trip_start_date: Optional[datetime] = None
    # Chronological ordering key for a vehicle's chain (trip-end time, not creation time).
    trip_end_date: datetime
    refueling_done: bool = False
    fuel_quantity: Optional[float] = Field(default=None, ge=0)
    calculated_kmpl: Optional[float] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def distance_km(self) -> int:
        return self.end_km - self.start_km

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class OdometerValue(BaseModel):
    """Structured odometer value recorded on either side of a correction."""

    start_km: Optional[int] = None
    end_km: Optional[int] = None

    def changed_fields(self) -> Dict[str, int]:
        return self.model_dump(exclude_none=True)


class CorrectionStage(str, Enum):
    """Lifecycle of one correction request."""

    VALIDATING = "validating"
    PLANNED = "planned"
    COMMITTING = "committing"
    COMMITTED = "committed"
    RECALCULATING = "recalculating"
    AUDITING = "auditing"
    DONE = "done"
    FAILED = "failed"


class AffectedTrip(BaseModel):
    """Old and new odometer baseline of one trip touched by a cascade."""

    trip_id: str
    serial_number: str = ""
    old_value: OdometerValue
    new_value: OdometerValue

    @property
    def changed(self) -> bool:
        return self.old_value != self.new_value


class CascadePlan(BaseModel):
    """Every update needed to restore chain consistency after one edit."""

    trip_id: str
    vehicle_id: str
    vehicle_registration: str = ""
    serial_number: str = ""
    trip_end_date: datetime
    old_end_km: int
    new_end_km: int
    delta: int
    entries: List[AffectedTrip] = Field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return self.delta == 0

    @property
    def cascaded_entries(self) -> List[AffectedTrip]:
        return self.entries[1:]


class CorrectionFailure(BaseModel):
    """Error detail reported back to the caller."""

    code: str
    message: str
    trip_id: Optional[str] = None


class CascadeResult(BaseModel):
    """Outcome of a correction or of its preview."""

    success: bool
    trip_id: str
    delta: int = 0
    affected_trips: List[AffectedTrip] = Field(default_factory=list)
    error: Optional[CorrectionFailure] = None
    secondary_errors: List[CorrectionFailure] = Field(default_factory=list)
    stage: CorrectionStage = CorrectionStage.PLANNED
    dry_run: bool = False


class Correction(BaseModel):
    """Append-only record of one field-level edit to one trip."""

    # Assigned by the audit store when the row is appended.
    correction_id: str = ""
    trip_id: str
    field_name: str
    old_value: OdometerValue
    new_value: OdometerValue
    reason: str
    affects_subsequent: bool = False
    cascade_source: Optional[str] = None
    corrected_by: str = "system"
    corrected_at: datetime = Field(default_factory=_utcnow)


class AuditEntry(BaseModel):
    """Immutable before/after snapshot of the fields that changed on one entity."""

    audit_id: str = ""
    entity_type: str = "trip"
    entity_id: str
    before: Dict[str, Any] = Field(default_factory=dict)
    after: Dict[str, Any] = Field(default_factory=dict)
    reason: str
    cascade_source: Optional[str] = None
    actor: str = "system"
    timestamp: datetime = Field(default_factory=_utcnow)
    context: Dict[str, Any] = Field(default_factory=dict)


class KmplChange(BaseModel):
    """One persisted change to a trip's derived fuel efficiency."""

    trip_id: str
    old_kmpl: Optional[float] = None
    new_kmpl: float


class RecalculationSummary(BaseModel):
    """What one mileage recalculation pass examined and wrote."""

    vehicle_id: str
    from_date: Optional[datetime] = None
    trips_examined: int = 0
    changes: List[KmplChange] = Field(default_factory=list)


class MileageCheck(BaseModel):
    """Stored versus expected km/l for one trip."""

    trip_id: str
    serial_number: str = ""
    trip_end_date: datetime
    refueling_done: bool
    fuel_quantity: Optional[float] = None
    distance_km: int
    calculated_kmpl: Optional[float] = None
    expected_kmpl: Optional[float] = None
    valid: bool
    message: str


class GapSeverity(str, Enum):
    """Classification of the odometer gap between two adjacent trips."""

    NEGATIVE = "negative"
    PERFECT = "perfect"
    SMALL = "small"
    MODERATE = "moderate"
    LARGE = "large"


class ContinuityGap(BaseModel):
    """Gap between one trip's end reading and the next trip's start reading."""

    previous_trip_id: str
    previous_serial_number: str = ""
    previous_end_km: int
    trip_id: str
    serial_number: str = ""
    start_km: int
    gap_km: int
    severity: GapSeverity
    message: str


class CorrectionPreviewRequest(BaseModel):
    """Dry-run request for an end_km correction."""

    new_end_km: int = Field(ge=0)


class OdometerCorrectionRequest(BaseModel):
    """Request to correct a trip's end_km and cascade to later trips."""

    new_end_km: int = Field(ge=0)
    reason: str = Field(min_length=1)

    @field_validator("reason")
    @classmethod
    def _reason_not_blank(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("reason must not be blank")
        return text


class MileageRecalculationRequest(BaseModel):
    """Manual re-run of the derived km/l stage for a vehicle."""

    from_date: Optional[datetime] = None
