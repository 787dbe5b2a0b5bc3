"""Error taxonomy for odometer corrections."""
from __future__ import annotations

from typing import Optional

from fleetops.models.trips import CorrectionFailure


class CorrectionError(Exception):
    """Base error; `code` is stable and safe to show to API callers."""

    code = "error"

    def __init__(self, message: str, trip_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.trip_id = trip_id

    def to_failure(self) -> CorrectionFailure:
        return CorrectionFailure(code=self.code, message=self.message, trip_id=self.trip_id)


class ValidationError(CorrectionError):
    """Input rejected before any state was touched."""

    code = "validation"


class TripNotFoundError(ValidationError):
    code = "not_found"

    def __init__(self, trip_id: str) -> None:
        super().__init__(f"Trip not found: {trip_id}", trip_id=trip_id)


class PersistenceError(CorrectionError):
    """Atomic commit failed and was rolled back."""

    code = "persistence"


class ConflictError(CorrectionError):
    """Stored odometer values changed after the plan was computed."""

    code = "conflict"


class RecalculationError(CorrectionError):
    """Derived km/l could not be refreshed after a committed correction."""

    code = "recalculation"


class AuditError(CorrectionError):
    """Correction history could not be written after a committed correction."""

    code = "audit"
