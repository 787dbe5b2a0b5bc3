"""All-or-nothing application of a cascade plan to trip storage."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fleetops.core.logging import logger
from fleetops.models.trips import AffectedTrip, CascadePlan
from fleetops.services.errors import ConflictError, CorrectionError, PersistenceError
from fleetops.services.trip_store import TripRepository


@dataclass
class CommitOutcome:
    success: bool
    error: Optional[CorrectionError] = None
    written: int = 0


class AtomicPersistenceGateway:
    """Writes every planned odometer update in one repository transaction."""

    def __init__(self, repository: TripRepository) -> None:
        self._repository = repository

    def _check_unchanged(self, entry: AffectedTrip) -> None:
        current = self._repository.get_trip(entry.trip_id)
        if current is None or current.is_deleted:
            raise ConflictError(
                f"Trip {entry.serial_number or entry.trip_id} disappeared after the correction was planned",
                trip_id=entry.trip_id,
            )
        expected = entry.old_value
        if current.start_km != expected.start_km or current.end_km != expected.end_km:
            raise ConflictError(
                f"Trip {entry.serial_number or entry.trip_id} changed after the correction was planned "
                f"(expected {expected.start_km}-{expected.end_km} km, "
                f"found {current.start_km}-{current.end_km} km); preview again",
                trip_id=entry.trip_id,
            )

    def commit(self, plan: CascadePlan) -> CommitOutcome:
        if plan.is_noop:
            return CommitOutcome(success=True)

        current_trip_id: Optional[str] = None
        try:
            with self._repository.transaction():
                for entry in plan.entries:
                    current_trip_id = entry.trip_id
                    self._check_unchanged(entry)
                for entry in plan.entries:
                    current_trip_id = entry.trip_id
                    self._repository.update_trip_odometer(
                        entry.trip_id,
                        entry.new_value.start_km,
                        entry.new_value.end_km,
                    )
        except ConflictError as exc:
            logger.warning("Cascade commit conflict", trip_id=plan.trip_id, conflicting_trip=exc.trip_id)
            return CommitOutcome(success=False, error=exc)
        except Exception as exc:
            logger.error(
                "Cascade commit rolled back",
                trip_id=plan.trip_id,
                failed_trip=current_trip_id,
                error=str(exc),
            )
            error = PersistenceError(
                f"Failed to update trip {current_trip_id}: {exc}",
                trip_id=current_trip_id,
            )
            error.__cause__ = exc
            return CommitOutcome(success=False, error=error)

        logger.info("Cascade committed", trip_id=plan.trip_id, written=len(plan.entries))
        return CommitOutcome(success=True, written=len(plan.entries))
