"""Orchestration of odometer corrections: preview, commit, recalculation, audit."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from functools import lru_cache
from threading import Lock
from typing import Iterator, List, Optional
from weakref import WeakValueDictionary

from fleetops.core.config import get_settings
from fleetops.core.logging import logger
from fleetops.models.trips import (
    AuditEntry,
    CascadePlan,
    CascadeResult,
    ContinuityGap,
    Correction,
    CorrectionFailure,
    CorrectionStage,
    KmplChange,
    MileageCheck,
    RecalculationSummary,
)
from fleetops.services.audit_store import SQLiteAuditStore
from fleetops.services.audit_trail import AuditTrailRecorder
from fleetops.services.cascade_engine import CascadeEngine
from fleetops.services.continuity import ContinuityChecker
from fleetops.services.errors import AuditError, RecalculationError, TripNotFoundError, ValidationError
from fleetops.services.mileage import MileageRecalculator
from fleetops.services.persistence_gateway import AtomicPersistenceGateway
from fleetops.services.trip_store import SQLiteTripStore, TripRepository


class CorrectionService:
    """Entry point used by the UI and other services to correct trip odometers.

    Validation errors are raised. Commit failures (persistence, conflict) are
    reported through ``CascadeResult.error`` with ``success=False``. Failures
    of the follow-up stages (km/l recalculation, audit) do not undo the
    committed correction; they are returned in ``secondary_errors`` and can be
    retried through :meth:`recalculate_mileage`.
    """

    def __init__(self, repository: TripRepository, audit_store: SQLiteAuditStore) -> None:
        self._repository = repository
        self._audit_store = audit_store
        self._engine = CascadeEngine(repository)
        self._gateway = AtomicPersistenceGateway(repository)
        self._recalculator = MileageRecalculator(repository)
        self._recorder = AuditTrailRecorder(audit_store)
        self._continuity = ContinuityChecker(repository)
        # Entries drop out once no correction holds or waits on the lock.
        self._vehicle_locks: WeakValueDictionary = WeakValueDictionary()
        self._vehicle_locks_guard = Lock()

    @contextmanager
    def _vehicle_lock(self, vehicle_id: str) -> Iterator[None]:
        with self._vehicle_locks_guard:
            lock = self._vehicle_locks.get(vehicle_id)
            if lock is None:
                lock = Lock()
                self._vehicle_locks[vehicle_id] = lock
        with lock:
            yield

    @staticmethod
    def _stage(trip_id: str, stage: CorrectionStage, **details) -> CorrectionStage:
        logger.info("Correction stage", trip_id=trip_id, stage=stage.value, **details)
        return stage

    def preview_cascade_impact(self, trip_id: str, new_end_km: int) -> CascadeResult:
        """Dry run: the affected trips a correction would produce, with no writes."""
        plan = self._engine.compute(trip_id, new_end_km)
        return CascadeResult(
            success=True,
            trip_id=trip_id,
            delta=plan.delta,
            affected_trips=plan.entries,
            stage=CorrectionStage.PLANNED,
            dry_run=True,
        )

    def cascade_odometer_correction(
        self,
        trip_id: str,
        new_end_km: int,
        reason: str,
        actor: Optional[str] = None,
    ) -> CascadeResult:
        actor = (actor or "").strip() or get_settings().default_actor
        self._stage(trip_id, CorrectionStage.VALIDATING, new_end_km=new_end_km, actor=actor)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A correction reason is required", trip_id=trip_id)

        target = self._repository.get_trip(trip_id)
        if target is None or target.is_deleted:
            raise TripNotFoundError(trip_id)

        with self._vehicle_lock(target.vehicle_id):
            plan = self._engine.compute(trip_id, new_end_km)
            self._stage(trip_id, CorrectionStage.PLANNED, delta=plan.delta, affected=len(plan.entries))
            if plan.is_noop:
                return CascadeResult(
                    success=True,
                    trip_id=trip_id,
                    delta=0,
                    affected_trips=plan.entries,
                    stage=self._stage(trip_id, CorrectionStage.DONE, noop=True),
                )

            self._stage(trip_id, CorrectionStage.COMMITTING)
            outcome = self._gateway.commit(plan)
            if not outcome.success:
                failure = outcome.error.to_failure()
                return CascadeResult(
                    success=False,
                    trip_id=trip_id,
                    delta=plan.delta,
                    affected_trips=plan.entries,
                    error=failure,
                    stage=self._stage(trip_id, CorrectionStage.FAILED, code=failure.code),
                )
            self._stage(trip_id, CorrectionStage.COMMITTED, written=outcome.written)
            secondary_errors = self._run_secondary_stages(plan, reason, actor)

        return CascadeResult(
            success=True,
            trip_id=trip_id,
            delta=plan.delta,
            affected_trips=plan.entries,
            secondary_errors=secondary_errors,
            stage=self._stage(trip_id, CorrectionStage.DONE, secondary_errors=len(secondary_errors)),
        )

    def _run_secondary_stages(self, plan: CascadePlan, reason: str, actor: str) -> List[CorrectionFailure]:
        errors: List[CorrectionFailure] = []
        kmpl_changes: List[KmplChange] = []

        self._stage(plan.trip_id, CorrectionStage.RECALCULATING)
        try:
            summary = self._recalculator.recalculate(plan.vehicle_id, plan.trip_end_date)
            kmpl_changes = summary.changes
        except RecalculationError as exc:
            exc.trip_id = exc.trip_id or plan.trip_id
            logger.error(
                "Mileage recalculation failed after committed correction",
                trip_id=plan.trip_id,
                vehicle_id=plan.vehicle_id,
                error=exc.message,
            )
            errors.append(exc.to_failure())

        self._stage(plan.trip_id, CorrectionStage.AUDITING)
        try:
            corrections, entries = self._recorder.build(plan, reason, actor, kmpl_changes)
            self._recorder.record(corrections, entries)
        except AuditError as exc:
            logger.error(
                "Audit trail failed after committed correction",
                trip_id=plan.trip_id,
                vehicle_id=plan.vehicle_id,
                error=exc.message,
            )
            errors.append(exc.to_failure())
        return errors

    def get_correction_history(self, trip_id: str) -> List[Correction]:
        """Corrections recorded against one trip, most recent first."""
        return self._audit_store.list_corrections(trip_id)

    def get_audit_trail(self, trip_id: str) -> List[AuditEntry]:
        return self._audit_store.list_audit_entries(trip_id)

    def get_cascade_entries(self, trip_id: str) -> List[AuditEntry]:
        """Audit entries for every trip shifted by corrections made to ``trip_id``."""
        return self._audit_store.list_cascade_entries(trip_id)

    def recalculate_mileage(self, vehicle_id: str, from_date: Optional[datetime] = None) -> RecalculationSummary:
        with self._vehicle_lock(vehicle_id):
            return self._recalculator.recalculate(vehicle_id, from_date)

    def check_continuity(self, vehicle_id: str) -> List[ContinuityGap]:
        return self._continuity.check(vehicle_id)

    def validate_mileage_chain(self, vehicle_id: str) -> List[MileageCheck]:
        return self._recalculator.validate_chain(vehicle_id)


def build_correction_service(
    trips_db_path: Optional[str] = None,
    audit_db_path: Optional[str] = None,
) -> CorrectionService:
    settings = get_settings()
    trips_path = trips_db_path or settings.trips_db_path
    audit_path = audit_db_path or (trips_path if trips_db_path else settings.resolved_audit_db_path())
    return CorrectionService(SQLiteTripStore(trips_path), SQLiteAuditStore(audit_path))


@lru_cache()
def get_correction_service() -> CorrectionService:
    """Shared service instance for API dependencies."""
    return build_correction_service()
