"""Builds and persists the correction history for a committed cascade."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Tuple

from fleetops.core.logging import logger
from fleetops.models.trips import (
    AuditEntry,
    CascadePlan,
    Correction,
    KmplChange,
    OdometerValue,
)
from fleetops.services.audit_store import SQLiteAuditStore
from fleetops.services.errors import AuditError

DIRECT_FIELD = "end_km"
CASCADE_FIELD = "odometer_cascade"


class AuditTrailRecorder:
    """One correction and one audit entry per trip whose odometer changed.

    Before-values come from the plan, i.e. what was read when the cascade was
    computed, never from a re-read after the commit.
    """

    def __init__(self, store: SQLiteAuditStore) -> None:
        self._store = store

    def build(
        self,
        plan: CascadePlan,
        reason: str,
        actor: str,
        kmpl_changes: Optional[List[KmplChange]] = None,
    ) -> Tuple[List[Correction], List[AuditEntry]]:
        try:
            return self._build(plan, reason, actor, kmpl_changes or [])
        except Exception as exc:
            raise AuditError(f"Could not prepare audit entries: {exc}", trip_id=plan.trip_id) from exc

    def _build(
        self,
        plan: CascadePlan,
        reason: str,
        actor: str,
        kmpl_changes: List[KmplChange],
    ) -> Tuple[List[Correction], List[AuditEntry]]:
        now = datetime.now(timezone.utc)
        corrections: List[Correction] = []
        entries: List[AuditEntry] = []
        if plan.is_noop:
            return corrections, entries

        target = plan.entries[0]
        cascaded = [entry for entry in plan.cascaded_entries if entry.changed]
        context = {
            "vehicle_id": plan.vehicle_id,
            "vehicle_registration": plan.vehicle_registration,
            "serial_number": plan.serial_number,
            "delta_km": plan.delta,
            "cascaded_trips": len(cascaded),
        }
        if kmpl_changes:
            context["kmpl_recalculated"] = [change.model_dump(mode="json") for change in kmpl_changes]

        corrections.append(
            Correction(
                trip_id=plan.trip_id,
                field_name=DIRECT_FIELD,
                old_value=OdometerValue(end_km=target.old_value.end_km),
                new_value=OdometerValue(end_km=target.new_value.end_km),
                reason=reason,
                affects_subsequent=bool(cascaded),
                corrected_by=actor,
                corrected_at=now,
            )
        )
        entries.append(
            AuditEntry(
                entity_id=plan.trip_id,
                before={"end_km": target.old_value.end_km},
                after={"end_km": target.new_value.end_km},
                reason=reason,
                actor=actor,
                timestamp=now,
                context=context,
            )
        )

        for entry in cascaded:
            corrections.append(
                Correction(
                    trip_id=entry.trip_id,
                    field_name=CASCADE_FIELD,
                    old_value=entry.old_value,
                    new_value=entry.new_value,
                    reason=reason,
                    affects_subsequent=True,
                    cascade_source=plan.trip_id,
                    corrected_by=actor,
                    corrected_at=now,
                )
            )
            entries.append(
                AuditEntry(
                    entity_id=entry.trip_id,
                    before=entry.old_value.changed_fields(),
                    after=entry.new_value.changed_fields(),
                    reason=reason,
                    cascade_source=plan.trip_id,
                    actor=actor,
                    timestamp=now,
                    context={
                        "vehicle_id": plan.vehicle_id,
                        "serial_number": entry.serial_number,
                        "source_serial_number": plan.serial_number,
                    },
                )
            )
        return corrections, entries

    def record(self, corrections: List[Correction], entries: List[AuditEntry]) -> None:
        if not corrections and not entries:
            return
        try:
            self._store.append(corrections, entries)
        except Exception as exc:
            source = corrections[0].trip_id if corrections else entries[0].entity_id
            raise AuditError(f"Could not write audit trail: {exc}", trip_id=source) from exc
        logger.info("Audit trail recorded", corrections=len(corrections), entries=len(entries))
