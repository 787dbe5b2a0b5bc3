"""End-to-end correction flows through CorrectionService."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import sqlite3
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fleetops.models.trips import CorrectionStage, GapSeverity, Trip  # noqa: E402
from fleetops.services.audit_store import SQLiteAuditStore  # noqa: E402
from fleetops.services.correction_service import CorrectionService  # noqa: E402
from fleetops.services.errors import TripNotFoundError, ValidationError  # noqa: E402
from fleetops.services.trip_store import SQLiteTripStore  # noqa: E402


BASE = datetime(2025, 3, 1, 18, 0, tzinfo=timezone.utc)


def _service(tmp_path, store_cls=SQLiteTripStore, audit_cls=SQLiteAuditStore):
    db_path = str(tmp_path / "fleet.db")
    store = store_cls(db_path)
    return CorrectionService(store, audit_cls(db_path)), store


def _seed_scenario(store: SQLiteTripStore) -> list[Trip]:
    """Trips T1 (..-100), T2 (100-180, refuelled 10 l) and T3 (180-260)."""
    trips = [
        Trip(trip_id="", vehicle_id="V1", vehicle_registration="KA01AB1234", start_km=20, end_km=100,
             trip_end_date=BASE),
        Trip(trip_id="", vehicle_id="V1", vehicle_registration="KA01AB1234", start_km=100, end_km=180,
             trip_end_date=BASE + timedelta(days=1), refueling_done=True, fuel_quantity=10,
             calculated_kmpl=8.0),
        Trip(trip_id="", vehicle_id="V1", vehicle_registration="KA01AB1234", start_km=180, end_km=260,
             trip_end_date=BASE + timedelta(days=2)),
    ]
    return [store.create_trip(trip) for trip in trips]


def _readings(store: SQLiteTripStore) -> list[tuple[int, int]]:
    return [(trip.start_km, trip.end_km) for trip in store.list_trips_for_vehicle("V1")]


def test_correction_cascades_to_later_trips(tmp_path):
    service, store = _service(tmp_path)
    t1, t2, t3 = _seed_scenario(store)

    result = service.cascade_odometer_correction(t1.trip_id, 120, "Odometer misread at depot", actor="ops-7")

    assert result.success
    assert result.stage == CorrectionStage.DONE
    assert result.delta == 20
    assert [entry.trip_id for entry in result.affected_trips] == [t1.trip_id, t2.trip_id, t3.trip_id]
    assert _readings(store) == [(20, 120), (120, 200), (200, 280)]
    for trip in store.list_trips_for_vehicle("V1")[1:]:
        assert trip.distance_km == 80


def test_shifted_refueling_trip_keeps_its_kmpl(tmp_path):
    service, store = _service(tmp_path)
    t1, t2, _ = _seed_scenario(store)

    service.cascade_odometer_correction(t1.trip_id, 120, "Odometer misread")

    shifted = store.get_trip(t2.trip_id)
    assert (shifted.start_km, shifted.end_km) == (120, 200)
    assert shifted.calculated_kmpl == pytest.approx(8.0)


def test_corrected_refueling_trip_gets_new_kmpl(tmp_path):
    service, store = _service(tmp_path)
    target = store.create_trip(
        Trip(trip_id="", vehicle_id="V1", start_km=0, end_km=80, trip_end_date=BASE,
             refueling_done=True, fuel_quantity=10, calculated_kmpl=8.0)
    )

    result = service.cascade_odometer_correction(target.trip_id, 100, "Typo in end reading")

    assert result.secondary_errors == []
    assert store.get_trip(target.trip_id).calculated_kmpl == pytest.approx(10.0)
    entry = service.get_audit_trail(target.trip_id)[0]
    assert entry.context["kmpl_recalculated"][0]["new_kmpl"] == pytest.approx(10.0)


def test_latest_trip_correction_affects_only_itself(tmp_path):
    service, store = _service(tmp_path)
    _, _, t3 = _seed_scenario(store)

    result = service.cascade_odometer_correction(t3.trip_id, 275, "Late reading")

    assert result.success
    assert len(result.affected_trips) == 1
    history = service.get_correction_history(t3.trip_id)
    assert len(history) == 1
    assert history[0].affects_subsequent is False


def test_same_value_correction_is_a_noop(tmp_path):
    service, store = _service(tmp_path)
    t1, t2, _ = _seed_scenario(store)

    result = service.cascade_odometer_correction(t1.trip_id, 100, "Double check")

    assert result.success
    assert result.delta == 0
    assert [entry.trip_id for entry in result.affected_trips] == [t1.trip_id]
    assert _readings(store) == [(20, 100), (100, 180), (180, 260)]
    assert store.get_trip(t2.trip_id).calculated_kmpl == pytest.approx(8.0)
    assert service.get_correction_history(t1.trip_id) == []


def test_preview_matches_commit_and_does_not_mutate(tmp_path):
    service, store = _service(tmp_path)
    t1, _, _ = _seed_scenario(store)
    before = store.list_trips_for_vehicle("V1")

    preview = service.preview_cascade_impact(t1.trip_id, 120)

    assert preview.dry_run
    assert store.list_trips_for_vehicle("V1") == before
    assert service.get_correction_history(t1.trip_id) == []

    result = service.cascade_odometer_correction(t1.trip_id, 120, "Confirmed after preview")
    assert result.affected_trips == preview.affected_trips


def test_history_and_audit_capture_true_before_and_after(tmp_path):
    service, store = _service(tmp_path)
    t1, t2, t3 = _seed_scenario(store)

    service.cascade_odometer_correction(t1.trip_id, 120, "Odometer misread", actor="ops-7")

    history = service.get_correction_history(t1.trip_id)
    assert len(history) == 1
    assert history[0].field_name == "end_km"
    assert history[0].old_value.end_km == 100
    assert history[0].new_value.end_km == 120
    assert history[0].old_value.start_km is None
    assert history[0].affects_subsequent is True
    assert history[0].corrected_by == "ops-7"

    direct = service.get_audit_trail(t1.trip_id)
    assert len(direct) == 1
    assert direct[0].before == {"end_km": 100}
    assert direct[0].after == {"end_km": 120}
    assert direct[0].cascade_source is None
    assert direct[0].context["serial_number"] == t1.serial_number

    cascaded = service.get_audit_trail(t2.trip_id)
    assert len(cascaded) == 1
    assert cascaded[0].before == {"start_km": 100, "end_km": 180}
    assert cascaded[0].after == {"start_km": 120, "end_km": 200}
    assert cascaded[0].cascade_source == t1.trip_id
    assert cascaded[0].reason == "Odometer misread"

    t3_history = service.get_correction_history(t3.trip_id)
    assert t3_history[0].field_name == "odometer_cascade"
    assert t3_history[0].cascade_source == t1.trip_id


def test_consecutive_corrections_use_current_values(tmp_path):
    service, store = _service(tmp_path)
    t1, t2, _ = _seed_scenario(store)

    service.cascade_odometer_correction(t1.trip_id, 120, "First fix")
    second = service.cascade_odometer_correction(t1.trip_id, 115, "Second fix")

    assert second.delta == -5
    assert _readings(store) == [(20, 115), (115, 195), (195, 275)]
    history = service.get_correction_history(t1.trip_id)
    assert [(c.old_value.end_km, c.new_value.end_km) for c in history] == [(120, 115), (100, 120)]
    assert len(service.get_audit_trail(t2.trip_id)) == 2


def test_failed_commit_changes_nothing_and_records_nothing(tmp_path):
    class FlakyTripStore(SQLiteTripStore):
        fail_on = None

        def update_trip_odometer(self, trip_id, start_km, end_km):
            if trip_id == self.fail_on:
                raise sqlite3.OperationalError("disk I/O error")
            super().update_trip_odometer(trip_id, start_km, end_km)

    service, store = _service(tmp_path, store_cls=FlakyTripStore)
    t1, t2, t3 = _seed_scenario(store)
    store.fail_on = t3.trip_id

    result = service.cascade_odometer_correction(t1.trip_id, 120, "Odometer misread")

    assert not result.success
    assert result.stage == CorrectionStage.FAILED
    assert result.error.code == "persistence"
    assert result.error.trip_id == t3.trip_id
    assert _readings(store) == [(20, 100), (100, 180), (180, 260)]
    assert service.get_correction_history(t1.trip_id) == []
    assert service.get_audit_trail(t2.trip_id) == []


def test_recalculation_failure_does_not_undo_correction(tmp_path):
    class NoRefuelListing(SQLiteTripStore):
        def list_refueling_trips_for_vehicle(self, vehicle_id, from_date=None):
            raise RuntimeError("replica unavailable")

    service, store = _service(tmp_path, store_cls=NoRefuelListing)
    t1, _, _ = _seed_scenario(store)

    result = service.cascade_odometer_correction(t1.trip_id, 120, "Odometer misread")

    assert result.success
    assert [error.code for error in result.secondary_errors] == ["recalculation"]
    assert _readings(store) == [(20, 120), (120, 200), (200, 280)]
    assert len(service.get_correction_history(t1.trip_id)) == 1


def test_audit_failure_is_reported_separately(tmp_path):
    class BrokenAuditStore(SQLiteAuditStore):
        def append(self, corrections, entries):
            raise sqlite3.OperationalError("database is full")

    service, store = _service(tmp_path, audit_cls=BrokenAuditStore)
    t1, _, _ = _seed_scenario(store)

    result = service.cascade_odometer_correction(t1.trip_id, 120, "Odometer misread")

    assert result.success
    assert [error.code for error in result.secondary_errors] == ["audit"]
    assert _readings(store) == [(20, 120), (120, 200), (200, 280)]
    assert service.get_correction_history(t1.trip_id) == []


def test_validation_errors_are_raised(tmp_path):
    service, store = _service(tmp_path)
    t1, _, _ = _seed_scenario(store)

    with pytest.raises(ValidationError):
        service.cascade_odometer_correction(t1.trip_id, 120, "   ")
    with pytest.raises(TripNotFoundError):
        service.cascade_odometer_correction("missing", 120, "Odometer misread")
    with pytest.raises(TripNotFoundError):
        service.preview_cascade_impact("missing", 120)
    assert _readings(store) == [(20, 100), (100, 180), (180, 260)]


def test_recalculate_mileage_repairs_after_failed_stage(tmp_path):
    service, store = _service(tmp_path)
    trip = store.create_trip(
        Trip(trip_id="", vehicle_id="V1", start_km=0, end_km=90, trip_end_date=BASE,
             refueling_done=True, fuel_quantity=9)
    )

    summary = service.recalculate_mileage("V1")

    assert [change.trip_id for change in summary.changes] == [trip.trip_id]
    assert all(check.valid for check in service.validate_mileage_chain("V1"))


def test_continuity_report_classifies_gaps(tmp_path):
    service, store = _service(tmp_path)
    readings = [(0, 100), (100, 150), (155, 200), (230, 260), (400, 420), (410, 430)]
    for day, (start, end) in enumerate(readings):
        store.create_trip(
            Trip(trip_id="", vehicle_id="V1", start_km=start, end_km=end, trip_end_date=BASE + timedelta(days=day))
        )

    gaps = service.check_continuity("V1")

    assert [gap.severity for gap in gaps] == [
        GapSeverity.PERFECT,
        GapSeverity.SMALL,
        GapSeverity.MODERATE,
        GapSeverity.LARGE,
        GapSeverity.NEGATIVE,
    ]
    assert [gap.gap_km for gap in gaps] == [0, 5, 30, 140, -10]


def test_recalculation_uses_readings_written_after_the_refuel_listing(tmp_path):
    class InterleavedWriterStore(SQLiteTripStore):
        pending_write = None

        def list_refueling_trips_for_vehicle(self, vehicle_id, from_date=None):
            trips = super().list_refueling_trips_for_vehicle(vehicle_id, from_date=from_date)
            if self.pending_write:
                trip_id, start_km, end_km = self.pending_write
                self.pending_write = None
                self.update_trip_odometer(trip_id, start_km, end_km)
            return trips

    service, store = _service(tmp_path, store_cls=InterleavedWriterStore)
    target = store.create_trip(
        Trip(trip_id="", vehicle_id="V1", start_km=0, end_km=80, trip_end_date=BASE,
             refueling_done=True, fuel_quantity=10, calculated_kmpl=8.0)
    )
    # Another operator lands 0-120 on the same trip while km/l is being refreshed.
    store.pending_write = (target.trip_id, 0, 120)

    result = service.cascade_odometer_correction(target.trip_id, 100, "Typo in end reading")

    assert result.success
    assert result.secondary_errors == []
    trip = store.get_trip(target.trip_id)
    assert trip.end_km == 120
    assert trip.calculated_kmpl == pytest.approx(12.0)
    assert all(check.valid for check in service.validate_mileage_chain("V1"))


def test_concurrent_corrections_on_one_vehicle_leave_a_consistent_chain(tmp_path):
    service, store = _service(tmp_path)
    t1, t2, t3 = _seed_scenario(store)

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [
            pool.submit(service.cascade_odometer_correction, t1.trip_id, 120, "Depot reading", "ops-1"),
            pool.submit(service.cascade_odometer_correction, t3.trip_id, 300, "Late reading", "ops-2"),
        ]
        results = [future.result() for future in futures]

    assert all(result.success for result in results)
    assert all(result.secondary_errors == [] for result in results)
    first, second, third = _readings(store)
    assert first == (20, 120)
    assert second == (120, 200)
    assert third[0] == 200
    # 300 if the later trip was corrected last, 320 if the cascade shifted it afterwards.
    assert third[1] in (300, 320)
    assert [gap.severity for gap in service.check_continuity("V1")] == [GapSeverity.PERFECT] * 2
    assert store.get_trip(t2.trip_id).calculated_kmpl == pytest.approx(8.0)
    assert len(service.get_correction_history(t1.trip_id)) == 1
    assert {c.field_name for c in service.get_correction_history(t3.trip_id)} == {"end_km", "odometer_cascade"}
    assert len(service._vehicle_locks) == 0


def test_cascade_entries_list_every_shifted_trip(tmp_path):
    service, store = _service(tmp_path)
    t1, t2, t3 = _seed_scenario(store)

    service.cascade_odometer_correction(t1.trip_id, 120, "Odometer misread")

    entries = service.get_cascade_entries(t1.trip_id)
    assert {entry.entity_id for entry in entries} == {t2.trip_id, t3.trip_id}
    assert all(entry.cascade_source == t1.trip_id for entry in entries)
    assert service.get_cascade_entries(t2.trip_id) == []
