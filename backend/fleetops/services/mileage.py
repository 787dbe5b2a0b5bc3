"""Derived fuel-efficiency (km/l) maintenance for refueling trips."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fleetops.core.config import get_settings
from fleetops.core.logging import logger
from fleetops.models.trips import KmplChange, MileageCheck, RecalculationSummary, Trip
from fleetops.services.errors import RecalculationError
from fleetops.services.trip_store import TripRepository

_KMPL_EPSILON = 1e-9


def expected_kmpl(trip: Trip) -> Optional[float]:
    """km/l for one trip, or None when it carries no usable fuel figure."""
    if not trip.refueling_done or not trip.fuel_quantity or trip.fuel_quantity <= 0:
        return None
    return trip.distance_km / trip.fuel_quantity


class MileageRecalculator:
    """Keeps ``calculated_kmpl`` in step with each trip's own distance and fuel."""

    def __init__(self, repository: TripRepository, tolerance_kmpl: float | None = None) -> None:
        self._repository = repository
        self._tolerance = (
            tolerance_kmpl if tolerance_kmpl is not None else get_settings().mileage_tolerance_kmpl
        )

    def recalculate(self, vehicle_id: str, from_date: Optional[datetime] = None) -> RecalculationSummary:
        """Rewrite km/l only where it differs from the stored value, so reruns write nothing.

        Each trip is re-read inside its own write transaction, so the value
        written is computed from the odometer readings current at write time.
        """
        summary = RecalculationSummary(vehicle_id=vehicle_id, from_date=from_date)
        try:
            listed = self._repository.list_refueling_trips_for_vehicle(vehicle_id, from_date=from_date)
            for candidate in listed:
                with self._repository.transaction():
                    trip = self._repository.get_trip(candidate.trip_id)
                    if trip is None or trip.is_deleted:
                        continue
                    value = expected_kmpl(trip)
                    if value is None:
                        continue
                    summary.trips_examined += 1
                    stored = trip.calculated_kmpl
                    if stored is not None and abs(stored - value) < _KMPL_EPSILON:
                        continue
                    self._repository.update_calculated_kmpl(trip.trip_id, value)
                summary.changes.append(KmplChange(trip_id=trip.trip_id, old_kmpl=stored, new_kmpl=value))
        except Exception as exc:
            raise RecalculationError(
                f"Mileage recalculation failed for vehicle {vehicle_id}: {exc}",
            ) from exc

        logger.info(
            "Mileage recalculated",
            vehicle_id=vehicle_id,
            examined=summary.trips_examined,
            updated=len(summary.changes),
        )
        return summary

    def validate_chain(self, vehicle_id: str) -> List[MileageCheck]:
        checks: List[MileageCheck] = []
        for trip in self._repository.list_trips_for_vehicle(vehicle_id):
            expected = expected_kmpl(trip)
            if not trip.refueling_done:
                valid, message = True, "Non-refueling trip - not part of mileage calculation"
            elif expected is None:
                valid, message = True, "No fuel quantity recorded"
            elif trip.calculated_kmpl is None:
                valid, message = False, f"Missing km/l: expected {expected:.2f}"
            elif abs(trip.calculated_kmpl - expected) < self._tolerance:
                valid, message = True, "Mileage valid"
            else:
                valid = False
                message = f"Mismatch: calculated={trip.calculated_kmpl:.2f}, expected={expected:.2f}"
            checks.append(
                MileageCheck(
                    trip_id=trip.trip_id,
                    serial_number=trip.serial_number,
                    trip_end_date=trip.trip_end_date,
                    refueling_done=trip.refueling_done,
                    fuel_quantity=trip.fuel_quantity,
                    distance_km=trip.distance_km,
                    calculated_kmpl=trip.calculated_kmpl,
                    expected_kmpl=expected,
                    valid=valid,
                    message=message,
                )
            )
        return checks
