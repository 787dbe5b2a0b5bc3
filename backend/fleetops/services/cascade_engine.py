"""Plan the odometer updates needed after correcting one trip's end reading."""
from __future__ import annotations

from typing import List

from fleetops.core.logging import logger
from fleetops.models.trips import AffectedTrip, CascadePlan, OdometerValue, Trip
from fleetops.services.errors import TripNotFoundError, ValidationError
from fleetops.services.trip_store import TripRepository


class CascadeEngine:
    """Computes cascade plans from current stored state without writing anything.

    Every later trip of the same vehicle is shifted by the same offset as the
    corrected reading, so each trip keeps the distance it actually travelled.
    Gaps already present in the chain are carried along unchanged.
    """

    def __init__(self, repository: TripRepository) -> None:
        self._repository = repository

    def _load_target(self, trip_id: str) -> Trip:
        # Always re-read: consecutive corrections must start from the stored value.
        trip = self._repository.get_trip(trip_id)
        if trip is None or trip.is_deleted:
            raise TripNotFoundError(trip_id)
        return trip

    def subsequent_trips(self, target: Trip) -> List[Trip]:
        """Trips of the same vehicle ending at or after the target, oldest first."""
        chain = self._repository.list_trips_for_vehicle(target.vehicle_id, from_date=target.trip_end_date)
        return [trip for trip in chain if trip.trip_id != target.trip_id and not trip.is_deleted]

    def compute(self, trip_id: str, new_end_km: int) -> CascadePlan:
        if isinstance(new_end_km, bool) or not isinstance(new_end_km, int):
            raise ValidationError(f"new_end_km must be an integer, got {new_end_km!r}", trip_id=trip_id)
        if new_end_km < 0:
            raise ValidationError(f"new_end_km must be non-negative, got {new_end_km}", trip_id=trip_id)

        target = self._load_target(trip_id)
        delta = new_end_km - target.end_km

        entries = [
            AffectedTrip(
                trip_id=target.trip_id,
                serial_number=target.serial_number,
                old_value=OdometerValue(start_km=target.start_km, end_km=target.end_km),
                new_value=OdometerValue(start_km=target.start_km, end_km=new_end_km),
            )
        ]

        if delta != 0:
            for trip in self.subsequent_trips(target):
                new_start = trip.start_km + delta
                new_end = trip.end_km + delta
                if new_start < 0 or new_end < 0:
                    raise ValidationError(
                        f"Correction would push trip {trip.serial_number or trip.trip_id} below zero "
                        f"({new_start}-{new_end} km)",
                        trip_id=trip.trip_id,
                    )
                entries.append(
                    AffectedTrip(
                        trip_id=trip.trip_id,
                        serial_number=trip.serial_number,
                        old_value=OdometerValue(start_km=trip.start_km, end_km=trip.end_km),
                        new_value=OdometerValue(start_km=new_start, end_km=new_end),
                    )
                )

        plan = CascadePlan(
            trip_id=target.trip_id,
            vehicle_id=target.vehicle_id,
            vehicle_registration=target.vehicle_registration,
            serial_number=target.serial_number,
            trip_end_date=target.trip_end_date,
            old_end_km=target.end_km,
            new_end_km=new_end_km,
            delta=delta,
            entries=entries,
        )
        logger.debug(
            "Cascade plan computed",
            trip_id=trip_id,
            vehicle_id=target.vehicle_id,
            delta=delta,
            affected=len(entries),
        )
        return plan
