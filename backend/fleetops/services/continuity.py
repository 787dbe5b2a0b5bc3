"""Odometer continuity report across a vehicle's trips."""
from __future__ import annotations

from typing import List

from fleetops.core.config import get_settings
from fleetops.models.trips import ContinuityGap, GapSeverity, Trip
from fleetops.services.trip_store import TripRepository


class ContinuityChecker:
    def __init__(
        self,
        repository: TripRepository,
        small_gap_km: int | None = None,
        moderate_gap_km: int | None = None,
    ) -> None:
        settings = get_settings()
        self._repository = repository
        self._small = small_gap_km if small_gap_km is not None else settings.continuity_small_gap_km
        self._moderate = moderate_gap_km if moderate_gap_km is not None else settings.continuity_moderate_gap_km

    def classify(self, gap_km: int) -> GapSeverity:
        if gap_km < 0:
            return GapSeverity.NEGATIVE
        if gap_km == 0:
            return GapSeverity.PERFECT
        if gap_km <= self._small:
            return GapSeverity.SMALL
        if gap_km <= self._moderate:
            return GapSeverity.MODERATE
        return GapSeverity.LARGE

    @staticmethod
    def _message(severity: GapSeverity, gap_km: int, previous: Trip, trip: Trip) -> str:
        label = previous.serial_number or previous.trip_id
        if severity is GapSeverity.NEGATIVE:
            return (
                f"Odometer went backwards: start {trip.start_km} km is below "
                f"previous trip {label} end {previous.end_km} km"
            )
        if severity is GapSeverity.PERFECT:
            return "Perfect odometer continuity"
        if severity is GapSeverity.SMALL:
            return f"Small gap of {gap_km} km - likely movement without trip logging"
        if severity is GapSeverity.MODERATE:
            return f"Moderate gap of {gap_km} km after trip {label}; verify whether a trip is missing"
        return f"Large gap of {gap_km} km after trip {label}; missing trips or data entry error"

    def check(self, vehicle_id: str) -> List[ContinuityGap]:
        trips = self._repository.list_trips_for_vehicle(vehicle_id)
        gaps: List[ContinuityGap] = []
        for previous, trip in zip(trips, trips[1:]):
            gap_km = trip.start_km - previous.end_km
            severity = self.classify(gap_km)
            gaps.append(
                ContinuityGap(
                    previous_trip_id=previous.trip_id,
                    previous_serial_number=previous.serial_number,
                    previous_end_km=previous.end_km,
                    trip_id=trip.trip_id,
                    serial_number=trip.serial_number,
                    start_km=trip.start_km,
                    gap_km=gap_km,
                    severity=severity,
                    message=self._message(severity, gap_km, previous, trip),
                )
            )
        return gaps
