"""Trip repository interface and its SQLite-backed implementation."""
from __future__ import annotations

import re
import sqlite3
import uuid
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import List, Optional

from fleetops.core.config import get_settings
from fleetops.models.trips import Trip
from fleetops.services.sqlite_base import SQLiteStore, _parse_iso_utc, _to_iso_utc, _utc_now_iso


class TripRepository(ABC):
    """Narrow view of trip storage that corrections are allowed to use.

    Trips are always ordered by ``trip_end_date`` (then ``trip_id``), never by
    creation time. Writes issued inside ``transaction()`` become visible
    together or not at all.
    """

    @abstractmethod
    def get_trip(self, trip_id: str) -> Optional[Trip]:
        ...

    @abstractmethod
    def list_trips_for_vehicle(
        self,
        vehicle_id: str,
        from_date: Optional[datetime] = None,
        include_deleted: bool = False,
    ) -> List[Trip]:
        ...

    @abstractmethod
    def update_trip_odometer(self, trip_id: str, start_km: int, end_km: int) -> None:
        ...

    @abstractmethod
    def list_refueling_trips_for_vehicle(
        self,
        vehicle_id: str,
        from_date: Optional[datetime] = None,
    ) -> List[Trip]:
        ...

    @abstractmethod
    def update_calculated_kmpl(self, trip_id: str, value: Optional[float]) -> None:
        ...

    @abstractmethod
    def transaction(self) -> AbstractContextManager[None]:
        ...


class SQLiteTripStore(SQLiteStore, TripRepository):
    """Durable trip storage for one fleet database."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS trips (
            trip_id TEXT PRIMARY KEY,
            vehicle_id TEXT NOT NULL,
            vehicle_registration TEXT NOT NULL,
            serial_number TEXT NOT NULL,
            start_km INTEGER NOT NULL,
            end_km INTEGER NOT NULL,
            trip_start_date TEXT,
            trip_end_date TEXT NOT NULL,
            refueling_done INTEGER NOT NULL DEFAULT 0,
            fuel_quantity REAL,
            calculated_kmpl REAL,
            deleted_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_trips_vehicle_end_date ON trips (vehicle_id, trip_end_date);
        CREATE INDEX IF NOT EXISTS idx_trips_vehicle_refueling ON trips (vehicle_id, refueling_done);
    """

    _COLUMNS = (
        "trip_id, vehicle_id, vehicle_registration, serial_number, start_km, end_km, "
        "trip_start_date, trip_end_date, refueling_done, fuel_quantity, calculated_kmpl, "
        "deleted_at, created_at, updated_at"
    )

    def __init__(self, db_path: str | None = None) -> None:
        super().__init__(db_path or get_settings().trips_db_path)

    @staticmethod
    def _row_to_trip(row: sqlite3.Row) -> Trip:
        return Trip(
            trip_id=row["trip_id"],
            vehicle_id=row["vehicle_id"],
            vehicle_registration=row["vehicle_registration"],
            serial_number=row["serial_number"],
            start_km=int(row["start_km"]),
            end_km=int(row["end_km"]),
            trip_start_date=_parse_iso_utc(row["trip_start_date"]),
            trip_end_date=_parse_iso_utc(row["trip_end_date"]),
            refueling_done=bool(row["refueling_done"]),
            fuel_quantity=row["fuel_quantity"],
            calculated_kmpl=row["calculated_kmpl"],
            deleted_at=_parse_iso_utc(row["deleted_at"]),
            created_at=_parse_iso_utc(row["created_at"]),
            updated_at=_parse_iso_utc(row["updated_at"]),
        )

    @staticmethod
    def _compact_registration(registration: str, vehicle_id: str) -> str:
        compact = re.sub(r"[^A-Z0-9]", "", (registration or "").upper())
        return compact or vehicle_id

    def next_serial_number(self, vehicle_id: str, registration: str = "") -> str:
        prefix = self._compact_registration(registration, vehicle_id)
        return f"{prefix}-{self.next_sequence(f'trip:{vehicle_id}'):04d}"

    def create_trip(self, trip: Trip) -> Trip:
        """Insert a trip as produced by upstream trip-management flows."""
        data = trip.model_copy()
        if not data.trip_id:
            data.trip_id = uuid.uuid4().hex
        if not data.serial_number:
            data.serial_number = self.next_serial_number(data.vehicle_id, data.vehicle_registration)
        with self._lock:
            self._conn.execute(
                f"INSERT INTO trips ({self._COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    data.trip_id,
                    data.vehicle_id,
                    data.vehicle_registration,
                    data.serial_number,
                    data.start_km,
                    data.end_km,
                    _to_iso_utc(data.trip_start_date) if data.trip_start_date else None,
                    _to_iso_utc(data.trip_end_date),
                    1 if data.refueling_done else 0,
                    data.fuel_quantity,
                    data.calculated_kmpl,
                    _to_iso_utc(data.deleted_at) if data.deleted_at else None,
                    _to_iso_utc(data.created_at),
                    _to_iso_utc(data.updated_at),
                ),
            )
            self._commit()
        return data

    def soft_delete_trip(self, trip_id: str) -> None:
        with self._lock:
            now = _utc_now_iso()
            cursor = self._conn.execute(
                "UPDATE trips SET deleted_at = ?, updated_at = ? WHERE trip_id = ? AND deleted_at IS NULL",
                (now, now, trip_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(trip_id)
            self._commit()

    def get_trip(self, trip_id: str) -> Optional[Trip]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {self._COLUMNS} FROM trips WHERE trip_id = ?",
                (trip_id,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_trip(row)

    def list_trips_for_vehicle(
        self,
        vehicle_id: str,
        from_date: Optional[datetime] = None,
        include_deleted: bool = False,
    ) -> List[Trip]:
        query = f"SELECT {self._COLUMNS} FROM trips WHERE vehicle_id = ?"
        params: list = [vehicle_id]
        if from_date is not None:
            query += " AND trip_end_date >= ?"
            params.append(_to_iso_utc(from_date))
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        query += " ORDER BY trip_end_date ASC, trip_id ASC"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_trip(row) for row in rows]

    def list_refueling_trips_for_vehicle(
        self,
        vehicle_id: str,
        from_date: Optional[datetime] = None,
    ) -> List[Trip]:
        return [
            trip
            for trip in self.list_trips_for_vehicle(vehicle_id, from_date=from_date)
            if trip.refueling_done
        ]

    def update_trip_odometer(self, trip_id: str, start_km: int, end_km: int) -> None:
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE trips SET start_km = ?, end_km = ?, updated_at = ? WHERE trip_id = ?",
                (start_km, end_km, _utc_now_iso(), trip_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(trip_id)
            self._commit()

    def update_calculated_kmpl(self, trip_id: str, value: Optional[float]) -> None:
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE trips SET calculated_kmpl = ?, updated_at = ? WHERE trip_id = ?",
                (value, _utc_now_iso(), trip_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(trip_id)
            self._commit()
