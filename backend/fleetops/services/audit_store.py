"""Append-only SQLite storage for trip corrections and audit entries."""
from __future__ import annotations

import json
from typing import List

from fleetops.core.config import get_settings
from fleetops.models.trips import AuditEntry, Correction
from fleetops.services.sqlite_base import SQLiteStore, _json_dumps, _to_iso_utc


class SQLiteAuditStore(SQLiteStore):
    """Correction history and before/after audit entries.

    Rows are only ever inserted; nothing in this class updates or deletes them.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS trip_corrections (
            correction_id TEXT PRIMARY KEY,
            trip_id TEXT NOT NULL,
            field_name TEXT NOT NULL,
            cascade_source TEXT,
            corrected_at TEXT NOT NULL,
            data_json TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_trip_corrections_trip ON trip_corrections (trip_id, corrected_at DESC);

        CREATE TABLE IF NOT EXISTS audit_entries (
            audit_id TEXT PRIMARY KEY,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            cascade_source TEXT,
            actor TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            data_json TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_audit_entries_entity
            ON audit_entries (entity_type, entity_id, timestamp DESC);
        CREATE INDEX IF NOT EXISTS idx_audit_entries_source ON audit_entries (cascade_source);
    """

    def __init__(self, db_path: str | None = None) -> None:
        super().__init__(db_path or get_settings().resolved_audit_db_path())

    def generate_correction_id(self) -> str:
        return f"COR-{self.next_sequence('correction'):06d}"

    def generate_audit_id(self) -> str:
        return f"AUD-{self.next_sequence('audit'):06d}"

    def append(self, corrections: List[Correction], entries: List[AuditEntry]) -> None:
        """Insert corrections and audit entries in a single transaction.

        Missing ids are allocated inside the same transaction, so a failed
        append leaves no gap in the `COR-`/`AUD-` sequences.
        """
        with self.transaction():
            for correction in corrections:
                if not correction.correction_id:
                    correction.correction_id = self.generate_correction_id()
                self._conn.execute(
                    """
                    INSERT INTO trip_corrections
                        (correction_id, trip_id, field_name, cascade_source, corrected_at, data_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        correction.correction_id,
                        correction.trip_id,
                        correction.field_name,
                        correction.cascade_source,
                        _to_iso_utc(correction.corrected_at),
                        _json_dumps(correction.model_dump(mode="json")),
                    ),
                )
            for entry in entries:
                if not entry.audit_id:
                    entry.audit_id = self.generate_audit_id()
                self._conn.execute(
                    """
                    INSERT INTO audit_entries
                        (audit_id, entity_type, entity_id, cascade_source, actor, timestamp, data_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.audit_id,
                        entry.entity_type,
                        entry.entity_id,
                        entry.cascade_source,
                        entry.actor,
                        _to_iso_utc(entry.timestamp),
                        _json_dumps(entry.model_dump(mode="json")),
                    ),
                )

    def list_corrections(self, trip_id: str, limit: int | None = None) -> List[Correction]:
        limit = limit or get_settings().history_limit
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT data_json FROM trip_corrections
                WHERE trip_id = ?
                ORDER BY corrected_at DESC, correction_id DESC
                LIMIT ?
                """,
                (trip_id, limit),
            ).fetchall()
        return [Correction(**json.loads(row["data_json"])) for row in rows]

    def list_audit_entries(
        self,
        entity_id: str,
        entity_type: str = "trip",
        limit: int | None = None,
    ) -> List[AuditEntry]:
        limit = limit or get_settings().history_limit
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT data_json FROM audit_entries
                WHERE entity_type = ? AND entity_id = ?
                ORDER BY timestamp DESC, audit_id DESC
                LIMIT ?
                """,
                (entity_type, entity_id, limit),
            ).fetchall()
        return [AuditEntry(**json.loads(row["data_json"])) for row in rows]

    def list_cascade_entries(self, source_trip_id: str) -> List[AuditEntry]:
        """Entries written for trips shifted by corrections of `source_trip_id`."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT data_json FROM audit_entries
                WHERE cascade_source = ?
                ORDER BY timestamp DESC, audit_id DESC
                """,
                (source_trip_id,),
            ).fetchall()
        return [AuditEntry(**json.loads(row["data_json"])) for row in rows]
