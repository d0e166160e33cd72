from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

from calmirror.models import (
    Conflict,
    ConflictResolution,
    ConflictType,
    EventData,
    EventSyncStatus,
    LocalEvent,
    SyncState,
    SyncStateStatus,
    normalize_calendar_id,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)

SYNC_STATE_COLUMNS = (
    "delta_token",
    "last_full_sync_at",
    "last_delta_sync_at",
    "sync_in_progress",
    "total_events",
    "synced_events",
    "conflicted_events",
    "failed_events",
    "last_sync_status",
    "last_sync_error",
)
SYNC_STATE_COUNTERS = ("synced_events", "conflicted_events", "failed_events")

EVENT_FIELDS = (
    "id",
    "user_id",
    "calendar_id",
    "provider_id",
    "etag",
    "subject",
    "description",
    "location",
    "start",
    "end",
    "time_zone",
    "is_all_day",
    "is_recurring",
    "recurrence_pattern",
    "locally_modified",
    "remotely_modified",
    "locally_deleted",
    "last_synced_at",
    "sync_status",
    "created_at",
    "updated_at",
)
EVENT_DB_COLUMNS = {"start": "start_at", "end": "end_at"}


def _event_column(field_name: str) -> str:
    return EVENT_DB_COLUMNS.get(field_name, field_name)


def _utc_now() -> str:
    return utc_now().isoformat()


def _to_db(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return serialize_datetime(value)
    if isinstance(value, Enum):
        return value.value
    return value


def _snapshot_json(data: EventData | None) -> str | None:
    if data is None:
        return None
    return json.dumps(data.to_dict(), sort_keys=True, ensure_ascii=False)


def _snapshot_from_json(raw: str | None) -> EventData | None:
    if not raw:
        return None
    return EventData.from_dict(json.loads(raw))


def _row_to_event(row: sqlite3.Row) -> LocalEvent:
    return LocalEvent(
        id=row["id"],
        user_id=row["user_id"],
        calendar_id=row["calendar_id"] or "",
        provider_id=row["provider_id"],
        etag=row["etag"],
        subject=row["subject"] or "",
        description=row["description"],
        location=row["location"],
        start=parse_iso_datetime(row["start_at"]),
        end=parse_iso_datetime(row["end_at"]),
        time_zone=row["time_zone"],
        is_all_day=bool(row["is_all_day"]),
        is_recurring=bool(row["is_recurring"]),
        recurrence_pattern=row["recurrence_pattern"],
        locally_modified=bool(row["locally_modified"]),
        remotely_modified=bool(row["remotely_modified"]),
        locally_deleted=bool(row["locally_deleted"]),
        last_synced_at=parse_iso_datetime(row["last_synced_at"]),
        sync_status=EventSyncStatus(row["sync_status"]),
        created_at=parse_iso_datetime(row["created_at"]) or utc_now(),
        updated_at=parse_iso_datetime(row["updated_at"]) or utc_now(),
    )


def _row_to_sync_state(row: sqlite3.Row) -> SyncState:
    return SyncState(
        user_id=row["user_id"],
        calendar_id=row["calendar_id"],
        delta_token=row["delta_token"],
        last_full_sync_at=parse_iso_datetime(row["last_full_sync_at"]),
        last_delta_sync_at=parse_iso_datetime(row["last_delta_sync_at"]),
        sync_in_progress=bool(row["sync_in_progress"]),
        total_events=int(row["total_events"] or 0),
        synced_events=int(row["synced_events"] or 0),
        conflicted_events=int(row["conflicted_events"] or 0),
        failed_events=int(row["failed_events"] or 0),
        last_sync_status=SyncStateStatus(row["last_sync_status"]),
        last_sync_error=row["last_sync_error"],
        updated_at=parse_iso_datetime(row["updated_at"]),
    )


def _row_to_conflict(row: sqlite3.Row) -> Conflict:
    return Conflict(
        id=row["id"],
        event_id=row["event_id"],
        user_id=row["user_id"],
        conflict_type=ConflictType(row["conflict_type"]),
        local_version=_snapshot_from_json(row["local_version_json"]) or EventData(),
        remote_version=_snapshot_from_json(row["remote_version_json"]),
        auto_resolvable=bool(row["auto_resolvable"]),
        resolution=ConflictResolution(row["resolution"]),
        resolved_at=parse_iso_datetime(row["resolved_at"]),
        resolved_by=row["resolved_by"],
        resolved_data=_snapshot_from_json(row["resolved_data_json"]),
        notes=row["notes"],
        created_at=parse_iso_datetime(row["created_at"]) or utc_now(),
    )


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sync_states (
            user_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL DEFAULT '',
            delta_token TEXT,
            last_full_sync_at TEXT,
            last_delta_sync_at TEXT,
            sync_in_progress INTEGER NOT NULL DEFAULT 0,
            total_events INTEGER NOT NULL DEFAULT 0,
            synced_events INTEGER NOT NULL DEFAULT 0,
            conflicted_events INTEGER NOT NULL DEFAULT 0,
            failed_events INTEGER NOT NULL DEFAULT 0,
            last_sync_status TEXT NOT NULL DEFAULT 'pending',
            last_sync_error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (user_id, calendar_id)
        );

        CREATE TABLE IF NOT EXISTS local_events (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL DEFAULT '',
            provider_id TEXT,
            etag TEXT,
            subject TEXT NOT NULL DEFAULT '',
            description TEXT,
            location TEXT,
            start_at TEXT,
            end_at TEXT,
            time_zone TEXT,
            is_all_day INTEGER NOT NULL DEFAULT 0,
            is_recurring INTEGER NOT NULL DEFAULT 0,
            recurrence_pattern TEXT,
            locally_modified INTEGER NOT NULL DEFAULT 0,
            remotely_modified INTEGER NOT NULL DEFAULT 0,
            locally_deleted INTEGER NOT NULL DEFAULT 0,
            last_synced_at TEXT,
            sync_status TEXT NOT NULL DEFAULT 'pending',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, provider_id)
        );

        CREATE INDEX IF NOT EXISTS idx_local_events_dirty
            ON local_events(user_id, locally_modified);

        CREATE TABLE IF NOT EXISTS conflicts (
            id TEXT PRIMARY KEY,
            event_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            conflict_type TEXT NOT NULL,
            local_version_json TEXT NOT NULL,
            remote_version_json TEXT,
            auto_resolvable INTEGER NOT NULL DEFAULT 0,
            resolution TEXT NOT NULL DEFAULT 'pending',
            resolved_at TEXT,
            resolved_by TEXT,
            resolved_data_json TEXT,
            notes TEXT,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_conflicts_user_resolution
            ON conflicts(user_id, resolution);

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL DEFAULT '',
            direction TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            started_at TEXT NOT NULL,
            ended_at TEXT NOT NULL,
            duration_ms INTEGER NOT NULL,
            synced_count INTEGER NOT NULL DEFAULT 0,
            conflict_count INTEGER NOT NULL DEFAULT 0,
            error_count INTEGER NOT NULL DEFAULT 0,
            skipped_count INTEGER NOT NULL DEFAULT 0,
            full_sync INTEGER NOT NULL DEFAULT 0,
            error TEXT
        );
        """
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(schema_sql)
            finally:
                conn.close()

    # Sync state

    def _ensure_sync_state(self, conn: sqlite3.Connection, user_id: str, calendar_id: str) -> None:
        now = _utc_now()
        conn.execute(
            """
            INSERT INTO sync_states(user_id, calendar_id, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id, calendar_id) DO NOTHING
            """,
            (user_id, calendar_id, now, now),
        )

    def get_sync_state(self, user_id: str, calendar_id: str | None = None) -> SyncState | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM sync_states WHERE user_id = ? AND calendar_id = ?",
                (user_id, normalize_calendar_id(calendar_id)),
            ).fetchone()
        return _row_to_sync_state(row) if row else None

    def upsert_sync_state(
        self,
        user_id: str,
        calendar_id: str | None = None,
        *,
        increments: dict[str, int] | None = None,
        **updates: Any,
    ) -> SyncState:
        calendar_key = normalize_calendar_id(calendar_id)
        unknown = set(updates) - set(SYNC_STATE_COLUMNS)
        if unknown:
            raise ValueError(f"unknown sync state fields: {sorted(unknown)}")
        increments = increments or {}
        unknown_counters = set(increments) - set(SYNC_STATE_COUNTERS)
        if unknown_counters:
            raise ValueError(f"unknown sync state counters: {sorted(unknown_counters)}")

        assignments: list[str] = []
        values: list[Any] = []
        for column, value in updates.items():
            assignments.append(f"{column} = ?")
            values.append(_to_db(value))
        for column, delta in increments.items():
            assignments.append(f"{column} = {column} + ?")
            values.append(int(delta))
        assignments.append("updated_at = ?")
        values.append(_utc_now())

        with self._connection() as conn:
            self._ensure_sync_state(conn, user_id, calendar_key)
            conn.execute(
                f"UPDATE sync_states SET {', '.join(assignments)} WHERE user_id = ? AND calendar_id = ?",
                (*values, user_id, calendar_key),
            )
            row = conn.execute(
                "SELECT * FROM sync_states WHERE user_id = ? AND calendar_id = ?",
                (user_id, calendar_key),
            ).fetchone()
        return _row_to_sync_state(row)

    def compare_and_set_delta_token(
        self,
        user_id: str,
        calendar_id: str | None,
        *,
        expected: str | None,
        new: str | None,
    ) -> bool:
        calendar_key = normalize_calendar_id(calendar_id)
        with self._connection() as conn:
            self._ensure_sync_state(conn, user_id, calendar_key)
            cursor = conn.execute(
                """
                UPDATE sync_states
                SET delta_token = ?, updated_at = ?
                WHERE user_id = ? AND calendar_id = ? AND delta_token IS ?
                """,
                (new, _utc_now(), user_id, calendar_key, expected),
            )
            return cursor.rowcount == 1

    def delete_sync_state(self, user_id: str, calendar_id: str | None = None) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_states WHERE user_id = ? AND calendar_id = ?",
                (user_id, normalize_calendar_id(calendar_id)),
            )
            return cursor.rowcount > 0

    # Local mirror

    def save_event(self, event: LocalEvent) -> LocalEvent:
        stored = event.with_updates(updated_at=utc_now(), calendar_id=normalize_calendar_id(event.calendar_id))
        columns = [_event_column(name) for name in EVENT_FIELDS]
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{column} = excluded.{column}" for column in columns if column != "id")
        with self._connection() as conn:
            conn.execute(
                f"""
                INSERT INTO local_events({', '.join(columns)})
                VALUES ({placeholders})
                ON CONFLICT(id) DO UPDATE SET {updates}
                """,
                tuple(_to_db(getattr(stored, name)) for name in EVENT_FIELDS),
            )
        return stored

    def get_event(self, event_id: str) -> LocalEvent | None:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM local_events WHERE id = ?", (event_id,)).fetchone()
        return _row_to_event(row) if row else None

    def find_by_user_and_provider_id(self, user_id: str, provider_id: str) -> LocalEvent | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM local_events WHERE user_id = ? AND provider_id = ?",
                (user_id, provider_id),
            ).fetchone()
        return _row_to_event(row) if row else None

    def find_dirty(self, user_id: str, calendar_id: str | None = None) -> list[LocalEvent]:
        query = "SELECT * FROM local_events WHERE user_id = ? AND locally_modified = 1"
        params: list[Any] = [user_id]
        if calendar_id is not None:
            query += " AND calendar_id = ?"
            params.append(normalize_calendar_id(calendar_id))
        query += " ORDER BY updated_at ASC, id ASC"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_event(row) for row in rows]

    def list_events(self, user_id: str, calendar_id: str | None = None, limit: int = 500) -> list[LocalEvent]:
        query = "SELECT * FROM local_events WHERE user_id = ?"
        params: list[Any] = [user_id]
        if calendar_id is not None:
            query += " AND calendar_id = ?"
            params.append(normalize_calendar_id(calendar_id))
        query += " ORDER BY start_at ASC, id ASC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_event(row) for row in rows]

    def delete_event(self, event_id: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM local_events WHERE id = ?", (event_id,))
            return cursor.rowcount > 0

    def count_user_events(self, user_id: str, calendar_id: str | None = None) -> int:
        query = "SELECT COUNT(*) AS total FROM local_events WHERE user_id = ?"
        params: list[Any] = [user_id]
        if calendar_id is not None:
            query += " AND calendar_id = ?"
            params.append(normalize_calendar_id(calendar_id))
        with self._connection() as conn:
            row = conn.execute(query, params).fetchone()
        return int(row["total"])

    # Conflicts

    def insert_conflict(self, conflict: Conflict) -> Conflict:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO conflicts(
                    id, event_id, user_id, conflict_type, local_version_json, remote_version_json,
                    auto_resolvable, resolution, resolved_at, resolved_by, resolved_data_json, notes, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conflict.id,
                    conflict.event_id,
                    conflict.user_id,
                    conflict.conflict_type.value,
                    _snapshot_json(conflict.local_version),
                    _snapshot_json(conflict.remote_version),
                    int(conflict.auto_resolvable),
                    conflict.resolution.value,
                    serialize_datetime(conflict.resolved_at),
                    conflict.resolved_by,
                    _snapshot_json(conflict.resolved_data),
                    conflict.notes,
                    serialize_datetime(conflict.created_at),
                ),
            )
        return conflict

    def get_conflict(self, conflict_id: str) -> Conflict | None:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM conflicts WHERE id = ?", (conflict_id,)).fetchone()
        return _row_to_conflict(row) if row else None

    def find_pending_conflict(
        self,
        *,
        event_id: str,
        conflict_type: ConflictType,
        remote_version: EventData | None,
    ) -> Conflict | None:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM conflicts
                WHERE event_id = ? AND conflict_type = ? AND resolution = 'pending'
                  AND remote_version_json IS ?
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (event_id, conflict_type.value, _snapshot_json(remote_version)),
            ).fetchone()
        return _row_to_conflict(row) if row else None

    def list_conflicts(
        self,
        user_id: str | None = None,
        resolution: ConflictResolution | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Conflict]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if resolution is not None:
            clauses.append("resolution = ?")
            params.append(resolution.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([max(1, int(limit)), max(0, int(offset))])
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM conflicts {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                params,
            ).fetchall()
        return [_row_to_conflict(row) for row in rows]

    def count_pending_conflicts(self, user_id: str) -> int:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM conflicts WHERE user_id = ? AND resolution = 'pending'",
                (user_id,),
            ).fetchone()
        return int(row["total"])

    def resolve_conflict(
        self,
        conflict_id: str,
        *,
        resolution: ConflictResolution,
        resolved_by: str,
        resolved_data: EventData | None = None,
        notes: str | None = None,
        event_to_save: LocalEvent | None = None,
        event_to_delete: str | None = None,
    ) -> bool:
        """Stamp a pending conflict and apply its mirror change in one transaction.

        Returns False without touching anything when the conflict is no longer pending.
        """
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE conflicts
                SET resolution = ?, resolved_at = ?, resolved_by = ?, resolved_data_json = ?, notes = ?
                WHERE id = ? AND resolution = 'pending'
                """,
                (
                    resolution.value,
                    _utc_now(),
                    resolved_by,
                    _snapshot_json(resolved_data),
                    notes,
                    conflict_id,
                ),
            )
            if cursor.rowcount != 1:
                return False
            if event_to_delete:
                conn.execute("DELETE FROM local_events WHERE id = ?", (event_to_delete,))
            if event_to_save is not None:
                stored = event_to_save.with_updates(updated_at=utc_now())
                names = [name for name in EVENT_FIELDS if name != "id"]
                assignments = ", ".join(f"{_event_column(name)} = ?" for name in names)
                conn.execute(
                    f"UPDATE local_events SET {assignments} WHERE id = ?",
                    (*(_to_db(getattr(stored, name)) for name in names), stored.id),
                )
        return True

    # Run history

    def record_sync_run(
        self,
        *,
        job_id: str,
        user_id: str,
        calendar_id: str,
        direction: str,
        trigger: str,
        status: str,
        started_at: datetime,
        ended_at: datetime,
        synced_count: int = 0,
        conflict_count: int = 0,
        error_count: int = 0,
        skipped_count: int = 0,
        full_sync: bool = False,
        error: str | None = None,
    ) -> int:
        duration_ms = max(0, int((ended_at - started_at).total_seconds() * 1000))
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_runs(
                    job_id, user_id, calendar_id, direction, trigger, status, started_at, ended_at,
                    duration_ms, synced_count, conflict_count, error_count, skipped_count, full_sync, error
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    user_id,
                    normalize_calendar_id(calendar_id),
                    direction,
                    trigger,
                    status,
                    serialize_datetime(started_at),
                    serialize_datetime(ended_at),
                    duration_ms,
                    int(synced_count),
                    int(conflict_count),
                    int(error_count),
                    int(skipped_count),
                    int(full_sync),
                    error,
                ),
            )
            return int(cursor.lastrowid)

    def recent_sync_runs(self, user_id: str, limit: int = 20, offset: int = 0) -> list[dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sync_runs
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ? OFFSET ?
                """,
                (user_id, max(1, int(limit)), max(0, int(offset))),
            ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["full_sync"] = bool(item["full_sync"])
            output.append(item)
        return output

    def sync_runs_since(self, user_id: str, since: datetime) -> list[dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sync_runs
                WHERE user_id = ? AND started_at >= ?
                ORDER BY id DESC
                """,
                (user_id, serialize_datetime(since)),
            ).fetchall()
        return [dict(row) for row in rows]
