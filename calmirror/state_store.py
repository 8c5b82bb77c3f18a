from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from calmirror.errors import MappingStoreError
from calmirror.models import MappingRecord, parse_iso_datetime, serialize_datetime


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_mapping(row: sqlite3.Row) -> MappingRecord:
    return MappingRecord(
        identity=str(row["identity"]),
        remote_event_id=str(row["remote_event_id"]),
        last_applied_fingerprint=str(row["last_applied_fingerprint"]),
        is_exception=bool(row["is_exception"]),
        exception_of_identity=row["exception_of_identity"],
        exception_date=parse_iso_datetime(row["exception_date"]),
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

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS mappings (
            identity TEXT PRIMARY KEY,
            remote_event_id TEXT NOT NULL,
            last_applied_fingerprint TEXT NOT NULL,
            is_exception INTEGER NOT NULL DEFAULT 0,
            exception_of_identity TEXT,
            exception_date TEXT,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            created INTEGER NOT NULL,
            updated INTEGER NOT NULL,
            deleted INTEGER NOT NULL,
            errors_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def load_mappings(self) -> dict[str, MappingRecord]:
        try:
            with self._lock:
                with self._connect() as conn:
                    rows = conn.execute(
                        """
                        SELECT identity, remote_event_id, last_applied_fingerprint,
                               is_exception, exception_of_identity, exception_date
                        FROM mappings
                        """
                    ).fetchall()
        except sqlite3.Error as exc:
            raise MappingStoreError(f"Failed to load mappings: {exc}") from exc
        return {str(row["identity"]): _row_to_mapping(row) for row in rows}

    def get_mapping(self, identity: str) -> MappingRecord | None:
        try:
            with self._lock:
                with self._connect() as conn:
                    row = conn.execute(
                        """
                        SELECT identity, remote_event_id, last_applied_fingerprint,
                               is_exception, exception_of_identity, exception_date
                        FROM mappings
                        WHERE identity = ?
                        """,
                        (str(identity),),
                    ).fetchone()
        except sqlite3.Error as exc:
            raise MappingStoreError(f"Failed to read mapping {identity}: {exc}") from exc
        return _row_to_mapping(row) if row else None

    def upsert_mapping(self, record: MappingRecord) -> None:
        try:
            with self._lock:
                with self._connect() as conn:
                    conn.execute(
                        """
                        INSERT INTO mappings(identity, remote_event_id, last_applied_fingerprint,
                                             is_exception, exception_of_identity, exception_date, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(identity) DO UPDATE SET
                            remote_event_id = excluded.remote_event_id,
                            last_applied_fingerprint = excluded.last_applied_fingerprint,
                            is_exception = excluded.is_exception,
                            exception_of_identity = excluded.exception_of_identity,
                            exception_date = excluded.exception_date,
                            updated_at = excluded.updated_at
                        """,
                        (
                            record.identity,
                            record.remote_event_id,
                            record.last_applied_fingerprint,
                            int(record.is_exception),
                            record.exception_of_identity,
                            serialize_datetime(record.exception_date),
                            _utc_now(),
                        ),
                    )
                    conn.commit()
        except sqlite3.Error as exc:
            raise MappingStoreError(f"Failed to save mapping {record.identity}: {exc}") from exc

    def delete_mapping(self, identity: str) -> None:
        try:
            with self._lock:
                with self._connect() as conn:
                    conn.execute("DELETE FROM mappings WHERE identity = ?", (str(identity),))
                    conn.commit()
        except sqlite3.Error as exc:
            raise MappingStoreError(f"Failed to delete mapping {identity}: {exc}") from exc

    def count_mappings(self) -> int:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT COUNT(*) AS total FROM mappings").fetchone()
        return int(row["total"])

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms,
                                          created, updated, deleted, errors_json)
                    VALUES (?, ?, 'running', ?, 0, 0, 0, 0, '[]')
                    """,
                    (_utc_now(), trigger, message),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        created: int = 0,
        updated: int = 0,
        deleted: int = 0,
        errors: list[str] | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, created = ?, updated = ?,
                        deleted = ?, errors_json = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(created),
                        int(updated),
                        int(deleted),
                        json.dumps(list(errors or []), ensure_ascii=False),
                        int(run_id),
                    ),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms,
                           created, updated, deleted, errors_json
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["errors"] = json.loads(item.pop("errors_json") or "[]")
            output.append(item)
        return output

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT value
                    FROM app_meta
                    WHERE key = ?
                    """,
                    (str(key),),
                ).fetchone()
        if row is None:
            return None
        return str(row["value"])
