from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime
from typing import Callable

from biblioteca_sync.domain.ports import ConflictLog
from biblioteca_sync.domain.sync_models import (
    ConflictRecord,
    ConflictResolutionStrategy,
    SyncConflict,
    SyncMetadata,
)
from biblioteca_sync.domain.time_utils import parse_timestamp_or_none, to_iso, utc_now
from biblioteca_sync.infrastructure.sqlite_uow import transaction

logger = logging.getLogger(__name__)

_SELECT_COLUMNS = """
    id, table_name, record_id, local_data, remote_data, local_metadata, remote_metadata,
    conflict_type, created_at, resolved, resolution_strategy
"""


def _execute_with_validation(
    connection: sqlite3.Connection, sql: str, params: tuple[object, ...], context: str
) -> sqlite3.Cursor:
    expected = sql.count("?")
    actual = len(params)
    if expected != actual:
        raise ValueError(
            f"SQL param mismatch for {context}: expected {expected} placeholders, got {actual} parameters."
        )
    return connection.execute(sql, params)


def _row_to_record(row: sqlite3.Row) -> ConflictRecord:
    return ConflictRecord(
        id=int(row["id"]),
        table_name=row["table_name"],
        record_id=row["record_id"],
        local_snapshot=json.loads(row["local_data"] or "{}"),
        remote_snapshot=json.loads(row["remote_data"] or "{}"),
        local_metadata=SyncMetadata.from_dict(json.loads(row["local_metadata"])),
        remote_metadata=SyncMetadata.from_dict(json.loads(row["remote_metadata"])),
        strategy=row["conflict_type"],
        detected_at=parse_timestamp_or_none(row["created_at"]) or utc_now(),
        resolved=bool(row["resolved"]),
        resolution=row["resolution_strategy"],
    )


class SQLiteConflictsRepository(ConflictLog):
    def __init__(
        self,
        connection: sqlite3.Connection,
        *,
        lock: threading.RLock | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._connection = connection
        self._connection.row_factory = sqlite3.Row
        self._lock = lock or threading.RLock()
        self._clock = clock

    def record(self, table: str, conflict: SyncConflict, strategy: ConflictResolutionStrategy) -> int:
        with self._lock:
            with transaction(self._connection):
                cursor = _execute_with_validation(
                    self._connection,
                    """
                    INSERT INTO sync_conflicts (
                        table_name, record_id, local_data, remote_data, local_metadata,
                        remote_metadata, conflict_type, created_at, resolved
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0)
                    """,
                    (
                        table,
                        conflict.record_id,
                        json.dumps(conflict.local, ensure_ascii=False, default=str),
                        json.dumps(conflict.remote, ensure_ascii=False, default=str),
                        json.dumps(conflict.local_metadata.to_dict()),
                        json.dumps(conflict.remote_metadata.to_dict()),
                        strategy.value,
                        to_iso(self._clock()),
                    ),
                    "record_conflict",
                )
                conflict_id = int(cursor.lastrowid)
        logger.info("Conflicto registrado id=%s %s/%s", conflict_id, table, conflict.record_id)
        return conflict_id

    def open_record_ids(self, table: str) -> set[str]:
        with self._lock:
            rows = self._connection.execute(
                "SELECT DISTINCT record_id FROM sync_conflicts WHERE table_name = ? AND resolved = 0",
                (table,),
            ).fetchall()
        return {row["record_id"] for row in rows}

    def list_open(self) -> list[ConflictRecord]:
        with self._lock:
            rows = self._connection.execute(
                f"SELECT {_SELECT_COLUMNS} FROM sync_conflicts WHERE resolved = 0 ORDER BY created_at ASC, id ASC"
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def count_open(self) -> int:
        with self._lock:
            row = self._connection.execute(
                "SELECT COUNT(*) AS total FROM sync_conflicts WHERE resolved = 0"
            ).fetchone()
        return int(row["total"] if row else 0)

    def get(self, conflict_id: int) -> ConflictRecord | None:
        with self._lock:
            row = self._connection.execute(
                f"SELECT {_SELECT_COLUMNS} FROM sync_conflicts WHERE id = ?",
                (conflict_id,),
            ).fetchone()
        return _row_to_record(row) if row else None

    def mark_resolved(self, conflict_id: int, resolution: str) -> None:
        with self._lock:
            with transaction(self._connection):
                _execute_with_validation(
                    self._connection,
                    """
                    UPDATE sync_conflicts
                    SET resolved = 1, resolution_strategy = ?, resolved_at = ?
                    WHERE id = ?
                    """,
                    (resolution, to_iso(self._clock()), conflict_id),
                    "mark_conflict_resolved",
                )
