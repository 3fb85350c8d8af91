from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime
from typing import Callable, Iterable

from biblioteca_sync.core.errors import StorageError
from biblioteca_sync.domain.ports import OperationQueue
from biblioteca_sync.domain.sync_models import OperationType, PendingOperation, Record
from biblioteca_sync.domain.time_utils import parse_timestamp_or_none, to_iso, utc_now
from biblioteca_sync.infrastructure.local_sqlite_store import validate_table_name
from biblioteca_sync.infrastructure.sqlite_uow import transaction

logger = logging.getLogger(__name__)


def _row_to_pending(row: sqlite3.Row) -> PendingOperation:
    return PendingOperation(
        queue_id=int(row["id"]),
        table_name=row["table_name"],
        record_id=row["record_id"],
        op_type=OperationType(row["operation"]),
        payload=json.loads(row["data"]) if row["data"] else None,
        created_at=parse_timestamp_or_none(row["created_at"]) or utc_now(),
        attempts=int(row["attempts"] or 0),
        last_error=row["last_error"],
    )


class SQLiteOperationQueue(OperationQueue):
    """Cola persistente de operaciones locales hechas sin conexión."""

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

    def enqueue(
        self, table: str, record_id: str, op_type: OperationType, payload: Record | None
    ) -> PendingOperation:
        validate_table_name(table)
        data = None if payload is None else json.dumps(payload, ensure_ascii=False, default=str)
        with self._lock:
            try:
                with transaction(self._connection):
                    cursor = self._connection.execute(
                        """
                        INSERT INTO sync_queue (table_name, record_id, operation, data, created_at, attempts)
                        VALUES (?, ?, ?, ?, ?, 0)
                        """,
                        (table, str(record_id), op_type.value, data, to_iso(self._clock())),
                    )
                    queue_id = int(cursor.lastrowid)
                row = self._connection.execute("SELECT * FROM sync_queue WHERE id = ?", (queue_id,)).fetchone()
            except sqlite3.Error as exc:
                raise StorageError(f"No se pudo encolar {op_type.value} {table}/{record_id}: {exc}") from exc
        logger.debug("Operación encolada id=%s %s %s/%s", queue_id, op_type.value, table, record_id)
        return _row_to_pending(row)

    def list_pending(self, table: str | None = None, limit: int | None = None) -> list[PendingOperation]:
        sql = "SELECT * FROM sync_queue"
        params: list[object] = []
        if table is not None:
            sql += " WHERE table_name = ?"
            params.append(table)
        sql += " ORDER BY id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self._connection.execute(sql, params).fetchall()
        return [_row_to_pending(row) for row in rows]

    def count(self) -> int:
        with self._lock:
            row = self._connection.execute("SELECT COUNT(*) AS total FROM sync_queue").fetchone()
        return int(row["total"] if row else 0)

    def record_attempt(self, queue_id: int, error: str | None) -> None:
        with self._lock:
            with transaction(self._connection):
                self._connection.execute(
                    "UPDATE sync_queue SET attempts = attempts + 1, last_error = ? WHERE id = ?",
                    (error, queue_id),
                )

    def remove(self, queue_ids: Iterable[int]) -> None:
        ids = [int(queue_id) for queue_id in queue_ids]
        if not ids:
            return
        with self._lock:
            with transaction(self._connection):
                self._connection.executemany("DELETE FROM sync_queue WHERE id = ?", [(queue_id,) for queue_id in ids])
