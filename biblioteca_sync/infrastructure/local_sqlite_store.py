from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator

from biblioteca_sync.core.errors import ConfigError, InvalidDataError, StorageError
from biblioteca_sync.domain.ports import ConflictResolver, LocalDataStore
from biblioteca_sync.domain.sync_models import (
    METADATA_COLUMNS,
    ConflictResolutionStrategy,
    OperationType,
    Record,
    RecordSyncState,
    SyncConflict,
    SyncMetadata,
    SyncOperation,
)
from biblioteca_sync.domain.time_utils import parse_timestamp_or_none, to_iso, utc_now
from biblioteca_sync.infrastructure.sqlite_uow import transaction

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SYNC_TABLES = ("sync_state", "sync_metadata", "sync_queue", "sync_conflicts")
_IN_CHUNK = 500


def validate_table_name(table: str) -> str:
    if not isinstance(table, str) or not _IDENTIFIER_RE.match(table):
        raise InvalidDataError(f"Nombre de tabla no válido: {table!r}")
    if table in _SYNC_TABLES or table == "schema_migrations":
        raise InvalidDataError(f"La tabla {table} es interna de la sincronización")
    return table


def to_sql_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    return value


def _chunks(items: list[str], size: int) -> Iterator[list[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _row_to_state(row: sqlite3.Row) -> RecordSyncState:
    return RecordSyncState(
        record_id=row["record_id"],
        local_version=int(row["local_version"] or 0),
        remote_version=int(row["remote_version"] or 0),
        remote_updated_at=parse_timestamp_or_none(row["remote_updated_at"]),
        is_deleted=bool(row["is_deleted"]),
        last_sync_at=parse_timestamp_or_none(row["last_sync_at"]),
    )


class SQLiteLocalDataStore(LocalDataStore):
    """Almacén local SQLite con metadatos de sincronización por registro.

    Las tablas de dominio deben tener ``id`` como clave primaria y una columna
    ``updated_at``; el borrado lógico usa ``deleted_at``. El estado de cada fila
    (versiones local/remota, tombstone) vive en ``sync_metadata`` y la marca de
    agua por tabla en ``sync_state``.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        resolver: ConflictResolver | None = None,
        *,
        lock: threading.RLock | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._connection = connection
        self._connection.row_factory = sqlite3.Row
        self._resolver = resolver
        self._connection_lock = lock or threading.RLock()
        self._clock = clock
        self._table_locks: dict[str, threading.RLock] = {}
        self._table_locks_guard = threading.Lock()
        self._columns_cache: dict[str, tuple[str, ...]] = {}

    def table_lock(self, table: str) -> threading.RLock:
        with self._table_locks_guard:
            return self._table_locks.setdefault(table, threading.RLock())

    def is_initialized(self) -> bool:
        try:
            with self._connection_lock:
                rows = self._connection.execute(
                    f"SELECT name FROM sqlite_master WHERE type = 'table' AND name IN ({','.join('?' * len(_SYNC_TABLES))})",
                    _SYNC_TABLES,
                ).fetchall()
        except sqlite3.Error as exc:
            logger.warning("No se pudo comprobar el esquema local: %s", exc)
            return False
        return {row["name"] for row in rows} == set(_SYNC_TABLES)

    def get_changes(self, table: str, since: datetime | None = None) -> list[SyncOperation]:
        validate_table_name(table)
        now = self._clock()
        with self._connection_lock:
            try:
                columns = self._columns(table)
                dirty_rows = self._connection.execute(
                    """
                    SELECT record_id, local_version, remote_version, remote_updated_at,
                           local_updated_at, is_deleted
                    FROM sync_metadata
                    WHERE table_name = ? AND local_version > remote_version
                    """,
                    (table,),
                ).fetchall()
                records = self._fetch_records(table, [row["record_id"] for row in dirty_rows])
                untracked = self._connection.execute(
                    f"""
                    SELECT t.* FROM "{table}" AS t
                    LEFT JOIN sync_metadata AS m
                      ON m.table_name = ? AND m.record_id = CAST(t.id AS TEXT)
                    WHERE m.record_id IS NULL
                    """,
                    (table,),
                ).fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"No se pudieron leer los cambios locales de {table}: {exc}") from exc

        operations: list[SyncOperation] = []
        for row in dirty_rows:
            operations.append(self._dirty_operation(row, records.get(row["record_id"]), now))
        for row in untracked:
            operation = self._untracked_operation(dict(row), columns, since, now)
            if operation is not None:
                operations.append(operation)
        operations.sort(key=lambda operation: operation.metadata.updated_at)
        return operations

    def apply_changes(self, table: str, operations: list[SyncOperation]) -> None:
        validate_table_name(table)
        if not operations:
            return
        now = self._clock()
        with self.table_lock(table), self._connection_lock:
            columns = self._columns(table)
            try:
                with transaction(self._connection):
                    for operation in operations:
                        self._apply_remote_operation(table, columns, operation, now)
            except sqlite3.Error as exc:
                raise StorageError(f"No se pudieron aplicar {len(operations)} cambios en {table}: {exc}") from exc
        logger.debug("Aplicados %s cambios remotos en %s", len(operations), table)

    def get_last_sync_time(self, table: str) -> datetime | None:
        with self._connection_lock:
            try:
                row = self._connection.execute(
                    "SELECT last_sync FROM sync_state WHERE table_name = ?",
                    (table,),
                ).fetchone()
            except sqlite3.Error as exc:
                raise StorageError(f"No se pudo leer la marca de agua de {table}: {exc}") from exc
        return parse_timestamp_or_none(row["last_sync"]) if row else None

    def set_last_sync_time(self, table: str, timestamp: datetime) -> None:
        with self.table_lock(table), self._connection_lock:
            current = self.get_last_sync_time(table)
            if current is not None and timestamp <= current:
                logger.debug("Marca de agua de %s sin cambios (%s <= %s)", table, timestamp, current)
                return
            try:
                with transaction(self._connection):
                    self._connection.execute(
                        """
                        INSERT INTO sync_state (table_name, last_sync, updated_at)
                        VALUES (?, ?, ?)
                        ON CONFLICT(table_name) DO UPDATE SET
                            last_sync = excluded.last_sync,
                            updated_at = excluded.updated_at
                        """,
                        (table, to_iso(timestamp), to_iso(self._clock())),
                    )
            except sqlite3.Error as exc:
                raise StorageError(f"No se pudo guardar la marca de agua de {table}: {exc}") from exc

    def resolve_conflicts(
        self, conflicts: list[SyncConflict], strategy: ConflictResolutionStrategy
    ) -> list[Record]:
        if self._resolver is None:
            raise ConfigError("El almacén local no tiene un ConflictResolver configurado")
        return [self._resolver.resolve(conflict, strategy) for conflict in conflicts]

    def get_sync_state(self, table: str, record_ids: Iterable[str]) -> dict[str, RecordSyncState]:
        ids = sorted({str(record_id) for record_id in record_ids})
        states: dict[str, RecordSyncState] = {}
        with self._connection_lock:
            for chunk in _chunks(ids, _IN_CHUNK):
                rows = self._connection.execute(
                    f"""
                    SELECT record_id, local_version, remote_version, remote_updated_at,
                           is_deleted, last_sync_at
                    FROM sync_metadata
                    WHERE table_name = ? AND record_id IN ({','.join('?' * len(chunk))})
                    """,
                    (table, *chunk),
                ).fetchall()
                for row in rows:
                    states[row["record_id"]] = _row_to_state(row)
        return states

    def mark_local_change(self, table: str, record_id: str, op_type: OperationType) -> int:
        validate_table_name(table)
        with self.table_lock(table), self._connection_lock:
            try:
                with transaction(self._connection):
                    return self._bump_local_version(table, str(record_id), op_type, self._clock())
            except sqlite3.Error as exc:
                raise StorageError(f"No se pudo marcar el cambio local {table}/{record_id}: {exc}") from exc

    def save_local(self, table: str, operation: SyncOperation) -> int:
        """Escribe un registro originado localmente y lo deja pendiente de subir."""
        validate_table_name(table)
        now = self._clock()
        with self.table_lock(table), self._connection_lock:
            columns = self._columns(table)
            try:
                with transaction(self._connection):
                    version = self._bump_local_version(table, operation.record_id, operation.op_type, now)
                    metadata = operation.metadata.with_version(version)
                    if operation.is_delete:
                        self._soft_delete_row(table, columns, metadata)
                    else:
                        self._upsert_row(table, columns, operation.data or {}, metadata)
                    return version
            except sqlite3.Error as exc:
                raise StorageError(f"No se pudo guardar {table}/{operation.record_id}: {exc}") from exc

    def acknowledge_pushed(self, table: str, accepted: list[SyncMetadata]) -> None:
        if not accepted:
            return
        now = to_iso(self._clock())
        with self.table_lock(table), self._connection_lock:
            try:
                with transaction(self._connection):
                    for metadata in accepted:
                        self._connection.execute(
                            """
                            INSERT INTO sync_metadata (
                                table_name, record_id, last_sync_at, local_version, remote_version,
                                remote_updated_at, local_updated_at, is_deleted
                            )
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                            ON CONFLICT(table_name, record_id) DO UPDATE SET
                                last_sync_at = excluded.last_sync_at,
                                remote_version = excluded.remote_version,
                                remote_updated_at = excluded.remote_updated_at,
                                is_deleted = excluded.is_deleted
                            """,
                            (
                                table,
                                metadata.id,
                                now,
                                metadata.version,
                                metadata.version,
                                to_iso(metadata.updated_at),
                                to_iso(metadata.updated_at),
                                int(metadata.is_deleted),
                            ),
                        )
                        self._connection.execute(
                            """
                            DELETE FROM sync_queue
                            WHERE table_name = ? AND record_id = ?
                              AND NOT EXISTS (
                                SELECT 1 FROM sync_metadata
                                WHERE table_name = ? AND record_id = ?
                                  AND local_version > remote_version
                              )
                            """,
                            (table, metadata.id, table, metadata.id),
                        )
            except sqlite3.Error as exc:
                raise StorageError(f"No se pudieron confirmar los envíos de {table}: {exc}") from exc

    def get_record(self, table: str, record_id: str) -> Record | None:
        validate_table_name(table)
        with self._connection_lock:
            return self._fetch_records(table, [str(record_id)]).get(str(record_id))

    def _columns(self, table: str) -> tuple[str, ...]:
        cached = self._columns_cache.get(table)
        if cached is not None:
            return cached
        rows = self._connection.execute(f'PRAGMA table_info("{table}")').fetchall()
        columns = tuple(row["name"] for row in rows)
        if not columns:
            raise StorageError(f"La tabla {table} no existe en la base de datos local")
        if "id" not in columns:
            raise StorageError(f"La tabla {table} no tiene columna id")
        self._columns_cache[table] = columns
        return columns

    def _fetch_records(self, table: str, record_ids: list[str]) -> dict[str, Record]:
        records: dict[str, Record] = {}
        for chunk in _chunks(record_ids, _IN_CHUNK):
            rows = self._connection.execute(
                f'SELECT * FROM "{table}" WHERE CAST(id AS TEXT) IN ({",".join("?" * len(chunk))})',
                chunk,
            ).fetchall()
            for row in rows:
                records[str(row["id"])] = dict(row)
        return records

    def _dirty_operation(self, state_row: sqlite3.Row, record: Record | None, now: datetime) -> SyncOperation:
        record_id = state_row["record_id"]
        local_updated_at = parse_timestamp_or_none(state_row["local_updated_at"])
        record = record or {}
        updated_at = parse_timestamp_or_none(record.get("updated_at")) or local_updated_at or now
        deleted_at = parse_timestamp_or_none(record.get("deleted_at"))
        if deleted_at is None and (state_row["is_deleted"] or not record):
            deleted_at = local_updated_at or now
        metadata = SyncMetadata(
            id=record_id,
            created_at=parse_timestamp_or_none(record.get("created_at")) or updated_at,
            updated_at=max(updated_at, deleted_at) if deleted_at else updated_at,
            deleted_at=deleted_at,
            version=int(state_row["local_version"]),
        )
        if deleted_at is not None:
            return SyncOperation.delete(record_id, metadata)
        data = {key: value for key, value in record.items() if key not in METADATA_COLUMNS}
        if int(state_row["remote_version"] or 0) == 0 and state_row["remote_updated_at"] is None:
            return SyncOperation.create(data, metadata)
        return SyncOperation.update(data, metadata)

    @staticmethod
    def _untracked_operation(
        record: Record, columns: tuple[str, ...], since: datetime | None, now: datetime
    ) -> SyncOperation | None:
        updated_at = parse_timestamp_or_none(record.get("updated_at")) or now
        if since is not None and updated_at <= since:
            return None
        version = record.get("version") if "version" in columns else None
        metadata = SyncMetadata.from_record(
            {**record, "id": str(record["id"]), "updated_at": updated_at, "version": version},
            now,
        )
        if metadata.is_deleted:
            return SyncOperation.delete(metadata.id, metadata)
        data = {key: value for key, value in record.items() if key not in METADATA_COLUMNS}
        return SyncOperation.create(data, metadata)

    def _apply_remote_operation(
        self, table: str, columns: tuple[str, ...], operation: SyncOperation, now: datetime
    ) -> None:
        metadata = operation.metadata
        if operation.is_delete:
            self._soft_delete_row(table, columns, metadata)
        else:
            tombstone = self._tombstone_time(table, columns, metadata.id)
            if tombstone is not None and metadata.updated_at <= tombstone:
                logger.debug(
                    "Ignorado %s/%s: no es posterior al borrado local (%s)", table, metadata.id, tombstone
                )
                return
            self._upsert_row(table, columns, operation.data or {}, metadata)
        self._connection.execute(
            """
            INSERT INTO sync_metadata (
                table_name, record_id, last_sync_at, local_version, remote_version,
                remote_updated_at, local_updated_at, is_deleted
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(table_name, record_id) DO UPDATE SET
                last_sync_at = excluded.last_sync_at,
                local_version = excluded.local_version,
                remote_version = excluded.remote_version,
                remote_updated_at = excluded.remote_updated_at,
                local_updated_at = excluded.local_updated_at,
                is_deleted = excluded.is_deleted
            """,
            (
                table,
                metadata.id,
                to_iso(now),
                metadata.version,
                metadata.version,
                to_iso(metadata.updated_at),
                to_iso(metadata.updated_at),
                int(operation.is_delete),
            ),
        )
        self._connection.execute(
            "DELETE FROM sync_queue WHERE table_name = ? AND record_id = ?",
            (table, metadata.id),
        )

    def _tombstone_time(self, table: str, columns: tuple[str, ...], record_id: str) -> datetime | None:
        if "deleted_at" in columns:
            row = self._connection.execute(
                f'SELECT deleted_at FROM "{table}" WHERE CAST(id AS TEXT) = ?', (record_id,)
            ).fetchone()
            if row is not None and row["deleted_at"]:
                return parse_timestamp_or_none(row["deleted_at"])
        state = self._connection.execute(
            """
            SELECT remote_updated_at FROM sync_metadata
            WHERE table_name = ? AND record_id = ? AND is_deleted = 1
            """,
            (table, record_id),
        ).fetchone()
        return parse_timestamp_or_none(state["remote_updated_at"]) if state else None

    def _upsert_row(self, table: str, columns: tuple[str, ...], data: Record, metadata: SyncMetadata) -> None:
        values: dict[str, Any] = {
            key: to_sql_value(value)
            for key, value in data.items()
            if key in columns and key not in METADATA_COLUMNS
        }
        for key, value in metadata.to_dict().items():
            if key in columns:
                values[key] = value
        names = list(values)
        placeholders = ", ".join("?" for _ in names)
        quoted = ", ".join(f'"{name}"' for name in names)
        updates = [name for name in names if name != "id"]
        if updates:
            conflict_clause = "DO UPDATE SET " + ", ".join(f'"{name}" = excluded."{name}"' for name in updates)
        else:
            conflict_clause = "DO NOTHING"
        self._connection.execute(
            f'INSERT INTO "{table}" ({quoted}) VALUES ({placeholders}) ON CONFLICT(id) {conflict_clause}',
            [values[name] for name in names],
        )

    def _soft_delete_row(self, table: str, columns: tuple[str, ...], metadata: SyncMetadata) -> None:
        if "deleted_at" not in columns:
            logger.warning("La tabla %s no admite borrado lógico; el borrado solo se registra en sync_metadata", table)
            return
        deleted_at = metadata.deleted_at or metadata.updated_at
        assignments = ['"deleted_at" = ?']
        params: list[Any] = [to_iso(deleted_at)]
        if "updated_at" in columns:
            assignments.append('"updated_at" = ?')
            params.append(to_iso(metadata.updated_at))
        if "version" in columns:
            assignments.append('"version" = ?')
            params.append(metadata.version)
        params.append(metadata.id)
        self._connection.execute(
            f'UPDATE "{table}" SET {", ".join(assignments)} WHERE CAST(id AS TEXT) = ?',
            params,
        )

    def _bump_local_version(self, table: str, record_id: str, op_type: OperationType, now: datetime) -> int:
        row = self._connection.execute(
            "SELECT local_version, remote_version FROM sync_metadata WHERE table_name = ? AND record_id = ?",
            (table, record_id),
        ).fetchone()
        current = max(int(row["local_version"]), int(row["remote_version"])) if row else 0
        new_version = current + 1
        self._connection.execute(
            """
            INSERT INTO sync_metadata (
                table_name, record_id, local_version, remote_version, local_updated_at, is_deleted
            )
            VALUES (?, ?, ?, 0, ?, ?)
            ON CONFLICT(table_name, record_id) DO UPDATE SET
                local_version = excluded.local_version,
                local_updated_at = excluded.local_updated_at,
                is_deleted = excluded.is_deleted
            """,
            (table, record_id, new_version, to_iso(now), int(op_type is OperationType.DELETE)),
        )
        return new_version


