from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

from biblioteca_sync.core.errors import InvalidDataError, SerializationError
from biblioteca_sync.domain.time_utils import (
    parse_timestamp,
    parse_timestamp_or_none,
    to_iso,
    to_iso_or_none,
)

Record = dict[str, Any]

METADATA_COLUMNS = ("id", "created_at", "updated_at", "deleted_at", "version")


class OperationType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ConflictResolutionStrategy(str, Enum):
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    NEWEST_WINS = "newest_wins"
    MERGE = "merge"
    MANUAL = "manual"


class SyncDirection(str, Enum):
    LOCAL_TO_REMOTE = "local_to_remote"
    REMOTE_TO_LOCAL = "remote_to_local"


class SyncPhase(str, Enum):
    IDLE = "idle"
    FETCHING_REMOTE = "fetching_remote"
    APPLYING_REMOTE = "applying_remote"
    FETCHING_LOCAL = "fetching_local"
    DETECTING_CONFLICTS = "detecting_conflicts"
    PUSHING_LOCAL = "pushing_local"
    ADVANCING_WATERMARK = "advancing_watermark"


def _parse_version(value: Any, default: int = 1) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class SyncMetadata:
    id: str
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None
    version: int = 1

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def with_version(self, version: int) -> "SyncMetadata":
        return replace(self, version=version)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "deleted_at": to_iso_or_none(self.deleted_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SyncMetadata":
        record_id = payload.get("id")
        if record_id in (None, ""):
            raise SerializationError("SyncMetadata sin id")
        try:
            created_at = parse_timestamp(payload.get("created_at"))
            updated_at = parse_timestamp(payload.get("updated_at"))
            deleted_raw = payload.get("deleted_at")
            deleted_at = None if deleted_raw in (None, "") else parse_timestamp(deleted_raw)
        except ValueError as exc:
            raise SerializationError(f"SyncMetadata inválida para id={record_id}: {exc}") from exc
        return cls(
            id=str(record_id),
            created_at=created_at,
            updated_at=updated_at,
            deleted_at=deleted_at,
            version=_parse_version(payload.get("version")),
        )

    @classmethod
    def from_record(cls, record: Record, now: datetime) -> "SyncMetadata":
        """Construye metadatos a partir de un registro plano recibido por red.

        Es tolerante: timestamps ausentes o ilegibles se sustituyen por ``now``
        y la versión por 1. Lanza ``InvalidDataError`` si no hay identificador.
        """
        record_id = record.get("id")
        if record_id in (None, ""):
            record_id = record.get("uuid")
        if record_id in (None, ""):
            raise InvalidDataError("Registro sin id")
        return cls(
            id=str(record_id),
            created_at=parse_timestamp_or_none(record.get("created_at")) or now,
            updated_at=parse_timestamp_or_none(record.get("updated_at")) or now,
            deleted_at=parse_timestamp_or_none(record.get("deleted_at")),
            version=_parse_version(record.get("version")),
        )


@dataclass(frozen=True)
class SyncOperation:
    op_type: OperationType
    metadata: SyncMetadata
    data: Record | None = None

    def __post_init__(self) -> None:
        if self.op_type is OperationType.DELETE:
            if self.data is not None:
                raise InvalidDataError("Una operación delete no lleva payload")
        elif not isinstance(self.data, dict):
            raise InvalidDataError(f"Una operación {self.op_type.value} necesita un payload dict")

    @classmethod
    def create(cls, data: Record, metadata: SyncMetadata) -> "SyncOperation":
        return cls(OperationType.CREATE, metadata, dict(data))

    @classmethod
    def update(cls, data: Record, metadata: SyncMetadata) -> "SyncOperation":
        return cls(OperationType.UPDATE, metadata, dict(data))

    @classmethod
    def delete(cls, record_id: str, metadata: SyncMetadata) -> "SyncOperation":
        if str(record_id) != metadata.id:
            raise InvalidDataError(f"El id {record_id} no coincide con metadata.id {metadata.id}")
        return cls(OperationType.DELETE, metadata, None)

    @property
    def record_id(self) -> str:
        return self.metadata.id

    @property
    def is_delete(self) -> bool:
        return self.op_type is OperationType.DELETE

    def wire_record(self) -> Record:
        record: Record = dict(self.data or {})
        record.update(self.metadata.to_dict())
        return record

    def to_dict(self) -> dict[str, Any]:
        return {
            "op_type": self.op_type.value,
            "metadata": self.metadata.to_dict(),
            "data": None if self.data is None else dict(self.data),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SyncOperation":
        try:
            op_type = OperationType(payload.get("op_type"))
        except ValueError as exc:
            raise SerializationError(f"Tipo de operación desconocido: {payload.get('op_type')!r}") from exc
        return cls(op_type, SyncMetadata.from_dict(payload.get("metadata") or {}), payload.get("data"))


@dataclass(frozen=True)
class SyncConflict:
    local: Record
    remote: Record
    local_metadata: SyncMetadata
    remote_metadata: SyncMetadata

    @property
    def record_id(self) -> str:
        return self.local_metadata.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "local": dict(self.local),
            "remote": dict(self.remote),
            "local_metadata": self.local_metadata.to_dict(),
            "remote_metadata": self.remote_metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SyncConflict":
        return cls(
            local=dict(payload.get("local") or {}),
            remote=dict(payload.get("remote") or {}),
            local_metadata=SyncMetadata.from_dict(payload.get("local_metadata") or {}),
            remote_metadata=SyncMetadata.from_dict(payload.get("remote_metadata") or {}),
        )


@dataclass(frozen=True)
class SyncSummary:
    table_name: str
    remote_changes: int = 0
    local_changes: int = 0
    conflicts: int = 0
    resolved: int = 0
    errors: tuple[str, ...] = ()
    duration_ms: int = 0

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @classmethod
    def failed(cls, table_name: str, error: str, duration_ms: int = 0) -> "SyncSummary":
        return cls(table_name=table_name, errors=(error,), duration_ms=duration_ms)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["errors"] = list(self.errors)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SyncSummary":
        return cls(
            table_name=str(payload["table_name"]),
            remote_changes=int(payload.get("remote_changes", 0)),
            local_changes=int(payload.get("local_changes", 0)),
            conflicts=int(payload.get("conflicts", 0)),
            resolved=int(payload.get("resolved", 0)),
            errors=tuple(str(error) for error in payload.get("errors", ())),
            duration_ms=int(payload.get("duration_ms", 0)),
        )


@dataclass(frozen=True)
class SyncStatus:
    is_online: bool = False
    is_syncing: bool = False
    last_sync: datetime | None = None
    last_error: str | None = None
    database_initialized: bool = False
    initial_sync_completed: bool = False
    pending_operations: int = 0

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_sync"] = to_iso_or_none(self.last_sync)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SyncStatus":
        return cls(
            is_online=bool(payload.get("is_online", False)),
            is_syncing=bool(payload.get("is_syncing", False)),
            last_sync=parse_timestamp_or_none(payload.get("last_sync")),
            last_error=payload.get("last_error"),
            database_initialized=bool(payload.get("database_initialized", False)),
            initial_sync_completed=bool(payload.get("initial_sync_completed", False)),
            pending_operations=int(payload.get("pending_operations", 0)),
        )


@dataclass(frozen=True)
class RecordSyncState:
    record_id: str
    local_version: int = 0
    remote_version: int = 0
    remote_updated_at: datetime | None = None
    is_deleted: bool = False
    last_sync_at: datetime | None = None

    @property
    def is_dirty(self) -> bool:
        return self.local_version > self.remote_version

    def is_echo_of(self, metadata: SyncMetadata) -> bool:
        """True si ``metadata`` es exactamente el estado remoto ya confirmado."""
        return (
            self.remote_updated_at is not None
            and metadata.version == self.remote_version
            and metadata.updated_at == self.remote_updated_at
        )


@dataclass(frozen=True)
class PendingOperation:
    queue_id: int
    table_name: str
    record_id: str
    op_type: OperationType
    payload: Record | None
    created_at: datetime
    attempts: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue_id": self.queue_id,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "op_type": self.op_type.value,
            "payload": self.payload,
            "created_at": to_iso(self.created_at),
            "attempts": self.attempts,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class ConflictRecord:
    id: int
    table_name: str
    record_id: str
    local_snapshot: Record
    remote_snapshot: Record
    local_metadata: SyncMetadata
    remote_metadata: SyncMetadata
    strategy: str
    detected_at: datetime
    resolved: bool = False
    resolution: str | None = None

    def to_conflict(self) -> SyncConflict:
        return SyncConflict(
            local=dict(self.local_snapshot),
            remote=dict(self.remote_snapshot),
            local_metadata=self.local_metadata,
            remote_metadata=self.remote_metadata,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "local": self.local_snapshot,
            "remote": self.remote_snapshot,
            "local_updated_at": to_iso(self.local_metadata.updated_at),
            "remote_updated_at": to_iso(self.remote_metadata.updated_at),
            "strategy": self.strategy,
            "detected_at": to_iso(self.detected_at),
            "resolved": self.resolved,
            "resolution": self.resolution,
        }
