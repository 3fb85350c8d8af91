from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Iterable, Protocol

from biblioteca_sync.domain.sync_models import (
    ConflictRecord,
    ConflictResolutionStrategy,
    OperationType,
    PendingOperation,
    Record,
    RecordSyncState,
    SyncConflict,
    SyncMetadata,
    SyncOperation,
    SyncSummary,
)

if TYPE_CHECKING:
    from biblioteca_sync.core.retry import CancellationToken


class RemoteDataSource(Protocol):
    def fetch_changes(
        self,
        table: str,
        since: datetime | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[tuple[Record, SyncMetadata]]:
        ...

    def push_changes(self, table: str, operations: list[SyncOperation]) -> list[SyncMetadata]:
        ...

    def check_connectivity(self) -> bool:
        ...


class LocalDataStore(Protocol):
    def get_changes(self, table: str, since: datetime | None = None) -> list[SyncOperation]:
        ...

    def apply_changes(self, table: str, operations: list[SyncOperation]) -> None:
        ...

    def get_last_sync_time(self, table: str) -> datetime | None:
        ...

    def set_last_sync_time(self, table: str, timestamp: datetime) -> None:
        ...

    def resolve_conflicts(
        self, conflicts: list[SyncConflict], strategy: ConflictResolutionStrategy
    ) -> list[Record]:
        ...

    def get_sync_state(self, table: str, record_ids: Iterable[str]) -> dict[str, RecordSyncState]:
        ...

    def mark_local_change(self, table: str, record_id: str, op_type: OperationType) -> int:
        ...

    def save_local(self, table: str, operation: SyncOperation) -> int:
        ...

    def acknowledge_pushed(self, table: str, accepted: list[SyncMetadata]) -> None:
        ...

    def get_record(self, table: str, record_id: str) -> Record | None:
        ...

    def is_initialized(self) -> bool:
        ...


class ConflictResolver(Protocol):
    def resolve(self, conflict: SyncConflict, strategy: ConflictResolutionStrategy) -> Record:
        ...


class ConflictLog(Protocol):
    def record(self, table: str, conflict: SyncConflict, strategy: ConflictResolutionStrategy) -> int:
        ...

    def open_record_ids(self, table: str) -> set[str]:
        ...

    def list_open(self) -> list[ConflictRecord]:
        ...

    def count_open(self) -> int:
        ...

    def get(self, conflict_id: int) -> ConflictRecord | None:
        ...

    def mark_resolved(self, conflict_id: int, resolution: str) -> None:
        ...


class OperationQueue(Protocol):
    def enqueue(
        self, table: str, record_id: str, op_type: OperationType, payload: Record | None
    ) -> PendingOperation:
        ...

    def list_pending(self, table: str | None = None, limit: int | None = None) -> list[PendingOperation]:
        ...

    def count(self) -> int:
        ...

    def record_attempt(self, queue_id: int, error: str | None) -> None:
        ...

    def remove(self, queue_ids: Iterable[int]) -> None:
        ...


class SyncStrategy(Protocol):
    def sync_table(
        self,
        table: str,
        remote: RemoteDataSource,
        local: LocalDataStore,
        resolver: ConflictResolver,
        *,
        conflict_log: ConflictLog | None = None,
        cancellation_token: "CancellationToken | None" = None,
    ) -> SyncSummary:
        ...
