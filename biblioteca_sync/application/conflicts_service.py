from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from biblioteca_sync.application.strategies.base import remote_to_operation
from biblioteca_sync.core.errors import ConflictError
from biblioteca_sync.domain.ports import ConflictLog, LocalDataStore
from biblioteca_sync.domain.sync_models import (
    METADATA_COLUMNS,
    ConflictRecord,
    ConflictResolutionStrategy,
    OperationType,
    SyncMetadata,
    SyncOperation,
)
from biblioteca_sync.domain.time_utils import utc_now

logger = logging.getLogger(__name__)

RESOLUTION_LOCAL = "local"
RESOLUTION_REMOTE = "remote"


class ConflictsService:
    """Resolución manual de los conflictos que quedaron registrados.

    ``keep_local`` da por vista la versión remota y vuelve a guardar la fila
    local con un ``updated_at`` posterior, pendiente de subir en la siguiente
    pasada; ``keep_remote`` aplica la instantánea remota en local.
    """

    def __init__(
        self,
        conflicts: ConflictLog,
        local: LocalDataStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._conflicts = conflicts
        self._local = local
        self._clock = clock

    def list_conflicts(self) -> list[ConflictRecord]:
        return self._conflicts.list_open()

    def count_conflicts(self) -> int:
        return self._conflicts.count_open()

    def resolve_conflict(self, conflict_id: int, keep_local: bool) -> ConflictRecord:
        conflict = self._conflicts.get(conflict_id)
        if conflict is None:
            raise ConflictError(f"No existe el conflicto {conflict_id}")
        if conflict.resolved:
            raise ConflictError(f"El conflicto {conflict_id} ya está resuelto")
        self._apply(conflict, keep_local)
        resolution = RESOLUTION_LOCAL if keep_local else RESOLUTION_REMOTE
        self._conflicts.mark_resolved(conflict_id, resolution)
        logger.info(
            "Conflicto %s resuelto (%s) en %s/%s",
            conflict_id,
            resolution,
            conflict.table_name,
            conflict.record_id,
        )
        return conflict

    def resolve_all_newest(self) -> int:
        """Resuelve todos los conflictos abiertos quedándose con el más reciente.

        En empate gana el remoto.
        """
        open_conflicts = self._conflicts.list_open()
        if not open_conflicts:
            return 0
        winners = self._local.resolve_conflicts(
            [conflict.to_conflict() for conflict in open_conflicts],
            ConflictResolutionStrategy.NEWEST_WINS,
        )
        for conflict, winner in zip(open_conflicts, winners):
            keep_local = winner == conflict.local_snapshot and winner != conflict.remote_snapshot
            self.resolve_conflict(conflict.id, keep_local)
        return len(open_conflicts)

    def _apply(self, conflict: ConflictRecord, keep_local: bool) -> None:
        table = conflict.table_name
        if not keep_local:
            self._local.apply_changes(
                table, [remote_to_operation(conflict.remote_snapshot, conflict.remote_metadata)]
            )
            return

        self._local.acknowledge_pushed(table, [conflict.remote_metadata])
        if conflict.local_metadata.is_deleted:
            self._local.mark_local_change(table, conflict.record_id, OperationType.DELETE)
            return
        current = self._local.get_record(table, conflict.record_id) or conflict.local_snapshot
        metadata = SyncMetadata(
            id=conflict.record_id,
            created_at=conflict.local_metadata.created_at,
            updated_at=max(self._clock(), conflict.remote_metadata.updated_at, conflict.local_metadata.updated_at),
        )
        data = {key: value for key, value in current.items() if key not in METADATA_COLUMNS}
        self._local.save_local(table, SyncOperation.update(data, metadata))
