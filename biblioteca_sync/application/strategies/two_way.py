from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from biblioteca_sync.application.strategies.base import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_PAGES,
    BaseSyncStrategy,
    PassState,
    RemoteChange,
    contiguous_high_water,
    remote_to_operation,
    wire_view,
)
from biblioteca_sync.core.errors import ConflictError, InvalidDataError, StorageError
from biblioteca_sync.core.retry import CancellationToken
from biblioteca_sync.domain.ports import ConflictLog, ConflictResolver, LocalDataStore, RemoteDataSource, SyncStrategy
from biblioteca_sync.domain.sync_models import (
    METADATA_COLUMNS,
    ConflictResolutionStrategy,
    Record,
    SyncConflict,
    SyncMetadata,
    SyncOperation,
    SyncPhase,
    SyncSummary,
)
from biblioteca_sync.domain.time_utils import utc_now

logger = logging.getLogger(__name__)

_APPLY_FAILED = "apply_failed"


class TwoWaySyncStrategy(BaseSyncStrategy, SyncStrategy):
    """Pull + push en una misma pasada con detección de conflictos.

    Los cambios remotos de registros con cambios locales pendientes no se
    aplican directamente: se convierten en ``SyncConflict`` y se resuelven con
    la estrategia configurada. Tras resolver, se vuelve a consultar el remoto
    desde la marca alta del pull; un registro local que haya cambiado también
    en remoto entretanto no se envía en esta pasada y se reintenta en la
    siguiente.
    """

    name = "two_way"

    def __init__(
        self,
        conflict_strategy: ConflictResolutionStrategy = ConflictResolutionStrategy.NEWEST_WINS,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(batch_size=batch_size, max_pages=max_pages, clock=clock)
        self.conflict_strategy = conflict_strategy

    def sync_table(
        self,
        table: str,
        remote: RemoteDataSource,
        local: LocalDataStore,
        resolver: ConflictResolver,
        *,
        conflict_log: ConflictLog | None = None,
        cancellation_token: CancellationToken | None = None,
    ) -> SyncSummary:
        token = cancellation_token
        state = PassState(table)
        since = local.get_last_sync_time(table)

        self._set_phase(SyncPhase.FETCHING_REMOTE, table)
        pulled = self._fetch_all_remote(remote, table, since, token)

        self._set_phase(SyncPhase.FETCHING_LOCAL, table)
        local_operations = local.get_changes(table, since)
        local_by_id = {operation.record_id: operation for operation in local_operations}
        blocked_ids = conflict_log.open_record_ids(table) if conflict_log is not None else set()
        sync_states = local.get_sync_state(table, [metadata.id for _, metadata in pulled])

        to_apply: list[RemoteChange] = []
        held: list[RemoteChange] = []
        for record, metadata in pulled:
            record_state = sync_states.get(metadata.id)
            if record_state is not None and record_state.is_echo_of(metadata):
                continue
            if metadata.id in blocked_ids:
                continue
            if metadata.id in local_by_id:
                held.append((record, metadata))
            else:
                to_apply.append((record, metadata))

        self._set_phase(SyncPhase.APPLYING_REMOTE, table)
        failed_ids = self._apply_remote(local, table, to_apply, state, token)

        self._set_phase(SyncPhase.DETECTING_CONFLICTS, table)
        withheld: set[str] = set(blocked_ids)
        extra_pushes: list[SyncOperation] = []
        for record, metadata in held:
            local_operation = local_by_id[metadata.id]
            withheld.add(metadata.id)
            outcome = self._settle_conflict(
                table, local, resolver, conflict_log, local_operation, record, metadata, state
            )
            if outcome == _APPLY_FAILED:
                failed_ids.add(metadata.id)
            elif isinstance(outcome, SyncOperation):
                extra_pushes.append(outcome)

        pushes = [operation for operation in local_operations if operation.record_id not in withheld]
        pushes.extend(extra_pushes)
        pull_high_water = max((metadata.updated_at for _, metadata in pulled), default=None)
        candidates = list(pushes)
        unseen_remote = self._race_probe(remote, local, table, pulled, since, pull_high_water, pushes, state, token)
        if len(pushes) < len(candidates):
            kept_ids = {operation.record_id for operation in pushes}
            self._track_unpushed(
                local, table, [operation for operation in candidates if operation.record_id not in kept_ids]
            )

        self._set_phase(SyncPhase.PUSHING_LOCAL, table)
        accepted = self._push_local(remote, local, table, pushes, state, token)

        self._set_phase(SyncPhase.ADVANCING_WATERMARK, table)
        if failed_ids:
            self._advance_watermark(local, table, [contiguous_high_water(pulled, failed_ids)])
        elif unseen_remote:
            self._advance_watermark(local, table, [pull_high_water])
        else:
            self._advance_watermark(
                local, table, [pull_high_water, *(metadata.updated_at for metadata in accepted)]
            )
        self._set_phase(SyncPhase.IDLE, table)
        summary = state.summary()
        logger.info(
            "Sync two-way %s: remotos=%s locales=%s conflictos=%s resueltos=%s errores=%s",
            table,
            summary.remote_changes,
            summary.local_changes,
            summary.conflicts,
            summary.resolved,
            len(summary.errors),
        )
        return summary

    def _settle_conflict(
        self,
        table: str,
        local: LocalDataStore,
        resolver: ConflictResolver,
        conflict_log: ConflictLog | None,
        local_operation: SyncOperation,
        record: Record,
        metadata: SyncMetadata,
        state: PassState,
    ) -> SyncOperation | str | None:
        """Resuelve un conflicto; devuelve la operación a enviar si procede."""
        conflict = SyncConflict(
            local=local_operation.wire_record(),
            remote=wire_view(record, metadata),
            local_metadata=local_operation.metadata,
            remote_metadata=metadata,
        )
        state.conflicts += 1
        strategy = self.conflict_strategy
        if strategy is ConflictResolutionStrategy.MERGE and (local_operation.is_delete or metadata.is_deleted):
            strategy = ConflictResolutionStrategy.NEWEST_WINS
        try:
            resolved = resolver.resolve(conflict, strategy)
        except ConflictError as exc:
            if conflict_log is None:
                state.errors.append(f"Conflicto sin resolver en {metadata.id}: {exc}")
            else:
                conflict_log.record(table, conflict, self.conflict_strategy)
            return None
        except InvalidDataError as exc:
            state.errors.append(f"Conflicto no resoluble en {metadata.id}: {exc}")
            return None

        state.resolved += 1
        if resolved == conflict.remote:
            try:
                local.apply_changes(table, [remote_to_operation(record, metadata)])
            except StorageError as exc:
                state.errors.append(f"Error aplicando la versión remota de {metadata.id}: {exc}")
                return _APPLY_FAILED
            state.remote_changes += 1
            return None
        if resolved == conflict.local:
            if local_operation.metadata.updated_at > metadata.updated_at:
                return local_operation
            return self._save_resolution(table, local, local_operation, local_operation.data, metadata)

        merged_data = {key: value for key, value in resolved.items() if key not in METADATA_COLUMNS}
        return self._save_resolution(table, local, local_operation, merged_data, metadata)

    def _save_resolution(
        self,
        table: str,
        local: LocalDataStore,
        local_operation: SyncOperation,
        data: Record | None,
        remote_metadata: SyncMetadata,
    ) -> SyncOperation:
        """Guarda el ganador con un ``updated_at`` posterior al remoto para que el resto de réplicas lo vean."""
        record_id = remote_metadata.id
        updated_at = max(self._clock(), remote_metadata.updated_at, local_operation.metadata.updated_at)
        if data is None:
            metadata = SyncMetadata(
                id=record_id,
                created_at=local_operation.metadata.created_at,
                updated_at=updated_at,
                deleted_at=local_operation.metadata.deleted_at or updated_at,
            )
            version = local.save_local(table, SyncOperation.delete(record_id, metadata))
            return SyncOperation.delete(record_id, metadata.with_version(version))
        metadata = SyncMetadata(id=record_id, created_at=local_operation.metadata.created_at, updated_at=updated_at)
        version = local.save_local(table, SyncOperation.update(data, metadata))
        return SyncOperation.update(data, metadata.with_version(version))

    def _race_probe(
        self,
        remote: RemoteDataSource,
        local: LocalDataStore,
        table: str,
        pulled: list[RemoteChange],
        since: datetime | None,
        pull_high_water: datetime | None,
        pushes: list[SyncOperation],
        state: PassState,
        token: CancellationToken | None = None,
    ) -> bool:
        """Detecta cambios remotos llegados durante la pasada.

        Quita de ``pushes`` los registros afectados y devuelve True si hay
        cambios remotos no vistos en el pull.
        """
        probe_since = pull_high_water or since
        probe = self._fetch_all_remote(remote, table, probe_since, token)
        seen = {(metadata.id, metadata.version, metadata.updated_at) for _, metadata in pulled}
        unseen = [
            metadata
            for _, metadata in probe
            if (metadata.id, metadata.version, metadata.updated_at) not in seen
        ]
        if not unseen:
            return False
        sync_states = local.get_sync_state(table, [metadata.id for metadata in unseen])
        unseen = [
            metadata
            for metadata in unseen
            if metadata.id not in sync_states or not sync_states[metadata.id].is_echo_of(metadata)
        ]
        if not unseen:
            return False
        racing_ids = {metadata.id for metadata in unseen}
        kept = [operation for operation in pushes if operation.record_id not in racing_ids]
        raced = len(pushes) - len(kept)
        if raced:
            state.conflicts += raced
            logger.info("%s conflictos de carrera en %s; se reintentarán en la próxima pasada", raced, table)
        pushes[:] = kept
        return True
