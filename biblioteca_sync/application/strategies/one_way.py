from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from biblioteca_sync.application.strategies.base import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_PAGES,
    BaseSyncStrategy,
    PassState,
    contiguous_high_water,
)
from biblioteca_sync.core.retry import CancellationToken
from biblioteca_sync.domain.ports import ConflictLog, ConflictResolver, LocalDataStore, RemoteDataSource, SyncStrategy
from biblioteca_sync.domain.sync_models import SyncDirection, SyncPhase, SyncSummary
from biblioteca_sync.domain.time_utils import utc_now

logger = logging.getLogger(__name__)


class OneWaySyncStrategy(BaseSyncStrategy, SyncStrategy):
    """Sincroniza en un único sentido: solo envía o solo recibe."""

    name = "one_way"

    def __init__(
        self,
        direction: SyncDirection,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(batch_size=batch_size, max_pages=max_pages, clock=clock)
        self.direction = SyncDirection(direction)

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
        state = PassState(table)
        since = local.get_last_sync_time(table)
        if self.direction is SyncDirection.LOCAL_TO_REMOTE:
            self._push_only(table, remote, local, since, state, conflict_log, cancellation_token)
        else:
            self._pull_only(table, remote, local, since, state, cancellation_token)
        self._set_phase(SyncPhase.IDLE, table)
        summary = state.summary()
        logger.info(
            "Sync one-way (%s) %s: remotos=%s locales=%s errores=%s",
            self.direction.value,
            table,
            summary.remote_changes,
            summary.local_changes,
            len(summary.errors),
        )
        return summary

    def _push_only(
        self,
        table: str,
        remote: RemoteDataSource,
        local: LocalDataStore,
        since: datetime | None,
        state: PassState,
        conflict_log: ConflictLog | None,
        token: CancellationToken | None,
    ) -> None:
        self._set_phase(SyncPhase.FETCHING_LOCAL, table)
        blocked_ids = conflict_log.open_record_ids(table) if conflict_log is not None else set()
        operations = [
            operation for operation in local.get_changes(table, since) if operation.record_id not in blocked_ids
        ]
        self._set_phase(SyncPhase.PUSHING_LOCAL, table)
        accepted = self._push_local(remote, local, table, operations, state, token)
        self._set_phase(SyncPhase.ADVANCING_WATERMARK, table)
        self._advance_watermark(local, table, [metadata.updated_at for metadata in accepted])

    def _pull_only(
        self,
        table: str,
        remote: RemoteDataSource,
        local: LocalDataStore,
        since: datetime | None,
        state: PassState,
        token: CancellationToken | None,
    ) -> None:
        self._set_phase(SyncPhase.FETCHING_REMOTE, table)
        pulled = self._fetch_all_remote(remote, table, since, token)
        sync_states = local.get_sync_state(table, [metadata.id for _, metadata in pulled])
        to_apply = [
            (record, metadata)
            for record, metadata in pulled
            if metadata.id not in sync_states or not sync_states[metadata.id].is_echo_of(metadata)
        ]
        self._set_phase(SyncPhase.APPLYING_REMOTE, table)
        failed_ids = self._apply_remote(local, table, to_apply, state, token)
        self._set_phase(SyncPhase.ADVANCING_WATERMARK, table)
        self._advance_watermark(local, table, [contiguous_high_water(pulled, failed_ids)])
