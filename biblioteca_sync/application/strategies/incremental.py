from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable

from biblioteca_sync.application.strategies.base import (
    BaseSyncStrategy,
    PassState,
    RemoteChange,
    remote_to_operation,
)
from biblioteca_sync.core.errors import InvalidDataError, StorageError, SyncCancelledError, SyncError
from biblioteca_sync.core.retry import CancellationToken, RetryPolicy, raise_if_cancelled, run_with_retries
from biblioteca_sync.domain.ports import ConflictLog, ConflictResolver, LocalDataStore, RemoteDataSource, SyncStrategy
from biblioteca_sync.domain.sync_models import SyncPhase, SyncSummary
from biblioteca_sync.domain.time_utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_INCREMENTAL_BATCH_SIZE = 1000
DEFAULT_MAX_ITERATIONS = 10_000


class IncrementalSyncStrategy(BaseSyncStrategy, SyncStrategy):
    """Descarga por páginas ``limit/offset`` con reintentos por página.

    Solo recibe. La lectura de cada página se reintenta con backoff solo ante
    errores transitorios; si la lectura falla del todo la pasada se corta y el
    error se propaga. Si falla la aplicación local de una página se anota el
    error y se sigue con la siguiente. La marca de agua solo avanza hasta la
    última página contigua aplicada con éxito.
    """

    name = "incremental"

    def __init__(
        self,
        batch_size: int = DEFAULT_INCREMENTAL_BATCH_SIZE,
        *,
        retry_policy: RetryPolicy | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        sleeper: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(batch_size=batch_size, max_pages=max_iterations, clock=clock)
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, initial_backoff_seconds=0.1)
        self.max_iterations = max_iterations
        self._sleeper = sleeper

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
        offset = 0
        contiguous = True
        high_water: datetime | None = None
        previous_page_ids: tuple[str, ...] | None = None

        for _ in range(self.max_iterations):
            raise_if_cancelled(token)
            self._set_phase(SyncPhase.FETCHING_REMOTE, table)
            try:
                page: list[RemoteChange] = run_with_retries(
                    f"incremental {table} offset={offset}",
                    lambda: remote.fetch_changes(table, since, limit=self.batch_size, offset=offset),
                    policy=self.retry_policy,
                    sleeper=self._sleeper,
                    cancellation_token=token,
                )
            except SyncCancelledError:
                raise
            except SyncError as exc:
                logger.warning("Lectura remota de %s interrumpida en offset=%s: %s", table, offset, exc)
                self._advance_watermark(local, table, [high_water])
                self._set_phase(SyncPhase.IDLE, table)
                raise

            page_ids = tuple(metadata.id for _, metadata in page)
            if page and page_ids == previous_page_ids:
                logger.warning("Paginación remota repetida en %s (offset=%s); se detiene", table, offset)
                break
            try:
                applied = run_with_retries(
                    f"aplicar {table} offset={offset}",
                    lambda: self._apply_page(local, table, page, page_ids),
                    policy=self.retry_policy,
                    sleeper=self._sleeper,
                    cancellation_token=token,
                    is_retryable=lambda exc: isinstance(exc, StorageError),
                )
            except (StorageError, InvalidDataError) as exc:
                contiguous = False
                state.errors.append(f"Página offset={offset} no aplicada: {exc}")
                logger.warning("Página %s de %s fallida: %s", offset, table, exc)
            else:
                state.remote_changes += applied
                page_high = max((metadata.updated_at for _, metadata in page), default=None)
                if contiguous and page_high is not None and (high_water is None or page_high > high_water):
                    high_water = page_high
            if len(page_ids) < self.batch_size:
                break
            previous_page_ids = page_ids
            offset += len(page_ids)
        else:
            state.errors.append(f"Alcanzado el límite de {self.max_iterations} iteraciones")
            logger.warning("Límite de iteraciones alcanzado en %s", table)

        self._set_phase(SyncPhase.ADVANCING_WATERMARK, table)
        self._advance_watermark(local, table, [high_water])
        self._set_phase(SyncPhase.IDLE, table)
        summary = state.summary()
        logger.info(
            "Sync incremental %s: remotos=%s errores=%s",
            table,
            summary.remote_changes,
            len(summary.errors),
        )
        return summary

    def _apply_page(
        self,
        local: LocalDataStore,
        table: str,
        page: list[RemoteChange],
        page_ids: tuple[str, ...],
    ) -> int:
        sync_states = local.get_sync_state(table, page_ids)
        operations = [
            remote_to_operation(record, metadata)
            for record, metadata in page
            if metadata.id not in sync_states or not sync_states[metadata.id].is_echo_of(metadata)
        ]
        self._set_phase(SyncPhase.APPLYING_REMOTE, table)
        local.apply_changes(table, operations)
        return len(operations)
