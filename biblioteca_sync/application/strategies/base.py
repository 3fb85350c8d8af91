from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from time import perf_counter
from typing import Callable, Iterable, Iterator, Sequence, TypeVar

from biblioteca_sync.core.errors import InvalidDataError, NetworkError, StorageError
from biblioteca_sync.core.retry import CancellationToken, raise_if_cancelled
from biblioteca_sync.domain.ports import LocalDataStore, RemoteDataSource
from biblioteca_sync.domain.sync_models import (
    METADATA_COLUMNS,
    Record,
    SyncMetadata,
    SyncOperation,
    SyncPhase,
    SyncSummary,
)
from biblioteca_sync.domain.time_utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500
DEFAULT_MAX_PAGES = 1000

RemoteChange = tuple[Record, SyncMetadata]
T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


def remote_to_operation(record: Record, metadata: SyncMetadata) -> SyncOperation:
    if metadata.is_deleted:
        return SyncOperation.delete(metadata.id, metadata)
    data = {key: value for key, value in record.items() if key not in METADATA_COLUMNS}
    if metadata.version <= 1:
        return SyncOperation.create(data, metadata)
    return SyncOperation.update(data, metadata)


def wire_view(record: Record, metadata: SyncMetadata) -> Record:
    """Registro remoto normalizado con los metadatos ya interpretados."""
    return {**record, **metadata.to_dict()}


def contiguous_high_water(changes: Sequence[RemoteChange], failed_ids: set[str]) -> datetime | None:
    """Mayor ``updated_at`` antes del primer registro que no se pudo aplicar."""
    high_water: datetime | None = None
    for _, metadata in changes:
        if metadata.id in failed_ids:
            break
        if high_water is None or metadata.updated_at > high_water:
            high_water = metadata.updated_at
    return high_water


@dataclass
class PassState:
    """Contadores mutables de una pasada sobre una tabla."""

    table: str
    started: float = field(default_factory=perf_counter)
    remote_changes: int = 0
    local_changes: int = 0
    conflicts: int = 0
    resolved: int = 0
    errors: list[str] = field(default_factory=list)

    def summary(self) -> SyncSummary:
        return SyncSummary(
            table_name=self.table,
            remote_changes=self.remote_changes,
            local_changes=self.local_changes,
            conflicts=self.conflicts,
            resolved=self.resolved,
            errors=tuple(self.errors),
            duration_ms=int((perf_counter() - self.started) * 1000),
        )


class BaseSyncStrategy:
    """Piezas comunes: paginación, aplicación por lotes, envío y marca de agua."""

    name = "base"

    def __init__(
        self,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if batch_size <= 0:
            raise InvalidDataError("batch_size debe ser positivo")
        if max_pages <= 0:
            raise InvalidDataError("max_pages debe ser positivo")
        self.batch_size = batch_size
        self.max_pages = max_pages
        self._clock = clock
        self.phase = SyncPhase.IDLE

    def _set_phase(self, phase: SyncPhase, table: str) -> None:
        self.phase = phase
        logger.debug("sync_phase table=%s strategy=%s phase=%s", table, self.name, phase.value)

    def _fetch_all_remote(
        self,
        remote: RemoteDataSource,
        table: str,
        since: datetime | None,
        token: CancellationToken | None,
    ) -> list[RemoteChange]:
        changes: list[RemoteChange] = []
        offset = 0
        previous_page_ids: tuple[str, ...] | None = None
        for _ in range(self.max_pages):
            raise_if_cancelled(token)
            page = remote.fetch_changes(table, since, limit=self.batch_size, offset=offset)
            page_ids = tuple(metadata.id for _, metadata in page)
            if page and page_ids == previous_page_ids:
                logger.warning("Paginación remota repetida en %s (offset=%s); se detiene la lectura", table, offset)
                break
            changes.extend(page)
            if len(page) < self.batch_size:
                break
            previous_page_ids = page_ids
            offset += len(page)
        else:
            logger.warning("Alcanzado el límite de %s páginas leyendo %s", self.max_pages, table)
        changes.sort(key=lambda item: item[1].updated_at)
        return changes

    def _apply_remote(
        self,
        local: LocalDataStore,
        table: str,
        changes: Sequence[RemoteChange],
        state: PassState,
        token: CancellationToken | None,
    ) -> set[str]:
        """Aplica en sub-lotes transaccionales; devuelve los ids que fallaron."""
        failed_ids: set[str] = set()
        for chunk in chunked(changes, self.batch_size):
            raise_if_cancelled(token)
            try:
                operations = [remote_to_operation(record, metadata) for record, metadata in chunk]
                local.apply_changes(table, operations)
            except (StorageError, InvalidDataError) as exc:
                failed_ids.update(metadata.id for _, metadata in chunk)
                state.errors.append(f"Error aplicando {len(chunk)} cambios remotos: {exc}")
                logger.warning("Sub-lote remoto fallido en %s: %s", table, exc)
                continue
            state.remote_changes += len(chunk)
        return failed_ids

    def _push_local(
        self,
        remote: RemoteDataSource,
        local: LocalDataStore,
        table: str,
        operations: Sequence[SyncOperation],
        state: PassState,
        token: CancellationToken | None,
    ) -> list[SyncMetadata]:
        accepted_all: list[SyncMetadata] = []
        unsent: list[SyncOperation] = []
        for index, chunk in enumerate(chunked(operations, self.batch_size)):
            raise_if_cancelled(token)
            try:
                accepted = remote.push_changes(table, chunk)
            except NetworkError as exc:
                state.errors.append(f"Error enviando {len(chunk)} cambios locales: {exc}")
                logger.warning("Envío interrumpido en %s: %s", table, exc)
                unsent.extend(operations[index * self.batch_size :])
                break
            local.acknowledge_pushed(table, accepted)
            accepted_all.extend(accepted)
            state.local_changes += len(accepted)
            accepted_ids = {metadata.id for metadata in accepted}
            rejected = [operation for operation in chunk if operation.record_id not in accepted_ids]
            if rejected:
                state.errors.append(f"{len(rejected)} cambios locales rechazados por el remoto")
                unsent.extend(rejected)
        self._track_unpushed(local, table, unsent)
        return accepted_all

    @staticmethod
    def _track_unpushed(local: LocalDataStore, table: str, operations: Iterable[SyncOperation]) -> None:
        """Deja pendientes las filas sin metadatos que no llegaron al remoto."""
        operations = list(operations)
        if not operations:
            return
        known = local.get_sync_state(table, [operation.record_id for operation in operations])
        for operation in operations:
            if operation.record_id not in known:
                local.mark_local_change(table, operation.record_id, operation.op_type)

    def _advance_watermark(self, local: LocalDataStore, table: str, candidates: Iterable[datetime | None]) -> None:
        values = [candidate for candidate in candidates if candidate is not None]
        if not values:
            return
        candidate = max(values)
        current = local.get_last_sync_time(table)
        if current is None or candidate > current:
            local.set_last_sync_time(table, candidate)
            logger.debug("Marca de agua de %s -> %s", table, candidate)
