from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from time import perf_counter
from typing import TYPE_CHECKING, Callable

from biblioteca_sync.application.sync_status import SyncStatusHolder
from biblioteca_sync.core.errors import (
    ConfigError,
    NetworkError,
    RateLimitError,
    SyncCancelledError,
    SyncError,
    SyncInProgressError,
)
from biblioteca_sync.core.metrics import MetricsRegistry, measure_time, metrics_registry
from biblioteca_sync.core.observability import OperationContext, log_event
from biblioteca_sync.core.retry import CancellationToken
from biblioteca_sync.domain.ports import (
    ConflictLog,
    ConflictResolver,
    LocalDataStore,
    OperationQueue,
    RemoteDataSource,
    SyncStrategy,
)
from biblioteca_sync.domain.sync_models import (
    METADATA_COLUMNS,
    OperationType,
    PendingOperation,
    Record,
    SyncMetadata,
    SyncOperation,
    SyncStatus,
    SyncSummary,
)
from biblioteca_sync.domain.time_utils import utc_now

if TYPE_CHECKING:
    from biblioteca_sync.infrastructure.structured_log import StructuredFileLogger

logger = logging.getLogger(__name__)

DEFAULT_SYNC_INTERVAL_SECONDS = 30.0


@dataclass
class SyncEngineConfig:
    remote: RemoteDataSource | None = None
    local: LocalDataStore | None = None
    resolver: ConflictResolver | None = None
    operation_queue: OperationQueue | None = None
    conflict_log: ConflictLog | None = None
    strategies: dict[str, SyncStrategy] = field(default_factory=dict)
    sync_interval_seconds: float = DEFAULT_SYNC_INTERVAL_SECONDS
    audit_logger: "StructuredFileLogger | None" = None
    metrics: MetricsRegistry = field(default_factory=lambda: metrics_registry)
    clock: Callable[[], datetime] = utc_now

    def validate(self) -> None:
        missing = [
            name
            for name, value in (
                ("remote", self.remote),
                ("local", self.local),
                ("resolver", self.resolver),
                ("operation_queue", self.operation_queue),
            )
            if value is None
        ]
        if missing:
            raise ConfigError(f"Configuración de sincronización incompleta: falta {', '.join(missing)}")
        if self.sync_interval_seconds <= 0:
            raise ConfigError("sync_interval_seconds debe ser positivo")


def build_pending_operation(
    record_id: str,
    op_type: OperationType,
    payload: Record | None,
    stored: Record | None,
    version: int,
    now: datetime,
) -> SyncOperation:
    """Operación a enviar para un cambio recién encolado.

    La fila guardada en local tiene prioridad sobre el payload recibido.
    """
    source: Record = {**(payload or {}), **(stored or {}), "id": str(record_id), "version": version}
    metadata = SyncMetadata.from_record(source, now)
    if op_type is OperationType.DELETE:
        if metadata.deleted_at is None:
            metadata = replace(metadata, deleted_at=now, updated_at=max(now, metadata.updated_at))
        return SyncOperation.delete(metadata.id, metadata)
    data = {key: value for key, value in source.items() if key not in METADATA_COLUMNS}
    return SyncOperation(op_type, metadata, data)


class SyncEngine:
    """Orquesta las estrategias por tabla, el estado compartido y el bucle en segundo plano."""

    def __init__(self, config: SyncEngineConfig) -> None:
        config.validate()
        self._config = config
        self._remote: RemoteDataSource = config.remote
        self._local: LocalDataStore = config.local
        self._resolver: ConflictResolver = config.resolver
        self._queue: OperationQueue = config.operation_queue
        self._conflict_log = config.conflict_log
        self._metrics = config.metrics
        self._audit = config.audit_logger
        self._clock = config.clock
        self._strategies: dict[str, SyncStrategy] = dict(config.strategies)
        self._status = SyncStatusHolder()
        self._pass_token = CancellationToken()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._thread_lock = threading.Lock()

    @property
    def status(self) -> SyncStatus:
        return self._status.snapshot()

    def get_sync_status(self) -> SyncStatus:
        return self._status.snapshot()

    def register_strategy(self, table: str, strategy: SyncStrategy) -> None:
        if not table:
            raise ConfigError("El nombre de tabla es obligatorio")
        self._strategies[table] = strategy
        logger.debug("Estrategia %s registrada para %s", getattr(strategy, "name", type(strategy).__name__), table)

    def registered_tables(self) -> list[str]:
        return list(self._strategies)

    def initialize(self) -> SyncStatus:
        with OperationContext("initialize"):
            initialized = self._local.is_initialized()
            self._status.set_database_initialized(initialized)
            if not initialized:
                logger.warning("La base de datos local no tiene las tablas de sincronización")
            self.get_pending_operations_count()
            self.check_connectivity()
        return self._status.snapshot()

    def check_connectivity(self) -> bool:
        try:
            online = bool(self._remote.check_connectivity())
        except Exception as exc:
            logger.info("Comprobación de conectividad fallida: %s", exc)
            online = False
        previous = self._status.snapshot().is_online
        self._status.set_online(online)
        if previous != online:
            logger.info("Conectividad remota: %s", "online" if online else "offline")
        return online

    def queue_operation(
        self,
        table: str,
        op_type: OperationType | str,
        record_id: str,
        payload: Record | None = None,
    ) -> PendingOperation:
        """Registra un cambio local; si hay conexión intenta subirlo al momento."""
        op_type = OperationType(op_type)
        version = self._local.mark_local_change(table, str(record_id), op_type)
        pending = self._queue.enqueue(table, str(record_id), op_type, payload)
        self.get_pending_operations_count()
        if self._status.snapshot().is_online and self._status.try_begin_sync():
            try:
                self._push_immediately(pending, version)
            finally:
                self._status.release_sync()
        return pending

    def sync_table(self, table: str) -> SyncSummary:
        strategy = self._strategies.get(table)
        if strategy is None:
            raise ConfigError(f"No hay estrategia registrada para la tabla {table}")
        if not self._status.try_begin_sync():
            raise SyncInProgressError("Ya hay una sincronización en curso")
        try:
            with OperationContext("sync_table"):
                token = self._new_pass_token()
                if not self.check_connectivity():
                    raise NetworkError("Sin conexión con el servidor remoto")
                summary = self._run_strategy(table, strategy, token)
        except BaseException as exc:
            self._status.abort_sync(str(exc))
            raise
        self._finish_pass([summary])
        return summary

    @measure_time("sync.all_tables_ms")
    def sync_all_tables(self) -> list[SyncSummary]:
        return self._sync_all(check_connectivity=True)

    def full_sync(self) -> list[SyncSummary]:
        return self.sync_all_tables()

    def start_background_sync(self, interval: float | None = None) -> None:
        seconds = self._config.sync_interval_seconds if interval is None else interval
        if seconds <= 0:
            raise ConfigError("El intervalo de sincronización debe ser positivo")
        with self._thread_lock:
            if self._thread is not None and self._thread.is_alive():
                logger.info("La sincronización en segundo plano ya está activa")
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._background_loop,
                args=(seconds,),
                name="biblioteca-sync",
                daemon=True,
            )
            self._thread.start()
        logger.info("Sincronización en segundo plano iniciada (intervalo=%ss)", seconds)

    def stop_background_sync(self, timeout: float = 5.0) -> bool:
        """Detiene el bucle; devuelve False si el hilo no terminó a tiempo."""
        self._stop_event.set()
        self._pass_token.cancel()
        with self._thread_lock:
            thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        if thread.is_alive():
            logger.warning("El hilo de sincronización no terminó en %ss", timeout)
            return False
        with self._thread_lock:
            self._thread = None
        logger.info("Sincronización en segundo plano detenida")
        return True

    def is_background_sync_running(self) -> bool:
        with self._thread_lock:
            return self._thread is not None and self._thread.is_alive()

    def start_sync_service(self, interval: float | None = None) -> None:
        self.initialize()
        self.start_background_sync(interval)

    def get_pending_operations_count(self) -> int:
        count = self._queue.count()
        self._status.set_pending_operations(count)
        return count

    def shutdown(self, timeout: float = 5.0) -> None:
        self.stop_background_sync(timeout)
        logger.info("Motor de sincronización detenido")

    def _new_pass_token(self) -> CancellationToken:
        self._pass_token = CancellationToken()
        if self._stop_event.is_set() and threading.current_thread() is self._thread:
            self._pass_token.cancel()
        return self._pass_token

    def _sync_all(self, *, check_connectivity: bool) -> list[SyncSummary]:
        if not self._status.try_begin_sync():
            raise SyncInProgressError("Ya hay una sincronización en curso")
        summaries: list[SyncSummary] = []
        try:
            with OperationContext("sync_all_tables"):
                token = self._new_pass_token()
                if check_connectivity and not self.check_connectivity():
                    raise NetworkError("Sin conexión con el servidor remoto")
                for table, strategy in list(self._strategies.items()):
                    try:
                        summaries.append(self._run_strategy(table, strategy, token))
                    except SyncCancelledError:
                        raise
                    except RateLimitError as exc:
                        summaries.append(SyncSummary.failed(table, str(exc)))
                        logger.warning("Rate limit sincronizando %s: %s", table, exc)
                    except NetworkError as exc:
                        summaries.append(SyncSummary.failed(table, str(exc)))
                        self._status.set_online(False)
                        logger.warning("Sin conexión sincronizando %s; se omiten el resto de tablas: %s", table, exc)
                        break
                    except SyncError as exc:
                        summaries.append(SyncSummary.failed(table, str(exc)))
                        logger.warning("Sincronización de %s fallida: %s", table, exc)
                    except Exception as exc:
                        logger.exception("Error inesperado sincronizando %s", table)
                        summaries.append(SyncSummary.failed(table, str(exc)))
        except BaseException as exc:
            self._status.abort_sync(str(exc))
            raise
        self._finish_pass(summaries)
        return summaries

    def _run_strategy(self, table: str, strategy: SyncStrategy, token: CancellationToken) -> SyncSummary:
        started = perf_counter()
        try:
            summary = strategy.sync_table(
                table,
                self._remote,
                self._local,
                self._resolver,
                conflict_log=self._conflict_log,
                cancellation_token=token,
            )
        finally:
            self._metrics.record_time(f"sync.table.{table}_ms", (perf_counter() - started) * 1000)
        self._metrics.increment("sync.remote_changes", summary.remote_changes)
        self._metrics.increment("sync.local_changes", summary.local_changes)
        if summary.conflicts:
            self._metrics.increment("sync.conflicts", summary.conflicts)
        if summary.has_errors:
            self._metrics.increment("sync.table_errors")
        log_event(logger, "sync_table_finished", summary.to_dict())
        if self._audit is not None:
            self._audit.log("sync_table_finished", **summary.to_dict())
        return summary

    def _finish_pass(self, summaries: list[SyncSummary]) -> None:
        errors = [f"{summary.table_name}: {error}" for summary in summaries for error in summary.errors]
        pending = self._queue.count()
        self._status.finish_sync(
            last_sync=self._clock(),
            last_error="; ".join(errors) or None,
            completed_cleanly=bool(summaries) and not errors,
            pending_operations=pending,
        )
        self._metrics.increment("sync.passes")

    def _push_immediately(self, pending: PendingOperation, version: int) -> None:
        table = pending.table_name
        try:
            stored = self._local.get_record(table, pending.record_id)
            operation = build_pending_operation(
                pending.record_id, pending.op_type, pending.payload, stored, version, self._clock()
            )
            accepted = self._remote.push_changes(table, [operation])
        except NetworkError as exc:
            self._queue.record_attempt(pending.queue_id, str(exc))
            if not isinstance(exc, RateLimitError):
                self._status.set_online(False)
            logger.info("Envío inmediato de %s/%s aplazado: %s", table, pending.record_id, exc)
            return
        except SyncError as exc:
            self._queue.record_attempt(pending.queue_id, str(exc))
            logger.warning("Envío inmediato de %s/%s fallido: %s", table, pending.record_id, exc)
            return
        if not accepted:
            self._queue.record_attempt(pending.queue_id, "Rechazado por el remoto")
            return
        self._local.acknowledge_pushed(table, accepted)
        self.get_pending_operations_count()
        logger.debug("Envío inmediato de %s/%s confirmado", table, pending.record_id)

    def _background_loop(self, interval: float) -> None:
        while not self._stop_event.is_set():
            self._background_tick()
            if self._stop_event.wait(interval):
                break

    def _background_tick(self) -> None:
        try:
            if not self.check_connectivity():
                return
            if self._status.snapshot().is_syncing:
                return
            self._sync_all(check_connectivity=False)
        except SyncInProgressError:
            logger.debug("Tick omitido: sincronización en curso")
        except SyncCancelledError:
            logger.info("Sincronización en segundo plano cancelada")
        except Exception:
            logger.exception("Error en la sincronización en segundo plano; se reintentará en el siguiente ciclo")
