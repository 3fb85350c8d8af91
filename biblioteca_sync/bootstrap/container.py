from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from biblioteca_sync.application.conflict_resolver import DefaultConflictResolver
from biblioteca_sync.application.conflicts_service import ConflictsService
from biblioteca_sync.application.strategies import (
    IncrementalSyncStrategy,
    OneWaySyncStrategy,
    TwoWaySyncStrategy,
)
from biblioteca_sync.application.sync_engine import SyncEngine, SyncEngineConfig
from biblioteca_sync.bootstrap.settings import (
    BACKEND_SHEETS,
    STRATEGY_INCREMENTAL,
    STRATEGY_PULL,
    STRATEGY_PUSH,
    STRATEGY_TWO_WAY,
    SyncSettings,
    load_settings,
    resolve_log_dir,
)
from biblioteca_sync.core.errors import ConfigError
from biblioteca_sync.domain.ports import RemoteDataSource, SyncStrategy
from biblioteca_sync.domain.sync_models import SyncDirection
from biblioteca_sync.infrastructure.conflicts_repository_sqlite import SQLiteConflictsRepository
from biblioteca_sync.infrastructure.db import get_connection
from biblioteca_sync.infrastructure.local_sqlite_store import SQLiteLocalDataStore
from biblioteca_sync.infrastructure.migrations import run_migrations
from biblioteca_sync.infrastructure.operation_queue_sqlite import SQLiteOperationQueue
from biblioteca_sync.infrastructure.rest_remote import RestRemoteDataSource
from biblioteca_sync.infrastructure.sheets_client import SheetsClient
from biblioteca_sync.infrastructure.sheets_remote import SheetsRemoteDataSource
from biblioteca_sync.infrastructure.structured_log import StructuredFileLogger

AUDIT_LOG_NAME = "sync_audit.jsonl"


@dataclass
class AppContainer:
    settings: SyncSettings
    connection: sqlite3.Connection
    local_store: SQLiteLocalDataStore
    operation_queue: SQLiteOperationQueue
    conflicts_repository: SQLiteConflictsRepository
    conflicts_service: ConflictsService
    remote: RemoteDataSource
    engine: SyncEngine


ConnectionFactory = Callable[[], sqlite3.Connection]


def build_remote(settings: SyncSettings) -> RemoteDataSource:
    if not settings.remote.is_configured(settings.backend):
        raise ConfigError(f"El backend remoto '{settings.backend}' no está configurado")
    if settings.backend == BACKEND_SHEETS:
        return SheetsRemoteDataSource(
            SheetsClient(),
            Path(settings.remote.credentials_path),
            settings.remote.spreadsheet_id,
        )
    return RestRemoteDataSource(
        settings.remote.url,
        settings.remote.api_key,
        connect_timeout=settings.remote.connect_timeout,
        read_timeout=settings.remote.read_timeout,
        page_size=settings.remote.page_size,
    )


def build_strategy(name: str, settings: SyncSettings) -> SyncStrategy:
    batch_size = settings.remote.page_size
    if name == STRATEGY_TWO_WAY:
        return TwoWaySyncStrategy(settings.conflict_strategy, batch_size=batch_size)
    if name == STRATEGY_PUSH:
        return OneWaySyncStrategy(SyncDirection.LOCAL_TO_REMOTE, batch_size=batch_size)
    if name == STRATEGY_PULL:
        return OneWaySyncStrategy(SyncDirection.REMOTE_TO_LOCAL, batch_size=batch_size)
    if name == STRATEGY_INCREMENTAL:
        return IncrementalSyncStrategy(batch_size)
    raise ConfigError(f"Estrategia de sincronización desconocida: {name!r}")


def build_container(
    settings: SyncSettings | None = None,
    connection_factory: ConnectionFactory | None = None,
    *,
    remote: RemoteDataSource | None = None,
) -> AppContainer:
    settings = settings or load_settings()
    connection = connection_factory() if connection_factory is not None else get_connection(settings.db_path)
    run_migrations(connection)

    lock = threading.RLock()
    resolver = DefaultConflictResolver()
    local_store = SQLiteLocalDataStore(connection, resolver, lock=lock)
    operation_queue = SQLiteOperationQueue(connection, lock=lock)
    conflicts_repository = SQLiteConflictsRepository(connection, lock=lock)
    conflicts_service = ConflictsService(conflicts_repository, local_store)
    remote = remote or build_remote(settings)

    audit_logger = None
    if settings.audit_log:
        audit_logger = StructuredFileLogger((settings.log_dir or resolve_log_dir()) / AUDIT_LOG_NAME)

    engine = SyncEngine(
        SyncEngineConfig(
            remote=remote,
            local=local_store,
            resolver=resolver,
            operation_queue=operation_queue,
            conflict_log=conflicts_repository,
            strategies={table: build_strategy(settings.strategy_for(table), settings) for table in settings.tables},
            sync_interval_seconds=settings.sync_interval_seconds,
            audit_logger=audit_logger,
        )
    )

    return AppContainer(
        settings=settings,
        connection=connection,
        local_store=local_store,
        operation_queue=operation_queue,
        conflicts_repository=conflicts_repository,
        conflicts_service=conflicts_service,
        remote=remote,
        engine=engine,
    )
