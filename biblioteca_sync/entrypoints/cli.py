from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sqlite3
import sys
import threading
from pathlib import Path
from typing import Any, Callable

from biblioteca_sync.application.conflict_resolver import DefaultConflictResolver
from biblioteca_sync.application.conflicts_service import ConflictsService
from biblioteca_sync.bootstrap.container import AppContainer, build_container
from biblioteca_sync.bootstrap.logging import configure_logging, install_exception_hook
from biblioteca_sync.bootstrap.settings import SyncSettings, load_settings, resolve_log_dir
from biblioteca_sync.core.errors import ConfigError, ConflictError, SyncError
from biblioteca_sync.core.metrics import metrics_registry
from biblioteca_sync.infrastructure.conflicts_repository_sqlite import SQLiteConflictsRepository
from biblioteca_sync.infrastructure.db import get_connection
from biblioteca_sync.infrastructure.local_sqlite_store import SQLiteLocalDataStore
from biblioteca_sync.infrastructure.migrations import MigrationRunner, run_migrations

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2

logger = logging.getLogger(__name__)

ContainerFactory = Callable[[SyncSettings], AppContainer]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="biblioteca-sync", description="Sincronización offline-first de la biblioteca")
    parser.add_argument("--db", help="Ruta al archivo SQLite local")
    parser.add_argument("--verbose", action="store_true", help="Muestra el log también por stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Estado de la sincronización y operaciones pendientes")

    sync_parser = subparsers.add_parser("sync", help="Ejecuta una pasada de sincronización")
    sync_parser.add_argument("--table", help="Sincroniza solo esta tabla")

    watch_parser = subparsers.add_parser("watch", help="Sincroniza en segundo plano hasta Ctrl+C")
    watch_parser.add_argument("--interval", type=float, help="Segundos entre pasadas")

    migrate_parser = subparsers.add_parser("migrate", help="Gestiona migraciones SQLite")
    migrate_parser.add_argument("action", choices=["up", "down", "status"], help="Operación a ejecutar")
    migrate_parser.add_argument("--steps", type=int, default=1, help="Número de migraciones a revertir")

    conflicts_parser = subparsers.add_parser("conflicts", help="Conflictos pendientes de resolución manual")
    conflicts_sub = conflicts_parser.add_subparsers(dest="conflicts_action", required=True)
    conflicts_sub.add_parser("list", help="Lista los conflictos abiertos")
    resolve_parser = conflicts_sub.add_parser("resolve", help="Resuelve uno o todos los conflictos")
    target = resolve_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--id", type=int, dest="conflict_id", help="Conflicto a resolver")
    target.add_argument("--all-newest", action="store_true", help="Resuelve todos quedándose con el más reciente")
    resolve_parser.add_argument("--keep", choices=["local", "remote"], default="remote")
    return parser


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")


def _open_connection(settings: SyncSettings) -> sqlite3.Connection:
    return get_connection(settings.db_path)


def _cmd_status(container: AppContainer) -> int:
    status = container.engine.initialize()
    _emit(
        {
            "status": status.to_dict(),
            "tables": container.engine.registered_tables(),
            "open_conflicts": container.conflicts_service.count_conflicts(),
        }
    )
    return EXIT_OK


def _cmd_sync(container: AppContainer, table: str | None) -> int:
    engine = container.engine
    engine.initialize()
    try:
        summaries = [engine.sync_table(table)] if table else engine.full_sync()
    except SyncError as exc:
        _emit({"error": str(exc), "status": engine.get_sync_status().to_dict()})
        return EXIT_FAILURE
    _emit(
        {
            "summaries": [summary.to_dict() for summary in summaries],
            "status": engine.get_sync_status().to_dict(),
            "metrics": metrics_registry.snapshot(),
        }
    )
    return EXIT_FAILURE if any(summary.has_errors for summary in summaries) else EXIT_OK


def _cmd_watch(container: AppContainer, interval: float | None, stop_event: threading.Event | None = None) -> int:
    engine = container.engine
    engine.start_sync_service(interval)
    stop_event = stop_event or threading.Event()
    logger.info("Sincronización en segundo plano activa; Ctrl+C para salir")
    try:
        while not stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupción recibida; deteniendo la sincronización")
    finally:
        engine.shutdown()
    _emit({"status": engine.get_sync_status().to_dict()})
    return EXIT_OK


def _cmd_migrate(settings: SyncSettings, action: str, steps: int) -> int:
    connection = _open_connection(settings)
    try:
        runner = MigrationRunner(connection)
        if action == "up":
            _emit({"applied": runner.apply_all()})
        elif action == "down":
            _emit({"rolled_back": runner.rollback(steps)})
        else:
            _emit({"migrations": runner.status()})
    finally:
        connection.close()
    return EXIT_OK


def _cmd_conflicts(settings: SyncSettings, args: argparse.Namespace) -> int:
    connection = _open_connection(settings)
    try:
        run_migrations(connection)
        lock = threading.RLock()
        service = ConflictsService(
            SQLiteConflictsRepository(connection, lock=lock),
            SQLiteLocalDataStore(connection, DefaultConflictResolver(), lock=lock),
        )
        if args.conflicts_action == "list":
            _emit({"conflicts": [conflict.to_dict() for conflict in service.list_conflicts()]})
            return EXIT_OK
        if args.all_newest:
            _emit({"resolved": service.resolve_all_newest()})
            return EXIT_OK
        try:
            conflict = service.resolve_conflict(args.conflict_id, keep_local=args.keep == "local")
        except ConflictError as exc:
            _emit({"error": str(exc)})
            return EXIT_FAILURE
        _emit({"resolved": conflict.id, "keep": args.keep})
        return EXIT_OK
    finally:
        connection.close()


def main(argv: list[str] | None = None, *, container_factory: ContainerFactory | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    log_dir = resolve_log_dir()
    configure_logging(log_dir, console=args.verbose)
    install_exception_hook(log_dir)

    try:
        settings = load_settings()
        if args.db:
            settings = dataclasses.replace(settings, db_path=Path(args.db))
        if args.command == "migrate":
            return _cmd_migrate(settings, args.action, args.steps)
        if args.command == "conflicts":
            return _cmd_conflicts(settings, args)

        container = (container_factory or build_container)(settings)
        try:
            if args.command == "status":
                return _cmd_status(container)
            if args.command == "sync":
                return _cmd_sync(container, args.table)
            return _cmd_watch(container, args.interval)
        finally:
            container.connection.close()
    except ConfigError as exc:
        logger.error("Configuración no válida: %s", exc)
        _emit({"error": str(exc)})
        return EXIT_CONFIG
    except SyncError as exc:
        logger.error("Operación fallida: %s", exc)
        _emit({"error": str(exc)})
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
