from __future__ import annotations

import importlib
import os
import platform
import sqlite3
import threading

import pytest

from biblioteca_sync.application.conflict_resolver import DefaultConflictResolver
from biblioteca_sync.infrastructure.conflicts_repository_sqlite import SQLiteConflictsRepository
from biblioteca_sync.infrastructure.local_sqlite_store import SQLiteLocalDataStore
from biblioteca_sync.infrastructure.migrations import run_migrations
from biblioteca_sync.infrastructure.operation_queue_sqlite import SQLiteOperationQueue
from tests.fakes import FakeRemote, FixedClock, at


def _is_linux_headless() -> bool:
    if platform.system() != "Linux":
        return False
    return not (os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY"))


if _is_linux_headless():
    os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")


_UI_BACKEND_ERROR: str | None = None


def _detect_ui_backend_issue() -> str | None:
    try:
        importlib.import_module("PySide6")
        importlib.import_module("PySide6.QtCore")
        return None
    except Exception as exc:  # pragma: no cover - depende del host de ejecución
        return f"PySide6/Qt no disponible para tests UI: {exc}"


def pytest_configure(config: pytest.Config) -> None:
    global _UI_BACKEND_ERROR
    _UI_BACKEND_ERROR = _detect_ui_backend_issue()


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    skip_ui = None
    if _UI_BACKEND_ERROR is not None:
        skip_ui = pytest.mark.skip(reason=_UI_BACKEND_ERROR)

    for item in items:
        if "tests/ui/" in item.nodeid:
            item.add_marker(pytest.mark.ui)
        if skip_ui is not None and "ui" in item.keywords:
            item.add_marker(skip_ui)


@pytest.fixture
def connection() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(at(60))


@pytest.fixture
def db_lock() -> threading.RLock:
    return threading.RLock()


@pytest.fixture
def store(connection: sqlite3.Connection, clock: FixedClock, db_lock: threading.RLock) -> SQLiteLocalDataStore:
    return SQLiteLocalDataStore(connection, DefaultConflictResolver(), lock=db_lock, clock=clock)


@pytest.fixture
def queue(connection: sqlite3.Connection, clock: FixedClock, db_lock: threading.RLock) -> SQLiteOperationQueue:
    return SQLiteOperationQueue(connection, lock=db_lock, clock=clock)


@pytest.fixture
def conflict_log(
    connection: sqlite3.Connection, clock: FixedClock, db_lock: threading.RLock
) -> SQLiteConflictsRepository:
    return SQLiteConflictsRepository(connection, lock=db_lock, clock=clock)


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()
