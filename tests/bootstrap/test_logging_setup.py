from __future__ import annotations

import json
import logging
import sys

import pytest

from biblioteca_sync.bootstrap.logging import (
    CRASH_LOG_NAME,
    ERROR_LOG_NAME,
    MAIN_LOG_NAME,
    configure_logging,
    install_exception_hook,
    log_operational_error,
)
from biblioteca_sync.core.observability import OperationContext


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root_logger = logging.getLogger()
    previous_handlers = list(root_logger.handlers)
    previous_level = root_logger.level
    yield
    for handler in list(root_logger.handlers):
        if handler not in previous_handlers:
            root_logger.removeHandler(handler)
            handler.close()
    for handler in previous_handlers:
        if handler not in root_logger.handlers:
            root_logger.addHandler(handler)
    root_logger.setLevel(previous_level)


def _events(path) -> list[dict]:
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_cada_nivel_va_a_su_fichero(tmp_path) -> None:
    configure_logging(tmp_path, max_bytes=4096, backup_count=2)
    logger = logging.getLogger("tests.sync")

    logger.info("pasada terminada")
    logger.error("database is locked")
    logger.critical("unhandled exception")

    assert [event["message"] for event in _events(tmp_path / MAIN_LOG_NAME)] == [
        "pasada terminada",
        "database is locked",
        "unhandled exception",
    ]
    assert [event["level"] for event in _events(tmp_path / ERROR_LOG_NAME)] == ["ERROR"]
    assert [event["level"] for event in _events(tmp_path / CRASH_LOG_NAME)] == ["CRITICAL"]


def test_handlers_rotativos_configurados(tmp_path) -> None:
    configure_logging(tmp_path, max_bytes=4096, backup_count=2)

    handlers = [handler for handler in logging.getLogger().handlers if hasattr(handler, "baseFilename")]

    assert len(handlers) == 3
    assert {handler.maxBytes for handler in handlers} == {4096}
    assert {handler.backupCount for handler in handlers} == {2}


def test_correlation_id_del_contexto(tmp_path) -> None:
    configure_logging(tmp_path, max_bytes=4096, backup_count=2)
    logger = logging.getLogger("tests.sync")

    with OperationContext("sync_all") as context:
        logger.info("dentro")
    logger.info("fuera")

    inside, outside = _events(tmp_path / MAIN_LOG_NAME)
    assert inside["correlation_id"] == context.correlation_id
    assert outside["correlation_id"] is None


def test_log_operational_error_incluye_extra_y_traza(tmp_path) -> None:
    configure_logging(tmp_path, max_bytes=4096, backup_count=2)
    logger = logging.getLogger("tests.sync")

    try:
        raise ValueError("boom")
    except ValueError as exc:
        log_operational_error(logger, "Sync failed", exc=exc, extra={"table": "books"})

    [event] = _events(tmp_path / ERROR_LOG_NAME)
    assert event["extra"] == {"table": "books"}
    assert "ValueError: boom" in event["exc_info"]


def test_exception_hook_escribe_crash_log(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(sys, "excepthook", sys.excepthook)
    configure_logging(tmp_path, max_bytes=4096, backup_count=2)
    install_exception_hook(tmp_path)

    try:
        raise RuntimeError("sin capturar")
    except RuntimeError as exc:
        sys.excepthook(type(exc), exc, exc.__traceback__)

    [event] = _events(tmp_path / CRASH_LOG_NAME)
    assert event["message"] == "Unhandled exception"
    assert "RuntimeError: sin capturar" in event["exc_info"]
    assert "python" in event["extra"]
