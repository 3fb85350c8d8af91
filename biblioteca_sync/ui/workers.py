from __future__ import annotations

import logging
import traceback

from PySide6.QtCore import QObject, Signal, Slot

from biblioteca_sync.application.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncWorker(QObject):
    """Ejecuta ``full_sync`` fuera del hilo de la UI (moverlo a un ``QThread``)."""

    finished = Signal(list)
    failed = Signal(object)

    def __init__(self, engine: SyncEngine) -> None:
        super().__init__()
        self._engine = engine

    @Slot()
    def run(self) -> None:
        try:
            summaries = self._engine.full_sync()
        except Exception as exc:
            logger.exception("Error durante la sincronización")
            self.failed.emit({"error": exc, "details": traceback.format_exc()})
            return
        self.finished.emit(summaries)


class ConnectivityWorker(QObject):
    checked = Signal(bool)

    def __init__(self, engine: SyncEngine) -> None:
        super().__init__()
        self._engine = engine

    @Slot()
    def run(self) -> None:
        self.checked.emit(self._engine.check_connectivity())
