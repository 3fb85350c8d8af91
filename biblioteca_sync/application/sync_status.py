from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime

from biblioteca_sync.domain.sync_models import SyncStatus


class SyncStatusHolder:
    """Estado compartido del motor protegido por un único lock.

    El lock solo se toma para cambiar banderas o copiar la instantánea; nunca
    durante llamadas de red.
    """

    def __init__(self, initial: SyncStatus | None = None) -> None:
        self._lock = threading.Lock()
        self._status = initial or SyncStatus()

    def snapshot(self) -> SyncStatus:
        with self._lock:
            return self._status

    def try_begin_sync(self) -> bool:
        with self._lock:
            if self._status.is_syncing:
                return False
            self._status = replace(self._status, is_syncing=True)
            return True

    def finish_sync(
        self,
        *,
        last_sync: datetime | None,
        last_error: str | None,
        completed_cleanly: bool,
        pending_operations: int,
    ) -> None:
        with self._lock:
            self._status = replace(
                self._status,
                is_syncing=False,
                last_sync=last_sync or self._status.last_sync,
                last_error=last_error,
                initial_sync_completed=self._status.initial_sync_completed or completed_cleanly,
                pending_operations=pending_operations,
            )

    def abort_sync(self, error: str) -> None:
        with self._lock:
            self._status = replace(self._status, is_syncing=False, last_error=error)

    def set_online(self, is_online: bool) -> None:
        with self._lock:
            self._status = replace(self._status, is_online=is_online)

    def set_error(self, error: str | None) -> None:
        with self._lock:
            self._status = replace(self._status, last_error=error)

    def set_database_initialized(self, initialized: bool) -> None:
        with self._lock:
            self._status = replace(self._status, database_initialized=initialized)

    def set_pending_operations(self, count: int) -> None:
        with self._lock:
            self._status = replace(self._status, pending_operations=max(0, count))

    def release_sync(self) -> None:
        with self._lock:
            self._status = replace(self._status, is_syncing=False)
