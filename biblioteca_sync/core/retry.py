from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time
from typing import Callable, TypeVar

from biblioteca_sync.core.errors import SyncCancelledError, is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SLEEP_STEP_SECONDS = 0.1


class CancellationToken:
    """Token cooperativo para cancelación de sincronizaciones."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Espera hasta ``timeout`` segundos; devuelve True si se canceló antes."""
        return self._event.wait(timeout)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff_seconds: float = 0.5
    backoff_multiplier: float = 2.0

    def backoff_for(self, attempt: int) -> float:
        return self.initial_backoff_seconds * (self.backoff_multiplier ** (attempt - 1))


def raise_if_cancelled(token: CancellationToken | None) -> None:
    if token is not None and token.is_cancelled():
        raise SyncCancelledError("Sincronización cancelada")


def sleep_with_cancellation(
    seconds: float,
    token: CancellationToken | None,
    sleeper: Callable[[float], None] = time.sleep,
) -> None:
    remaining = seconds
    while remaining > 0:
        raise_if_cancelled(token)
        step = min(_SLEEP_STEP_SECONDS, remaining)
        sleeper(step)
        remaining -= step


def run_with_retries(
    operation_name: str,
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    sleeper: Callable[[float], None] = time.sleep,
    cancellation_token: CancellationToken | None = None,
    is_retryable: Callable[[BaseException], bool] = is_transient,
) -> T:
    """Ejecuta ``operation`` reintentando errores transitorios con backoff exponencial."""
    attempt = 0
    while True:
        attempt += 1
        raise_if_cancelled(cancellation_token)
        try:
            return operation()
        except SyncCancelledError:
            raise
        except Exception as exc:
            if attempt >= policy.max_attempts or not is_retryable(exc):
                raise
            backoff = policy.backoff_for(attempt)
            logger.warning(
                "Reintento programado para %s. intento=%s/%s backoff=%.3fs error=%s",
                operation_name,
                attempt,
                policy.max_attempts,
                backoff,
                exc,
            )
            sleep_with_cancellation(backoff, cancellation_token, sleeper)
