from __future__ import annotations

import requests

from biblioteca_sync.core.errors import (
    NetworkError,
    RateLimitError,
    SerializationError,
    SyncError,
    SyncTimeoutError,
)

REACHABLE_STATUS_CODES = frozenset({400, 401, 403})


def parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return max(0.0, seconds)


def _response_detail(response: requests.Response) -> str:
    text = (response.text or "").strip()
    return text[:300] if text else response.reason or ""


def error_for_response(response: requests.Response) -> SyncError:
    status = response.status_code
    detail = _response_detail(response)
    if status == 429:
        return RateLimitError(
            f"Límite de peticiones alcanzado ({detail})",
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status in {408, 504}:
        return SyncTimeoutError(f"Timeout del servicio remoto [{status}]: {detail}", status_code=status)
    if status in {401, 403}:
        return NetworkError(f"Credenciales rechazadas por el servicio remoto [{status}]: {detail}", status_code=status)
    if status == 404:
        return NetworkError(f"Recurso remoto no encontrado [{status}]: {detail}", status_code=status)
    if 400 <= status < 500:
        return NetworkError(f"Petición rechazada por el servicio remoto [{status}]: {detail}", status_code=status)
    return NetworkError(f"Error del servicio remoto [{status}]: {detail}", status_code=status)


def map_request_exception(exc: requests.RequestException) -> SyncError:
    if isinstance(exc, requests.Timeout):
        return SyncTimeoutError(f"Timeout conectando con el servicio remoto: {exc}")
    if isinstance(exc, requests.ConnectionError):
        return NetworkError(f"Sin conexión con el servicio remoto: {exc}")
    if isinstance(exc, requests.exceptions.JSONDecodeError):
        return SerializationError(f"Respuesta remota no es JSON válido: {exc}")
    return NetworkError(f"Error de red: {exc}")


def is_rejection(exc: BaseException) -> bool:
    """Errores 4xx que afectan a una operación concreta y no al canal."""
    if not isinstance(exc, NetworkError) or isinstance(exc, (RateLimitError, SyncTimeoutError)):
        return False
    status = exc.status_code
    return status is not None and 400 <= status < 500 and status not in {401, 403}
