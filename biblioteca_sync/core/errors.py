from __future__ import annotations


class AppError(Exception):
    pass


class SyncError(AppError):
    pass


class NetworkError(SyncError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SyncTimeoutError(NetworkError):
    pass


class RateLimitError(NetworkError):
    def __init__(self, message: str, *, status_code: int | None = 429, retry_after: float | None = None) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class StorageError(SyncError):
    pass


class SerializationError(SyncError):
    pass


class ConflictError(SyncError):
    pass


class InvalidDataError(SyncError):
    pass


class ConfigError(SyncError):
    pass


class SyncInProgressError(SyncError):
    pass


class SyncCancelledError(SyncError):
    """Error lanzado cuando una sincronización se cancela explícitamente."""


_TRANSIENT_ERRORS = (NetworkError, TimeoutError, ConnectionError)


def is_transient(exc: BaseException) -> bool:
    """Indica si el error merece un reintento con backoff."""
    if isinstance(exc, SyncCancelledError):
        return False
    if isinstance(exc, NetworkError) and exc.status_code is not None:
        return exc.status_code >= 500 or exc.status_code in {408, 429}
    return isinstance(exc, _TRANSIENT_ERRORS)
