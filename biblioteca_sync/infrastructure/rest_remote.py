from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable

import requests

from biblioteca_sync.core.errors import InvalidDataError, NetworkError, RateLimitError, SerializationError
from biblioteca_sync.domain.ports import RemoteDataSource
from biblioteca_sync.domain.sync_models import Record, SyncMetadata, SyncOperation
from biblioteca_sync.domain.time_utils import to_iso, utc_now
from biblioteca_sync.infrastructure.rest_errors import (
    REACHABLE_STATUS_CODES,
    error_for_response,
    is_rejection,
    map_request_exception,
)

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_READ_TIMEOUT_SECONDS = 30.0
DEFAULT_PROBE_TIMEOUT_SECONDS = 5.0
DEFAULT_PAGE_SIZE = 500
_MAX_RATE_LIMIT_RETRIES = 3
_BASE_BACKOFF_SECONDS = 1.0
_UPSERT_PREFER = "resolution=merge-duplicates,return=representation"


class RestRemoteDataSource(RemoteDataSource):
    """Origen remoto sobre una API REST estilo PostgREST (Supabase)."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        session: requests.Session | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        read_timeout: float = DEFAULT_READ_TIMEOUT_SECONDS,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_rate_limit_retries: int = _MAX_RATE_LIMIT_RETRIES,
        sleeper: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._session = session or requests.Session()
        self._timeout = (connect_timeout, read_timeout)
        self._probe_timeout = probe_timeout
        self._page_size = page_size
        self._max_rate_limit_retries = max_rate_limit_retries
        self._sleeper = sleeper
        self._clock = clock

    def fetch_changes(
        self,
        table: str,
        since: datetime | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[tuple[Record, SyncMetadata]]:
        params: list[tuple[str, str]] = [
            ("select", "*"),
            ("order", "updated_at.asc"),
            ("limit", str(limit or self._page_size)),
        ]
        if offset:
            params.append(("offset", str(offset)))
        if since is not None:
            params.append(("updated_at", f"gte.{to_iso(since)}"))
        response = self._request("GET", self._table_url(table), params=params)
        body = self._json(response)
        if not isinstance(body, list):
            raise SerializationError(f"Respuesta inesperada al leer {table}: se esperaba una lista")

        now = self._clock()
        changes: list[tuple[Record, SyncMetadata]] = []
        for item in body:
            if not isinstance(item, dict):
                logger.warning("Ignorado elemento no objeto en %s: %r", table, item)
                continue
            try:
                metadata = SyncMetadata.from_record(item, now)
            except InvalidDataError:
                logger.warning("Ignorado registro sin id en %s", table)
                continue
            changes.append((item, metadata))
        logger.debug("fetch_changes %s since=%s -> %s registros", table, since, len(changes))
        return changes

    def push_changes(self, table: str, operations: list[SyncOperation]) -> list[SyncMetadata]:
        accepted: list[SyncMetadata] = []
        for operation in operations:
            try:
                accepted.append(self._push_one(table, operation))
            except NetworkError as exc:
                if not is_rejection(exc):
                    raise
                logger.warning(
                    "Operación %s rechazada para %s/%s: %s",
                    operation.op_type.value,
                    table,
                    operation.record_id,
                    exc,
                )
        return accepted

    def check_connectivity(self) -> bool:
        try:
            response = self._session.head(
                f"{self._base_url}/rest/v1/",
                headers=self._headers(),
                timeout=self._probe_timeout,
            )
        except requests.RequestException as exc:
            logger.info("Servicio remoto no alcanzable: %s", exc)
            return False
        return response.ok or response.status_code in REACHABLE_STATUS_CODES

    def _push_one(self, table: str, operation: SyncOperation) -> SyncMetadata:
        url = self._table_url(table)
        if operation.is_delete:
            self._request("DELETE", url, params=[("id", f"eq.{operation.record_id}")])
            return operation.metadata

        wire = operation.wire_record()
        response = self._request(
            "POST",
            url,
            params=[("on_conflict", "id")],
            json=[wire],
            extra_headers={"Prefer": _UPSERT_PREFER},
        )
        body = self._json(response) if response.content else None
        if isinstance(body, list) and body and isinstance(body[0], dict):
            return SyncMetadata.from_record({**wire, **body[0]}, self._clock())
        return operation.metadata

    def _request(
        self,
        method: str,
        url: str,
        *,
        extra_headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        headers = self._headers()
        headers.update(extra_headers or {})
        attempt = 0
        while True:
            attempt += 1
            try:
                response = self._session.request(method, url, headers=headers, timeout=self._timeout, **kwargs)
            except requests.RequestException as exc:
                raise map_request_exception(exc) from exc
            if response.ok:
                return response
            error = error_for_response(response)
            if not isinstance(error, RateLimitError) or attempt > self._max_rate_limit_retries:
                raise error
            backoff = error.retry_after if error.retry_after is not None else _BASE_BACKOFF_SECONDS * (2 ** (attempt - 1))
            logger.warning(
                "Rate limit en %s %s. intento=%s/%s backoff=%.3fs",
                method,
                url,
                attempt,
                self._max_rate_limit_retries,
                backoff,
            )
            self._sleeper(backoff)

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _table_url(self, table: str) -> str:
        return f"{self._base_url}/rest/v1/{table}"

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise SerializationError(f"Respuesta remota no es JSON válido: {exc}") from exc
