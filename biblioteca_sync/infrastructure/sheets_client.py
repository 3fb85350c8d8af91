from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, TypeVar

import gspread
from google.auth.exceptions import DefaultCredentialsError

from biblioteca_sync.bootstrap.logging import log_operational_error
from biblioteca_sync.core.errors import NetworkError, RateLimitError
from biblioteca_sync.core.observability import get_correlation_id
from biblioteca_sync.infrastructure.sheets_errors import SheetsPermissionError, map_gspread_exception

logger = logging.getLogger(__name__)

_MAX_RETRIES = 5
_BASE_BACKOFF_SECONDS = 1

T = TypeVar("T")


def worksheet_from_operation_name(operation_name: str) -> str | None:
    start = operation_name.find("(")
    end = operation_name.rfind(")")
    if start < 0 or end <= start:
        return None
    worksheet_name = operation_name[start + 1 : end].strip()
    return worksheet_name or None


class SheetsClient:
    """Envoltorio de gspread con caché de lecturas y reintentos por rate limit."""

    def __init__(self, *, sleeper: Callable[[float], None] = time.sleep) -> None:
        self._sleeper = sleeper
        self._spreadsheet: gspread.Spreadsheet | None = None
        self._worksheet_values_cache: dict[str, list[list[str]]] = {}
        self._worksheet_cache: dict[str, gspread.Worksheet] = {}
        self._read_calls_count = 0
        self._write_calls_count = 0

    @property
    def is_open(self) -> bool:
        return self._spreadsheet is not None

    def open_spreadsheet(self, credentials_path: Path, spreadsheet_id: str) -> gspread.Spreadsheet:
        logger.info("Conectando a Google Sheets con credenciales: %s", credentials_path.name)
        try:
            client = gspread.service_account(filename=str(credentials_path))
            spreadsheet = self._with_rate_limit_retry(
                "open_spreadsheet",
                lambda: client.open_by_key(spreadsheet_id),
                spreadsheet_id=spreadsheet_id,
            )
        except (
            gspread.exceptions.GSpreadException,
            json.JSONDecodeError,
            DefaultCredentialsError,
            OSError,
        ) as exc:
            mapped_error = map_gspread_exception(exc)
            if isinstance(mapped_error, SheetsPermissionError):
                self._log_permission_error(mapped_error, spreadsheet_id=spreadsheet_id)
            raise mapped_error from exc
        self._spreadsheet = spreadsheet
        self.invalidate_cache()
        self._worksheet_cache = {}
        return spreadsheet

    def list_worksheet_titles(self) -> list[str]:
        spreadsheet = self._require_spreadsheet()
        worksheets = self._with_rate_limit_retry("spreadsheet.worksheets", spreadsheet.worksheets)
        self._read_calls_count += 1
        return [worksheet.title for worksheet in worksheets]

    def read_all_values(self, worksheet_name: str) -> list[list[str]]:
        if worksheet_name in self._worksheet_values_cache:
            return self._worksheet_values_cache[worksheet_name]
        worksheet = self.get_worksheet(worksheet_name)
        values = self._with_rate_limit_retry(
            f"worksheet.get_all_values({worksheet_name})",
            worksheet.get_all_values,
        )
        self._worksheet_values_cache[worksheet_name] = values
        self._read_calls_count += 1
        return values

    def invalidate_cache(self, worksheet_name: str | None = None) -> None:
        if worksheet_name is None:
            self._worksheet_values_cache = {}
            return
        self._worksheet_values_cache.pop(worksheet_name, None)

    def get_worksheet(self, name: str) -> gspread.Worksheet:
        if name in self._worksheet_cache:
            return self._worksheet_cache[name]
        spreadsheet = self._require_spreadsheet()
        worksheet = self._with_rate_limit_retry(
            f"spreadsheet.worksheet({name})",
            lambda: spreadsheet.worksheet(name),
        )
        self._worksheet_cache[name] = worksheet
        return worksheet

    def ensure_worksheet(self, name: str, headers: list[str]) -> gspread.Worksheet:
        try:
            return self.get_worksheet(name)
        except gspread.exceptions.WorksheetNotFound:
            spreadsheet = self._require_spreadsheet()
            logger.info("Creando hoja %s en Google Sheets", name)
            worksheet = self._with_rate_limit_retry(
                f"spreadsheet.add_worksheet({name})",
                lambda: spreadsheet.add_worksheet(title=name, rows=1000, cols=max(len(headers), 1)),
            )
            self._with_rate_limit_retry(
                f"worksheet.append_row({name})",
                lambda: worksheet.append_row(headers, value_input_option="RAW"),
            )
            self._worksheet_cache[name] = worksheet
            self.invalidate_cache(name)
            return worksheet

    def append_rows(self, worksheet_name: str, rows: list[list[Any]]) -> None:
        if not rows:
            return
        worksheet = self.get_worksheet(worksheet_name)
        self._with_rate_limit_retry(
            f"worksheet.append_rows({worksheet_name})",
            lambda: worksheet.append_rows(rows, value_input_option="RAW"),
        )
        self._write_calls_count += 1
        self.invalidate_cache(worksheet_name)

    def batch_update(self, worksheet_name: str, data: list[dict[str, Any]]) -> None:
        if not data:
            return
        worksheet = self.get_worksheet(worksheet_name)
        self._with_rate_limit_retry(
            f"worksheet.batch_update({worksheet_name})",
            lambda: worksheet.batch_update(data, value_input_option="RAW"),
        )
        self._write_calls_count += 1
        self.invalidate_cache(worksheet_name)

    def get_read_calls_count(self) -> int:
        return self._read_calls_count

    def get_write_calls_count(self) -> int:
        return self._write_calls_count

    def _require_spreadsheet(self) -> gspread.Spreadsheet:
        if self._spreadsheet is None:
            raise RuntimeError("Spreadsheet no inicializado. Llama a open_spreadsheet primero.")
        return self._spreadsheet

    def _with_rate_limit_retry(
        self, operation_name: str, operation: Callable[[], T], *, spreadsheet_id: str | None = None
    ) -> T:
        for attempt in range(1, _MAX_RETRIES + 1):
            try:
                return operation()
            except gspread.exceptions.APIError as exc:
                mapped_error = map_gspread_exception(exc)
                if not isinstance(mapped_error, RateLimitError):
                    if isinstance(mapped_error, SheetsPermissionError):
                        self._log_permission_error(
                            mapped_error,
                            spreadsheet_id=spreadsheet_id or getattr(self._spreadsheet, "id", None),
                            worksheet_name=worksheet_from_operation_name(operation_name),
                        )
                    raise mapped_error from exc
                if attempt >= _MAX_RETRIES:
                    logger.error(
                        "Google Sheets rate limit persistente en %s tras %s intentos.",
                        operation_name,
                        attempt,
                    )
                    raise mapped_error from exc
                backoff_seconds = _BASE_BACKOFF_SECONDS * (2 ** (attempt - 1))
                logger.warning(
                    "Rate limit en Google Sheets (%s). intento=%s/%s backoff=%ss",
                    operation_name,
                    attempt,
                    _MAX_RETRIES,
                    backoff_seconds,
                )
                self._sleeper(backoff_seconds)
            except OSError as exc:
                raise NetworkError(f"Sin conexión con Google Sheets en {operation_name}: {exc}") from exc
        raise RuntimeError("No se pudo completar la operación de Google Sheets.")

    @staticmethod
    def _log_permission_error(
        error: SheetsPermissionError,
        *,
        spreadsheet_id: str | None = None,
        worksheet_name: str | None = None,
    ) -> None:
        log_operational_error(
            logger,
            "Sync failed: permisos insuficientes en Google Sheets",
            exc=error,
            extra={
                "correlation_id": get_correlation_id(),
                "operation": "sheets_permission_check",
                "spreadsheet_id": spreadsheet_id,
                "worksheet": worksheet_name,
            },
        )
