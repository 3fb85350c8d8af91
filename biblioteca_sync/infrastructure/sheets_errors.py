from __future__ import annotations

import json

import gspread
from google.auth.exceptions import DefaultCredentialsError

from biblioteca_sync.core.errors import ConfigError, NetworkError, RateLimitError, SyncError


class SheetsConfigError(ConfigError):
    pass


class SheetsApiDisabledError(SheetsConfigError):
    pass


class SheetsPermissionError(SheetsConfigError):
    pass


class SheetsNotFoundError(SheetsConfigError):
    pass


class SheetsCredentialsError(SheetsConfigError):
    pass


def extract_response_status_code(ex: Exception) -> int | None:
    response = getattr(ex, "response", None)
    return getattr(response, "status_code", None)


def _extract_api_error_text(ex: gspread.exceptions.APIError) -> str:
    response = getattr(ex, "response", None)
    if response is not None:
        text = getattr(response, "text", "")
        if text:
            return text
    return str(ex)


def _is_rate_limited_api_error(text_lower: str, status_code: int | None) -> bool:
    if status_code in {429, 500, 503}:
        return True
    return any(
        token in text_lower
        for token in (
            "[429]",
            "resource_exhausted",
            "rate_limit_exceeded",
            "quota exceeded",
            "read requests per minute per user",
        )
    )


def classify_api_error(text_lower: str, status_code: int | None) -> SyncError:
    if _is_rate_limited_api_error(text_lower, status_code):
        return RateLimitError(
            "Límite de Google Sheets alcanzado. Espera 1 minuto y reintenta.",
            status_code=status_code,
        )
    if "google sheets api has not been used" in text_lower or "it is disabled" in text_lower:
        return SheetsApiDisabledError("La API de Google Sheets no está habilitada en tu proyecto de Google Cloud.")
    if "[404]" in text_lower or "requested entity was not found" in text_lower:
        return SheetsNotFoundError("El Spreadsheet ID/URL no es válido o la hoja no existe.")
    if status_code == 403 or "[403]" in text_lower or "permission_denied" in text_lower:
        return SheetsPermissionError("La hoja no está compartida con la cuenta de servicio.")
    return NetworkError(text_lower, status_code=status_code)


def map_gspread_exception(ex: Exception) -> Exception:
    if isinstance(ex, SyncError):
        return ex
    if isinstance(ex, gspread.exceptions.APIError):
        text_lower = _extract_api_error_text(ex).strip().lower()
        return classify_api_error(text_lower, extract_response_status_code(ex))
    if isinstance(ex, FileNotFoundError):
        path = getattr(ex, "filename", None)
        suffix = f" en {path}" if path else ""
        return SheetsCredentialsError(f"No se encuentra credentials.json{suffix}.")
    if isinstance(ex, (json.JSONDecodeError, DefaultCredentialsError)):
        return SheetsCredentialsError("El credentials.json no es válido. Revisa el contenido del archivo.")
    if isinstance(ex, OSError):
        return NetworkError(f"Sin conexión con Google Sheets: {ex}")
    return SheetsConfigError(str(ex))
