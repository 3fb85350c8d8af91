from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normaliza a UTC; los datetimes naive se interpretan como UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parsea ISO-8601 (admite sufijo ``Z``) y devuelve un datetime UTC.

    Lanza ``ValueError`` si el valor no es interpretable.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        raise ValueError(f"Timestamp inválido: {value!r}")
    text = value.strip()
    if not text:
        raise ValueError("Timestamp vacío")
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def parse_timestamp_or_none(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


def to_iso(value: datetime) -> str:
    return ensure_utc(value).isoformat()


def to_iso_or_none(value: datetime | None) -> str | None:
    return None if value is None else to_iso(value)
