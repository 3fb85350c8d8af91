from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import gspread
from gspread.utils import rowcol_to_a1

from biblioteca_sync.core.errors import InvalidDataError, SyncError
from biblioteca_sync.domain.ports import RemoteDataSource
from biblioteca_sync.domain.sync_models import METADATA_COLUMNS, Record, SyncMetadata, SyncOperation
from biblioteca_sync.domain.time_utils import utc_now
from biblioteca_sync.infrastructure.sheets_client import SheetsClient

logger = logging.getLogger(__name__)


def to_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    return value


def from_cell(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    text = value.strip()
    if text == "":
        return None
    if text[0] in "[{":
        try:
            return json.loads(text)
        except ValueError:
            return value
    return value


def build_record(headers: list[str], row: list[Any]) -> Record:
    padded = list(row) + [""] * (len(headers) - len(row))
    return {header: from_cell(padded[index]) for index, header in enumerate(headers) if header}


class SheetsRemoteDataSource(RemoteDataSource):
    """Origen remoto sobre Google Sheets: una hoja por tabla y cabecera en la fila 1.

    Los borrados se guardan como tombstone (``deleted_at``) en la propia fila
    para que el resto de réplicas los reciban al leer cambios.
    """

    def __init__(
        self,
        client: SheetsClient,
        credentials_path: Path,
        spreadsheet_id: str,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._credentials_path = credentials_path
        self._spreadsheet_id = spreadsheet_id
        self._clock = clock

    def fetch_changes(
        self,
        table: str,
        since: datetime | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[tuple[Record, SyncMetadata]]:
        self._ensure_open()
        if not offset:
            self._client.invalidate_cache(table)
        try:
            values = self._client.read_all_values(table)
        except gspread.exceptions.WorksheetNotFound:
            logger.info("La hoja %s no existe todavía en Google Sheets", table)
            return []
        if not values:
            return []

        headers = [str(header).strip() for header in values[0]]
        now = self._clock()
        changes: list[tuple[Record, SyncMetadata]] = []
        for row in values[1:]:
            record = build_record(headers, row)
            try:
                metadata = SyncMetadata.from_record(record, now)
            except InvalidDataError:
                logger.warning("Ignorada fila sin id en la hoja %s", table)
                continue
            if since is not None and metadata.updated_at < since:
                continue
            changes.append((record, metadata))
        changes.sort(key=lambda item: item[1].updated_at)
        start = offset or 0
        end = start + limit if limit is not None else None
        return changes[start:end]

    def push_changes(self, table: str, operations: list[SyncOperation]) -> list[SyncMetadata]:
        if not operations:
            return []
        self._ensure_open()
        wires = [operation.wire_record() for operation in operations]
        required_headers = list(METADATA_COLUMNS)
        for wire in wires:
            required_headers.extend(key for key in wire if key not in required_headers)

        self._client.ensure_worksheet(table, required_headers)
        self._client.invalidate_cache(table)
        values = self._client.read_all_values(table)
        headers = [str(header).strip() for header in values[0]] if values else []
        missing = [header for header in required_headers if header not in headers]
        if missing:
            headers = headers + missing
            self._client.batch_update(
                table,
                [{"range": f"A1:{rowcol_to_a1(1, len(headers))}", "values": [headers]}],
            )

        row_numbers: dict[str, int] = {}
        existing: dict[str, Record] = {}
        for index, row in enumerate(values[1:], start=2):
            record = build_record(headers, row)
            record_id = record.get("id")
            if record_id not in (None, ""):
                row_numbers[str(record_id)] = index
                existing[str(record_id)] = record

        updates: dict[int, Record] = {}
        appended: dict[str, Record] = {}
        for operation, wire in zip(operations, wires):
            record_id = operation.record_id
            if record_id in row_numbers:
                row_number = row_numbers[record_id]
                merged = {**updates.get(row_number, existing[record_id]), **wire}
                updates[row_number] = merged
            else:
                appended[record_id] = {**appended.get(record_id, {}), **wire}

        self._client.batch_update(
            table,
            [
                {
                    "range": f"{rowcol_to_a1(row_number, 1)}:{rowcol_to_a1(row_number, len(headers))}",
                    "values": [[to_cell(record.get(header)) for header in headers]],
                }
                for row_number, record in sorted(updates.items())
            ],
        )
        self._client.append_rows(
            table,
            [[to_cell(record.get(header)) for header in headers] for record in appended.values()],
        )
        logger.debug("push_changes %s: %s actualizadas, %s nuevas", table, len(updates), len(appended))
        return [operation.metadata for operation in operations]

    def check_connectivity(self) -> bool:
        try:
            self._ensure_open()
            self._client.list_worksheet_titles()
        except (SyncError, gspread.exceptions.GSpreadException, OSError) as exc:
            logger.info("Google Sheets no alcanzable: %s", exc)
            return False
        return True

    def _ensure_open(self) -> None:
        if not self._client.is_open:
            self._client.open_spreadsheet(self._credentials_path, self._spreadsheet_id)
