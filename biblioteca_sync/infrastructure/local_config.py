from __future__ import annotations

import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

APP_DIR_NAME = "BibliotecaSync"


def resolve_appdata_dir() -> Path:
    env_dir = os.environ.get("LOCALAPPDATA")
    if env_dir:
        base_dir = Path(env_dir)
    else:
        base_dir = Path.home() / ".local" / "share"
    return base_dir / APP_DIR_NAME


class SyncConfigStore:
    """``config.json`` en el directorio de datos de la aplicación.

    Siempre garantiza un ``device_id`` estable para esta réplica.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        self._base_dir = base_dir or resolve_appdata_dir()
        self._config_path = self._base_dir / "config.json"
        self._credentials_path = self._base_dir / "secrets" / "credentials.json"

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self._config_path.exists():
            try:
                loaded = json.loads(self._config_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.exception("No se pudo leer config.json: %s", exc)
                loaded = {}
            if isinstance(loaded, dict):
                payload = loaded
            else:
                logger.warning("config.json no contiene un objeto; se ignora")
        device_id = str(payload.get("device_id", "")).strip()
        if not device_id:
            payload["device_id"] = self._generate_device_id()
            try:
                self._write_payload(payload)
            except OSError as exc:
                logger.warning("No se pudo guardar el device_id generado: %s", exc)
        return payload

    def save(self, values: dict[str, Any]) -> dict[str, Any]:
        payload = {**self.load(), **values}
        if not str(payload.get("device_id", "")).strip():
            payload["device_id"] = self._generate_device_id()
        self._write_payload(payload)
        return payload

    def device_id(self) -> str:
        return str(self.load()["device_id"])

    def credentials_path(self) -> Path:
        return self._credentials_path

    def _write_payload(self, payload: dict[str, Any]) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        self._config_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    @staticmethod
    def _generate_device_id() -> str:
        return str(uuid.uuid4())
