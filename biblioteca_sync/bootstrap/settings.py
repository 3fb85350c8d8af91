from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from biblioteca_sync.core.errors import ConfigError
from biblioteca_sync.domain.sync_models import ConflictResolutionStrategy
from biblioteca_sync.infrastructure.local_config import SyncConfigStore

logger = logging.getLogger(__name__)

LOG_DIR_ENV = "BIBLIOTECA_SYNC_LOG_DIR"
URL_ENV = "BIBLIOTECA_SYNC_URL"
API_KEY_ENV = "BIBLIOTECA_SYNC_API_KEY"
BACKEND_ENV = "BIBLIOTECA_SYNC_BACKEND"
DB_ENV = "BIBLIOTECA_SYNC_DB"
INTERVAL_ENV = "BIBLIOTECA_SYNC_INTERVAL"

BACKEND_REST = "rest"
BACKEND_SHEETS = "sheets"
BACKENDS = (BACKEND_REST, BACKEND_SHEETS)

STRATEGY_TWO_WAY = "two_way"
STRATEGY_PUSH = "push"
STRATEGY_PULL = "pull"
STRATEGY_INCREMENTAL = "incremental"
STRATEGIES = (STRATEGY_TWO_WAY, STRATEGY_PUSH, STRATEGY_PULL, STRATEGY_INCREMENTAL)

DEFAULT_TABLES = (
    "categories",
    "books",
    "book_copies",
    "classes",
    "students",
    "staff",
    "borrowings",
    "group_borrowings",
    "fines",
    "fine_settings",
    "theft_reports",
)
DEFAULT_SYNC_INTERVAL_SECONDS = 30.0


def project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def resolve_log_dir() -> Path:
    candidates: list[Path] = []
    env_dir = os.environ.get(LOG_DIR_ENV)
    if env_dir:
        candidates.append(Path(env_dir))
    candidates.append(project_root() / "logs")
    candidates.append(Path(tempfile.gettempdir()) / "BibliotecaSync" / "logs")

    for candidate in candidates:
        try:
            candidate.mkdir(parents=True, exist_ok=True)
            test_file = candidate / "_write_test.tmp"
            test_file.write_text("ok", encoding="utf-8")
            test_file.unlink(missing_ok=True)
            return candidate
        except OSError:
            continue

    fallback = project_root()
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


@dataclass(frozen=True)
class RemoteSettings:
    url: str = ""
    api_key: str = ""
    spreadsheet_id: str = ""
    credentials_path: str = ""
    connect_timeout: float = 10.0
    read_timeout: float = 30.0
    page_size: int = 500

    def is_configured(self, backend: str) -> bool:
        if backend == BACKEND_SHEETS:
            return bool(self.spreadsheet_id and self.credentials_path)
        return bool(self.url and self.api_key)


@dataclass(frozen=True)
class SyncSettings:
    backend: str = BACKEND_REST
    remote: RemoteSettings = field(default_factory=RemoteSettings)
    db_path: Path | None = None
    log_dir: Path | None = None
    sync_interval_seconds: float = DEFAULT_SYNC_INTERVAL_SECONDS
    tables: tuple[str, ...] = DEFAULT_TABLES
    table_strategies: dict[str, str] = field(default_factory=dict)
    conflict_strategy: ConflictResolutionStrategy = ConflictResolutionStrategy.NEWEST_WINS
    device_id: str = ""
    audit_log: bool = True

    def strategy_for(self, table: str) -> str:
        return self.table_strategies.get(table, STRATEGY_TWO_WAY)


def _as_float(value: Any, name: str) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} debe ser numérico: {value!r}") from exc
    if parsed <= 0:
        raise ConfigError(f"{name} debe ser positivo: {value!r}")
    return parsed


def _as_tables(value: Any) -> tuple[str, ...]:
    if value in (None, ""):
        return DEFAULT_TABLES
    if isinstance(value, str):
        items = [item.strip() for item in value.split(",")]
    elif isinstance(value, (list, tuple)):
        items = [str(item).strip() for item in value]
    else:
        raise ConfigError(f"tables debe ser una lista: {value!r}")
    tables = tuple(item for item in items if item)
    return tables or DEFAULT_TABLES


def load_settings(
    config_store: SyncConfigStore | None = None,
    environ: Mapping[str, str] | None = None,
) -> SyncSettings:
    """Combina ``config.json`` con las variables de entorno (el entorno manda)."""
    env = os.environ if environ is None else environ
    store = config_store or SyncConfigStore()
    payload = store.load()

    backend = str(env.get(BACKEND_ENV) or payload.get("backend") or BACKEND_REST).strip().lower()
    if backend not in BACKENDS:
        raise ConfigError(f"Backend remoto desconocido: {backend!r}")

    remote = RemoteSettings(
        url=str(env.get(URL_ENV) or payload.get("remote_url") or "").strip(),
        api_key=str(env.get(API_KEY_ENV) or payload.get("api_key") or "").strip(),
        spreadsheet_id=str(payload.get("sheets_spreadsheet_id") or "").strip(),
        credentials_path=str(payload.get("path_credentials_json") or "").strip(),
        connect_timeout=_as_float(payload.get("connect_timeout", 10.0), "connect_timeout"),
        read_timeout=_as_float(payload.get("read_timeout", 30.0), "read_timeout"),
        page_size=int(_as_float(payload.get("page_size", 500), "page_size")),
    )

    db_raw = env.get(DB_ENV) or payload.get("db_path")
    interval_raw = env.get(INTERVAL_ENV) or payload.get("sync_interval_seconds", DEFAULT_SYNC_INTERVAL_SECONDS)

    table_strategies = payload.get("table_strategies") or {}
    if not isinstance(table_strategies, dict):
        raise ConfigError("table_strategies debe ser un objeto")
    unknown = {name for name in table_strategies.values() if name not in STRATEGIES}
    if unknown:
        raise ConfigError(f"Estrategias de sincronización desconocidas: {sorted(unknown)}")

    try:
        conflict_strategy = ConflictResolutionStrategy(
            payload.get("conflict_strategy", ConflictResolutionStrategy.NEWEST_WINS.value)
        )
    except ValueError as exc:
        raise ConfigError(f"Estrategia de conflicto desconocida: {payload.get('conflict_strategy')!r}") from exc

    settings = SyncSettings(
        backend=backend,
        remote=remote,
        db_path=Path(db_raw) if db_raw else None,
        log_dir=Path(env[LOG_DIR_ENV]) if env.get(LOG_DIR_ENV) else None,
        sync_interval_seconds=_as_float(interval_raw, "sync_interval_seconds"),
        tables=_as_tables(payload.get("tables")),
        table_strategies={str(table): str(name) for table, name in table_strategies.items()},
        conflict_strategy=conflict_strategy,
        device_id=str(payload["device_id"]),
        audit_log=bool(payload.get("audit_log", True)),
    )
    logger.debug("Configuración cargada: backend=%s tablas=%s", settings.backend, len(settings.tables))
    return settings
