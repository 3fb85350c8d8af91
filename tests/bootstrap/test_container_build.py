from __future__ import annotations

import pytest

from biblioteca_sync.application.strategies import IncrementalSyncStrategy, OneWaySyncStrategy, TwoWaySyncStrategy
from biblioteca_sync.bootstrap.container import AUDIT_LOG_NAME, build_container, build_remote, build_strategy
from biblioteca_sync.bootstrap.settings import RemoteSettings, SyncSettings
from biblioteca_sync.core.errors import ConfigError
from biblioteca_sync.domain.sync_models import ConflictResolutionStrategy, SyncDirection
from biblioteca_sync.infrastructure.db import get_connection
from biblioteca_sync.infrastructure.rest_remote import RestRemoteDataSource
from biblioteca_sync.infrastructure.sheets_remote import SheetsRemoteDataSource
from tests.fakes import FakeRemote, at, book_row, remote_row


def test_build_container_conecta_el_motor(tmp_path) -> None:
    settings = SyncSettings(
        log_dir=tmp_path / "logs",
        tables=("books", "fines"),
        table_strategies={"fines": "pull"},
    )
    remote = FakeRemote()
    remote.seed("books", remote_row("b1", at(1), title="Dune"))

    container = build_container(settings, lambda: get_connection(tmp_path / "biblioteca.sqlite3"), remote=remote)
    try:
        summaries = container.engine.sync_all_tables()

        assert container.engine.registered_tables() == ["books", "fines"]
        assert [summary.table_name for summary in summaries] == ["books", "fines"]
        assert book_row(container.connection, "b1")["title"] == "Dune"
        assert (tmp_path / "logs" / AUDIT_LOG_NAME).exists()
    finally:
        container.connection.close()


def test_build_strategy_por_nombre() -> None:
    settings = SyncSettings(
        remote=RemoteSettings(page_size=50),
        conflict_strategy=ConflictResolutionStrategy.LOCAL_WINS,
    )

    two_way = build_strategy("two_way", settings)
    push = build_strategy("push", settings)
    pull = build_strategy("pull", settings)
    incremental = build_strategy("incremental", settings)

    assert isinstance(two_way, TwoWaySyncStrategy)
    assert two_way.conflict_strategy is ConflictResolutionStrategy.LOCAL_WINS
    assert two_way.batch_size == 50
    assert isinstance(push, OneWaySyncStrategy) and push.direction is SyncDirection.LOCAL_TO_REMOTE
    assert isinstance(pull, OneWaySyncStrategy) and pull.direction is SyncDirection.REMOTE_TO_LOCAL
    assert isinstance(incremental, IncrementalSyncStrategy)
    with pytest.raises(ConfigError):
        build_strategy("bidirectional", settings)


def test_build_remote_segun_backend() -> None:
    rest = build_remote(SyncSettings(remote=RemoteSettings(url="https://x.example", api_key="k")))
    sheets = build_remote(
        SyncSettings(backend="sheets", remote=RemoteSettings(spreadsheet_id="abc", credentials_path="/tmp/c.json"))
    )

    assert isinstance(rest, RestRemoteDataSource)
    assert isinstance(sheets, SheetsRemoteDataSource)
    with pytest.raises(ConfigError):
        build_remote(SyncSettings())
