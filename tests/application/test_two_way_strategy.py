from __future__ import annotations

import pytest

from biblioteca_sync.application.conflict_resolver import DefaultConflictResolver
from biblioteca_sync.application.strategies import TwoWaySyncStrategy
from biblioteca_sync.core.errors import NetworkError, StorageError, SyncCancelledError
from biblioteca_sync.core.retry import CancellationToken
from biblioteca_sync.domain.sync_models import ConflictResolutionStrategy, OperationType
from biblioteca_sync.domain.time_utils import to_iso
from tests.fakes import at, book_row, edit_book, insert_book, remote_row


@pytest.fixture
def run_pass(fake_remote, store, conflict_log):
    def _run(strategy: TwoWaySyncStrategy, **kwargs):
        return strategy.sync_table(
            "books", fake_remote, store, DefaultConflictResolver(), conflict_log=conflict_log, **kwargs
        )

    return _run


@pytest.fixture
def synced_book(fake_remote, store, run_pass, clock):
    """b1 descargado y confirmado en versión 1 (updated_at = at(1))."""
    fake_remote.seed("books", remote_row("b1", at(1), title="Original"))
    run_pass(TwoWaySyncStrategy(clock=clock))
    return "b1"


def _conflicting_edits(connection, store, fake_remote, *, local_minutes: int, remote_minutes: int) -> None:
    edit_book(connection, "b1", "Local", at(local_minutes))
    store.mark_local_change("books", "b1", OperationType.UPDATE)
    fake_remote.seed("books", remote_row("b1", at(remote_minutes), version=2, title="Remoto"))


def test_pull_inicial_aplica_y_avanza_marca_de_agua(fake_remote, store, connection, run_pass, clock) -> None:
    fake_remote.seed("books", remote_row("b1", at(1), title="Dune"), remote_row("b2", at(2), title="Emma"))

    summary = run_pass(TwoWaySyncStrategy(clock=clock))

    assert summary.remote_changes == 2
    assert summary.local_changes == 0
    assert not summary.has_errors
    assert book_row(connection, "b1")["title"] == "Dune"
    assert store.get_last_sync_time("books") == at(2)
    assert not store.get_sync_state("books", ["b2"])["b2"].is_dirty


def test_segunda_pasada_es_idempotente(fake_remote, store, run_pass, synced_book, clock) -> None:
    summary = run_pass(TwoWaySyncStrategy(clock=clock))

    assert summary.remote_changes == 0
    assert summary.local_changes == 0
    assert fake_remote.pushed == []
    assert store.get_last_sync_time("books") == at(1)


def test_fila_local_nueva_se_envia_una_sola_vez(fake_remote, store, connection, run_pass, clock) -> None:
    insert_book(connection, "b9", "Solo local", at(5))

    first = run_pass(TwoWaySyncStrategy(clock=clock))
    second = run_pass(TwoWaySyncStrategy(clock=clock))

    assert first.local_changes == 1
    assert second.local_changes == 0
    assert second.remote_changes == 0
    assert len(fake_remote.pushed) == 1
    assert fake_remote.row("books", "b9")["title"] == "Solo local"
    assert store.get_last_sync_time("books") == at(5)


def test_newest_wins_local_mas_reciente_se_envia(fake_remote, store, connection, run_pass, synced_book, clock) -> None:
    _conflicting_edits(connection, store, fake_remote, local_minutes=10, remote_minutes=5)

    summary = run_pass(TwoWaySyncStrategy(ConflictResolutionStrategy.NEWEST_WINS, clock=clock))

    assert summary.conflicts == 1
    assert summary.resolved == 1
    assert summary.local_changes == 1
    assert fake_remote.row("books", "b1")["title"] == "Local"
    assert book_row(connection, "b1")["title"] == "Local"
    assert not store.get_sync_state("books", ["b1"])["b1"].is_dirty
    assert store.get_last_sync_time("books") == at(10)


def test_newest_wins_remoto_mas_reciente_se_aplica(fake_remote, store, connection, run_pass, synced_book, clock) -> None:
    _conflicting_edits(connection, store, fake_remote, local_minutes=5, remote_minutes=10)

    summary = run_pass(TwoWaySyncStrategy(ConflictResolutionStrategy.NEWEST_WINS, clock=clock))

    assert summary.conflicts == 1
    assert summary.remote_changes == 1
    assert summary.local_changes == 0
    assert fake_remote.pushed == []
    assert book_row(connection, "b1")["title"] == "Remoto"
    assert not store.get_sync_state("books", ["b1"])["b1"].is_dirty


def test_local_wins_aunque_el_remoto_sea_mas_reciente(fake_remote, connection, store, run_pass, synced_book, clock) -> None:
    _conflicting_edits(connection, store, fake_remote, local_minutes=5, remote_minutes=10)

    run_pass(TwoWaySyncStrategy(ConflictResolutionStrategy.LOCAL_WINS, clock=clock))

    assert fake_remote.row("books", "b1")["title"] == "Local"
    assert fake_remote.row("books", "b1")["updated_at"] == to_iso(clock())
    assert fake_remote.row("books", "b1")["version"] == 3
    assert book_row(connection, "b1")["title"] == "Local"


def test_remote_wins_aunque_el_local_sea_mas_reciente(fake_remote, connection, store, run_pass, synced_book, clock) -> None:
    _conflicting_edits(connection, store, fake_remote, local_minutes=10, remote_minutes=5)

    run_pass(TwoWaySyncStrategy(ConflictResolutionStrategy.REMOTE_WINS, clock=clock))

    assert fake_remote.pushed == []
    assert book_row(connection, "b1")["title"] == "Remoto"


def test_merge_guarda_y_envia_la_fusion(fake_remote, connection, store, run_pass, synced_book, clock) -> None:
    edit_book(connection, "b1", "Local", at(10))
    store.mark_local_change("books", "b1", OperationType.UPDATE)
    fake_remote.seed("books", remote_row("b1", at(5), version=2, title="Original", author="Herbert"))

    summary = run_pass(TwoWaySyncStrategy(ConflictResolutionStrategy.MERGE, clock=clock))

    assert summary.resolved == 1
    local_row = book_row(connection, "b1")
    assert (local_row["title"], local_row["author"]) == ("Local", "Herbert")
    pushed = fake_remote.row("books", "b1")
    assert (pushed["title"], pushed["author"]) == ("Local", "Herbert")
    assert pushed["version"] == 3
    assert not store.get_sync_state("books", ["b1"])["b1"].is_dirty


def test_manual_registra_conflicto_y_retiene_el_registro(
    fake_remote, connection, store, conflict_log, run_pass, synced_book, clock
) -> None:
    _conflicting_edits(connection, store, fake_remote, local_minutes=5, remote_minutes=10)
    strategy = TwoWaySyncStrategy(ConflictResolutionStrategy.MANUAL, clock=clock)

    first = run_pass(strategy)
    second = run_pass(strategy)

    assert first.conflicts == 1
    assert first.resolved == 0
    assert second.conflicts == 0
    assert conflict_log.count_open() == 1
    assert fake_remote.pushed == []
    assert fake_remote.row("books", "b1")["title"] == "Remoto"
    assert book_row(connection, "b1")["title"] == "Local"
    assert store.get_sync_state("books", ["b1"])["b1"].is_dirty


def test_borrado_remoto_gana_a_edicion_local_antigua(fake_remote, connection, store, run_pass, synced_book, clock) -> None:
    edit_book(connection, "b1", "Local", at(5))
    store.mark_local_change("books", "b1", OperationType.UPDATE)
    tombstone = remote_row("b1", at(10), version=2, title="Original")
    tombstone["deleted_at"] = tombstone["updated_at"]
    fake_remote.seed("books", tombstone)

    run_pass(TwoWaySyncStrategy(clock=clock))

    assert book_row(connection, "b1")["deleted_at"] is not None
    state = store.get_sync_state("books", ["b1"])["b1"]
    assert state.is_deleted
    assert not state.is_dirty


def test_sub_lote_fallido_retiene_la_marca_de_agua(fake_remote, store, connection, conflict_log, clock, monkeypatch) -> None:
    fake_remote.seed(
        "books",
        remote_row("b1", at(1), title="Uno"),
        remote_row("b2", at(2), title="Dos"),
        remote_row("b3", at(3), title="Tres"),
    )
    original_apply = store.apply_changes

    def flaky_apply(table, operations):
        if any(operation.record_id == "b2" for operation in operations):
            raise StorageError("disco lleno")
        return original_apply(table, operations)

    monkeypatch.setattr(store, "apply_changes", flaky_apply)

    summary = TwoWaySyncStrategy(batch_size=1, clock=clock).sync_table(
        "books", fake_remote, store, DefaultConflictResolver(), conflict_log=conflict_log
    )

    assert summary.has_errors
    assert summary.remote_changes == 2
    assert book_row(connection, "b3")["title"] == "Tres"
    assert book_row(connection, "b2") is None
    assert store.get_last_sync_time("books") == at(1)


def test_marca_de_agua_nunca_retrocede(fake_remote, store, run_pass, clock) -> None:
    store.set_last_sync_time("books", at(30))
    fake_remote.seed("books", remote_row("b1", at(1), title="Antiguo"))

    run_pass(TwoWaySyncStrategy(clock=clock))

    assert store.get_last_sync_time("books") == at(30)


def test_cambio_remoto_durante_la_pasada_aplaza_el_envio(fake_remote, store, connection, run_pass, clock) -> None:
    insert_book(connection, "b1", "Local", at(5))
    original_fetch = fake_remote.fetch_changes
    calls = {"count": 0}

    def racing_fetch(table, since=None, limit=None, offset=None):
        calls["count"] += 1
        if calls["count"] == 2:
            fake_remote.seed("books", remote_row("b1", at(6), version=2, title="Carrera"))
        return original_fetch(table, since, limit, offset)

    fake_remote.fetch_changes = racing_fetch

    summary = run_pass(TwoWaySyncStrategy(clock=clock))

    assert summary.conflicts == 1
    assert fake_remote.pushed == []
    assert fake_remote.row("books", "b1")["title"] == "Carrera"
    assert store.get_last_sync_time("books") is None


def test_pasada_cancelada_no_toca_la_marca_de_agua(fake_remote, store, run_pass, clock) -> None:
    fake_remote.seed("books", remote_row("b1", at(1), title="Dune"))
    token = CancellationToken()
    token.cancel()

    with pytest.raises(SyncCancelledError):
        run_pass(TwoWaySyncStrategy(clock=clock), cancellation_token=token)

    assert store.get_last_sync_time("books") is None


def test_envio_cortado_deja_pendiente_la_fila_nueva(fake_remote, store, connection, run_pass, clock) -> None:
    insert_book(connection, "b9", "Solo local", at(5))
    fake_remote.seed("books", remote_row("b1", at(10), title="Remoto"))
    fake_remote.push_error = NetworkError("corte")

    first = run_pass(TwoWaySyncStrategy(clock=clock))

    assert first.has_errors
    assert store.get_last_sync_time("books") == at(10)
    assert store.get_sync_state("books", ["b9"])["b9"].is_dirty

    fake_remote.push_error = None
    second = run_pass(TwoWaySyncStrategy(clock=clock))

    assert second.local_changes == 1
    assert fake_remote.row("books", "b9")["title"] == "Solo local"
    assert not store.get_sync_state("books", ["b9"])["b9"].is_dirty


def test_fila_nueva_aplazada_por_carrera_se_envia_despues(fake_remote, store, connection, run_pass, clock) -> None:
    insert_book(connection, "b9", "Solo local", at(5))
    fake_remote.seed("books", remote_row("b1", at(10), title="Remoto"))
    original_fetch = fake_remote.fetch_changes
    calls = {"count": 0}

    def racing_fetch(table, since=None, limit=None, offset=None):
        calls["count"] += 1
        if calls["count"] == 2:
            fake_remote.seed("books", remote_row("b9", at(12), version=2, title="Carrera"))
        return original_fetch(table, since, limit, offset)

    fake_remote.fetch_changes = racing_fetch
    strategy = TwoWaySyncStrategy(ConflictResolutionStrategy.LOCAL_WINS, clock=clock)

    first = run_pass(strategy)

    assert first.conflicts == 1
    assert fake_remote.pushed == []
    assert store.get_last_sync_time("books") == at(10)
    assert store.get_sync_state("books", ["b9"])["b9"].is_dirty

    run_pass(strategy)

    assert fake_remote.row("books", "b9")["title"] == "Solo local"


def test_cambio_en_carrera_fuera_de_la_primera_pagina_aplaza_el_envio(
    fake_remote, store, connection, run_pass, clock
) -> None:
    insert_book(connection, "b9", "Local", at(5))
    fake_remote.seed("books", *(remote_row(f"r{index}", at(index), title="Ruido") for index in range(1, 4)))
    original_fetch = fake_remote.fetch_changes
    calls = {"count": 0}

    def racing_fetch(table, since=None, limit=None, offset=None):
        calls["count"] += 1
        if calls["count"] == 3:
            fake_remote.seed(
                "books",
                remote_row("r4", at(20), title="Ruido"),
                remote_row("r5", at(21), title="Ruido"),
                remote_row("b9", at(22), version=2, title="Carrera"),
            )
        return original_fetch(table, since, limit, offset)

    fake_remote.fetch_changes = racing_fetch

    summary = run_pass(TwoWaySyncStrategy(batch_size=2, clock=clock))

    assert summary.conflicts == 1
    assert fake_remote.pushed == []
    assert fake_remote.row("books", "b9")["title"] == "Carrera"
    assert store.get_last_sync_time("books") == at(3)
