from __future__ import annotations

import pytest

from biblioteca_sync.application.conflict_resolver import (
    DefaultConflictResolver,
    FieldLevelConflictResolver,
    TimestampConflictResolver,
    merge_records,
)
from biblioteca_sync.core.errors import ConflictError
from biblioteca_sync.domain.sync_models import ConflictResolutionStrategy, SyncConflict, SyncMetadata
from tests.fakes import T0, at


def _conflict(local: dict, remote: dict, *, local_minutes: int, remote_minutes: int) -> SyncConflict:
    return SyncConflict(
        local=local,
        remote=remote,
        local_metadata=SyncMetadata("b1", T0, at(local_minutes), version=2),
        remote_metadata=SyncMetadata("b1", T0, at(remote_minutes), version=2),
    )


LOCAL = {"id": "b1", "title": "Local", "tags": ["a"], "extra": {"shelf": "A1"}}
REMOTE = {"id": "b1", "title": "Remoto", "tags": ["b", "a"], "extra": {"floor": 2}, "isbn": "123"}


@pytest.mark.parametrize(
    ("strategy", "local_minutes", "remote_minutes", "expected"),
    [
        (ConflictResolutionStrategy.LOCAL_WINS, 1, 9, LOCAL),
        (ConflictResolutionStrategy.REMOTE_WINS, 9, 1, REMOTE),
        (ConflictResolutionStrategy.NEWEST_WINS, 9, 1, LOCAL),
        (ConflictResolutionStrategy.NEWEST_WINS, 1, 9, REMOTE),
        (ConflictResolutionStrategy.NEWEST_WINS, 5, 5, REMOTE),
    ],
)
def test_default_resolver_estrategias_simples(strategy, local_minutes, remote_minutes, expected) -> None:
    conflict = _conflict(LOCAL, REMOTE, local_minutes=local_minutes, remote_minutes=remote_minutes)

    assert DefaultConflictResolver().resolve(conflict, strategy) == expected


def test_default_resolver_no_muta_entradas() -> None:
    local = {"id": "b1", "tags": ["a"]}
    conflict = _conflict(local, {"id": "b1", "tags": ["b"]}, local_minutes=2, remote_minutes=1)

    resolved = DefaultConflictResolver().resolve(conflict, ConflictResolutionStrategy.LOCAL_WINS)
    resolved["tags"].append("z")

    assert local == {"id": "b1", "tags": ["a"]}


def test_merge_combina_campos_listas_y_objetos() -> None:
    conflict = _conflict(LOCAL, REMOTE, local_minutes=9, remote_minutes=1)

    merged = DefaultConflictResolver().resolve(conflict, ConflictResolutionStrategy.MERGE)

    assert merged == {
        "id": "b1",
        "title": "Local",
        "tags": ["a", "b"],
        "extra": {"shelf": "A1", "floor": 2},
        "isbn": "123",
    }


@pytest.mark.parametrize(("local_minutes", "remote_minutes"), [(9, 1), (1, 9)])
def test_merge_de_campos_disjuntos_es_la_union(local_minutes, remote_minutes) -> None:
    local = {"id": "b1", "title": "Local", "tags": ["a"]}
    remote = {"id": "b1", "isbn": "123", "extra": {"floor": 2}}
    conflict = _conflict(local, remote, local_minutes=local_minutes, remote_minutes=remote_minutes)

    merged = DefaultConflictResolver().resolve(conflict, ConflictResolutionStrategy.MERGE)

    assert merged == {**local, **remote}


def test_merge_escalar_decide_el_mas_reciente() -> None:
    merged = merge_records({"title": "Local", "year": None}, {"title": "Remoto", "year": 1999}, prefer_local=False)

    assert merged == {"title": "Remoto", "year": 1999}


def test_manual_lanza_conflict_error() -> None:
    conflict = _conflict(LOCAL, REMOTE, local_minutes=1, remote_minutes=2)

    with pytest.raises(ConflictError):
        DefaultConflictResolver().resolve(conflict, ConflictResolutionStrategy.MANUAL)


def test_timestamp_resolver_ignora_estrategia() -> None:
    conflict = _conflict(LOCAL, REMOTE, local_minutes=9, remote_minutes=1)

    assert TimestampConflictResolver().resolve(conflict, ConflictResolutionStrategy.REMOTE_WINS) == LOCAL


def test_field_level_resolver_estrategia_por_campo() -> None:
    resolver = FieldLevelConflictResolver({"title": ConflictResolutionStrategy.LOCAL_WINS})
    conflict = _conflict(
        {"id": "b1", "title": "Local", "status": "borrowed"},
        {"id": "b1", "title": "Remoto", "status": "available"},
        local_minutes=1,
        remote_minutes=9,
    )

    resolved = resolver.resolve(conflict, ConflictResolutionStrategy.NEWEST_WINS)

    assert resolved == {"id": "b1", "title": "Local", "status": "available"}


def test_field_level_resolver_manual_por_campo() -> None:
    resolver = FieldLevelConflictResolver({"status": ConflictResolutionStrategy.MANUAL})
    conflict = _conflict({"id": "b1", "status": "a"}, {"id": "b1", "status": "b"}, local_minutes=1, remote_minutes=2)

    with pytest.raises(ConflictError):
        resolver.resolve(conflict, ConflictResolutionStrategy.NEWEST_WINS)
