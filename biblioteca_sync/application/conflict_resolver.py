from __future__ import annotations

import copy
import json
from typing import Any, Mapping

from biblioteca_sync.core.errors import ConflictError, InvalidDataError
from biblioteca_sync.domain.ports import ConflictResolver
from biblioteca_sync.domain.sync_models import (
    ConflictResolutionStrategy,
    Record,
    SyncConflict,
)


def local_is_newer(conflict: SyncConflict) -> bool:
    """Empates a favor del remoto."""
    return conflict.local_metadata.updated_at > conflict.remote_metadata.updated_at


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)


def _merge_lists(local: list[Any], remote: list[Any]) -> list[Any]:
    seen: set[str] = set()
    merged: list[Any] = []
    for item in [*local, *remote]:
        key = _canonical(item)
        if key in seen:
            continue
        seen.add(key)
        merged.append(copy.deepcopy(item))
    return merged


def merge_values(local: Any, remote: Any, *, prefer_local: bool) -> Any:
    if local == remote:
        return copy.deepcopy(local)
    if local is None:
        return copy.deepcopy(remote)
    if remote is None:
        return copy.deepcopy(local)
    if isinstance(local, list) and isinstance(remote, list):
        return _merge_lists(local, remote)
    if isinstance(local, dict) and isinstance(remote, dict):
        return merge_records(local, remote, prefer_local=prefer_local)
    return copy.deepcopy(local if prefer_local else remote)


def merge_records(local: Mapping[str, Any], remote: Mapping[str, Any], *, prefer_local: bool) -> Record:
    """Fusión recursiva campo a campo.

    Claves presentes solo en un lado (o nulas en el otro) toman el valor
    existente; listas se concatenan sin duplicados; objetos se fusionan
    recursivamente; el resto de escalares distintos decide el más reciente.
    """
    merged: Record = {}
    for key in [*local.keys(), *(key for key in remote.keys() if key not in local)]:
        if key not in remote:
            merged[key] = copy.deepcopy(local[key])
        elif key not in local:
            merged[key] = copy.deepcopy(remote[key])
        else:
            merged[key] = merge_values(local[key], remote[key], prefer_local=prefer_local)
    return merged


def _require_records(conflict: SyncConflict) -> None:
    if not isinstance(conflict.local, dict) or not isinstance(conflict.remote, dict):
        raise InvalidDataError(
            f"No se puede fusionar el registro {conflict.record_id}: ambos lados deben ser objetos"
        )


class DefaultConflictResolver(ConflictResolver):
    def resolve(self, conflict: SyncConflict, strategy: ConflictResolutionStrategy) -> Record:
        if strategy is ConflictResolutionStrategy.LOCAL_WINS:
            return copy.deepcopy(conflict.local)
        if strategy is ConflictResolutionStrategy.REMOTE_WINS:
            return copy.deepcopy(conflict.remote)
        if strategy is ConflictResolutionStrategy.NEWEST_WINS:
            return copy.deepcopy(conflict.local if local_is_newer(conflict) else conflict.remote)
        if strategy is ConflictResolutionStrategy.MERGE:
            _require_records(conflict)
            return merge_records(conflict.local, conflict.remote, prefer_local=local_is_newer(conflict))
        if strategy is ConflictResolutionStrategy.MANUAL:
            raise ConflictError(f"El registro {conflict.record_id} requiere resolución manual")
        raise InvalidDataError(f"Estrategia de conflicto desconocida: {strategy!r}")


class TimestampConflictResolver(ConflictResolver):
    """Last-writer-wins puro: ignora la estrategia solicitada."""

    def resolve(self, conflict: SyncConflict, strategy: ConflictResolutionStrategy) -> Record:
        return copy.deepcopy(conflict.local if local_is_newer(conflict) else conflict.remote)


class FieldLevelConflictResolver(ConflictResolver):
    def __init__(self, field_strategies: Mapping[str, ConflictResolutionStrategy] | None = None) -> None:
        self._field_strategies = dict(field_strategies or {})

    def resolve(self, conflict: SyncConflict, strategy: ConflictResolutionStrategy) -> Record:
        _require_records(conflict)
        prefer_local = local_is_newer(conflict)
        local, remote = conflict.local, conflict.remote
        resolved: Record = {}
        for key in [*local.keys(), *(key for key in remote.keys() if key not in local)]:
            if key not in remote:
                resolved[key] = copy.deepcopy(local[key])
                continue
            if key not in local:
                resolved[key] = copy.deepcopy(remote[key])
                continue
            resolved[key] = self._resolve_field(
                key,
                local[key],
                remote[key],
                self._field_strategies.get(key, strategy),
                prefer_local=prefer_local,
                record_id=conflict.record_id,
            )
        return resolved

    @staticmethod
    def _resolve_field(
        key: str,
        local_value: Any,
        remote_value: Any,
        strategy: ConflictResolutionStrategy,
        *,
        prefer_local: bool,
        record_id: str,
    ) -> Any:
        if local_value == remote_value:
            return copy.deepcopy(local_value)
        if strategy is ConflictResolutionStrategy.LOCAL_WINS:
            return copy.deepcopy(local_value)
        if strategy is ConflictResolutionStrategy.REMOTE_WINS:
            return copy.deepcopy(remote_value)
        if strategy is ConflictResolutionStrategy.NEWEST_WINS:
            return copy.deepcopy(local_value if prefer_local else remote_value)
        if strategy is ConflictResolutionStrategy.MERGE:
            return merge_values(local_value, remote_value, prefer_local=prefer_local)
        if strategy is ConflictResolutionStrategy.MANUAL:
            raise ConflictError(f"El campo {key} del registro {record_id} requiere resolución manual")
        raise InvalidDataError(f"Estrategia de conflicto desconocida: {strategy!r}")
