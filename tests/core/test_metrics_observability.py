from __future__ import annotations

import logging

from biblioteca_sync.core import metrics as metrics_module
from biblioteca_sync.core.metrics import MetricsRegistry, measure_time
from biblioteca_sync.core.observability import OperationContext, get_correlation_id, log_event


def test_metrics_registry_counters_and_timings() -> None:
    registry = MetricsRegistry()

    registry.increment("sync.passes")
    registry.increment("sync.passes", 2)
    registry.record_time("sync.table.books_ms", 10.0)
    registry.record_time("sync.table.books_ms", 30.0)

    snapshot = registry.snapshot()
    assert registry.counter("sync.passes") == 3
    assert snapshot["counters"] == {"sync.passes": 3}
    assert snapshot["timings_ms"]["sync.table.books_ms"] == {"count": 2, "last": 30.0, "avg": 20.0, "max": 30.0}

    registry.reset()
    assert registry.snapshot() == {"counters": {}, "timings_ms": {}}


def test_measure_time_registra_aunque_falle(monkeypatch) -> None:
    registry = MetricsRegistry()
    monkeypatch.setattr(metrics_module, "metrics_registry", registry)

    @measure_time("op_ms")
    def boom() -> None:
        raise RuntimeError("x")

    try:
        boom()
    except RuntimeError:
        pass

    assert registry.snapshot()["timings_ms"]["op_ms"]["count"] == 1


def test_operation_context_reutiliza_correlation_id_anidado() -> None:
    assert get_correlation_id() is None

    with OperationContext("outer") as outer:
        with OperationContext("inner") as inner:
            assert inner.correlation_id == outer.correlation_id
            assert get_correlation_id() == outer.correlation_id

    assert get_correlation_id() is None


def test_log_event_incluye_correlation_id(caplog) -> None:
    logger = logging.getLogger("tests.observability")
    with caplog.at_level(logging.INFO, logger="tests.observability"):
        with OperationContext("sync") as context:
            event = log_event(logger, "sync_table_finished", {"table_name": "books"})

    assert event["correlation_id"] == context.correlation_id
    assert event["payload"] == {"table_name": "books"}
    assert caplog.records[-1].correlation_id == context.correlation_id
