from __future__ import annotations

import pytest

from biblioteca_sync.core.errors import NetworkError, SyncCancelledError
from biblioteca_sync.core.retry import (
    CancellationToken,
    RetryPolicy,
    raise_if_cancelled,
    run_with_retries,
    sleep_with_cancellation,
)


def test_backoff_exponencial() -> None:
    policy = RetryPolicy(max_attempts=4, initial_backoff_seconds=0.5, backoff_multiplier=2.0)

    assert [policy.backoff_for(attempt) for attempt in (1, 2, 3)] == [0.5, 1.0, 2.0]


def test_run_with_retries_reintenta_transitorios_hasta_exito() -> None:
    calls = {"count": 0}
    sleeps: list[float] = []

    def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise NetworkError("sin red")
        return "ok"

    result = run_with_retries(
        "flaky",
        flaky,
        policy=RetryPolicy(max_attempts=3, initial_backoff_seconds=0.1),
        sleeper=sleeps.append,
    )

    assert result == "ok"
    assert calls["count"] == 3
    assert sum(sleeps) == pytest.approx(0.1 + 0.2)


def test_run_with_retries_propaga_tras_agotar_intentos() -> None:
    calls = {"count": 0}

    def always_fails() -> None:
        calls["count"] += 1
        raise NetworkError("sin red")

    with pytest.raises(NetworkError):
        run_with_retries("falla", always_fails, policy=RetryPolicy(max_attempts=2), sleeper=lambda _: None)

    assert calls["count"] == 2


def test_run_with_retries_no_reintenta_errores_no_transitorios() -> None:
    calls = {"count": 0}

    def invalid() -> None:
        calls["count"] += 1
        raise ValueError("dato")

    with pytest.raises(ValueError):
        run_with_retries("invalid", invalid, policy=RetryPolicy(max_attempts=5), sleeper=lambda _: None)

    assert calls["count"] == 1


def test_cancelacion_corta_el_backoff() -> None:
    token = CancellationToken()

    def cancel_on_sleep(_: float) -> None:
        token.cancel()

    def always_fails() -> None:
        raise NetworkError("sin red")

    with pytest.raises(SyncCancelledError):
        run_with_retries(
            "cancelable",
            always_fails,
            policy=RetryPolicy(max_attempts=5, initial_backoff_seconds=1.0),
            sleeper=cancel_on_sleep,
            cancellation_token=token,
        )


def test_sleep_with_cancellation_duerme_en_pasos() -> None:
    steps: list[float] = []

    sleep_with_cancellation(0.25, None, steps.append)

    assert sum(steps) == pytest.approx(0.25)
    assert max(steps) <= 0.1 + 1e-9


def test_token_reset_y_raise_if_cancelled() -> None:
    token = CancellationToken()
    raise_if_cancelled(token)
    raise_if_cancelled(None)

    token.cancel()
    assert token.is_cancelled()
    with pytest.raises(SyncCancelledError):
        raise_if_cancelled(token)

    token.reset()
    assert not token.is_cancelled()
