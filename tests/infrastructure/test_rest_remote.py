from __future__ import annotations

import json

import pytest
import requests

from biblioteca_sync.core.errors import NetworkError, RateLimitError, SerializationError, SyncTimeoutError
from biblioteca_sync.domain.sync_models import SyncMetadata, SyncOperation
from biblioteca_sync.infrastructure.rest_errors import error_for_response, is_rejection, parse_retry_after
from biblioteca_sync.infrastructure.rest_remote import RestRemoteDataSource
from tests.fakes import T0, at, remote_row


class _FakeResponse:
    def __init__(self, status_code: int = 200, body=None, *, headers=None, text: str | None = None) -> None:
        self.status_code = status_code
        self._body = body
        self.headers = headers or {}
        self.text = text if text is not None else ("" if body is None else json.dumps(body))
        self.content = self.text.encode("utf-8")
        self.reason = "Reason"

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("sin cuerpo JSON")
        return self._body


class _FakeSession:
    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.calls: list[dict] = []

    def _next(self):
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "headers": headers, "timeout": timeout, **kwargs})
        return self._next()

    def head(self, url, headers=None, timeout=None):
        self.calls.append({"method": "HEAD", "url": url, "headers": headers, "timeout": timeout})
        return self._next()


def _remote(session: _FakeSession, sleeps: list[float] | None = None, **kwargs) -> RestRemoteDataSource:
    return RestRemoteDataSource(
        "https://example.supabase.co/",
        "clave",
        session=session,
        sleeper=(sleeps if sleeps is not None else []).append,
        clock=lambda: at(60),
        **kwargs,
    )


def test_fetch_changes_construye_la_consulta_y_parsea(caplog) -> None:
    session = _FakeSession(
        _FakeResponse(200, [remote_row("b1", at(1), title="Dune"), "basura", {"title": "sin id"}])
    )

    changes = _remote(session).fetch_changes("books", since=at(1), limit=50, offset=100)

    call = session.calls[0]
    assert call["method"] == "GET"
    assert call["url"] == "https://example.supabase.co/rest/v1/books"
    assert ("updated_at", "gte.2025-01-01T10:01:00+00:00") in call["params"]
    assert ("order", "updated_at.asc") in call["params"]
    assert ("limit", "50") in call["params"]
    assert ("offset", "100") in call["params"]
    assert call["headers"]["apikey"] == "clave"
    assert call["headers"]["Authorization"] == "Bearer clave"
    assert call["timeout"] == (10.0, 30.0)
    assert [(record["title"], metadata.id) for record, metadata in changes] == [("Dune", "b1")]


def test_fetch_changes_respuesta_no_lista() -> None:
    with pytest.raises(SerializationError):
        _remote(_FakeSession(_FakeResponse(200, {"error": "x"}))).fetch_changes("books")


def test_rate_limit_reintenta_con_retry_after() -> None:
    sleeps: list[float] = []
    session = _FakeSession(
        _FakeResponse(429, text="slow down", headers={"Retry-After": "2"}),
        _FakeResponse(200, []),
    )

    assert _remote(session, sleeps).fetch_changes("books") == []
    assert sleeps == [2.0]


def test_rate_limit_persistente_lanza_rate_limit_error() -> None:
    sleeps: list[float] = []
    session = _FakeSession(_FakeResponse(429, text="x"), _FakeResponse(429, text="x"))

    with pytest.raises(RateLimitError):
        _remote(session, sleeps, max_rate_limit_retries=1).fetch_changes("books")

    assert sleeps == [1.0]


@pytest.mark.parametrize(
    ("failure", "expected"),
    [
        (requests.ConnectionError("dns"), NetworkError),
        (requests.Timeout("lento"), SyncTimeoutError),
        (_FakeResponse(503, text="caído"), NetworkError),
        (_FakeResponse(200, text="<html>"), SerializationError),
    ],
)
def test_errores_de_transporte_se_mapean(failure, expected) -> None:
    with pytest.raises(expected):
        _remote(_FakeSession(failure)).fetch_changes("books")


def test_push_upsert_usa_la_representacion_del_servidor() -> None:
    operation = SyncOperation.update({"title": "Dune"}, SyncMetadata("b1", T0, at(5), version=2))
    session = _FakeSession(_FakeResponse(201, [remote_row("b1", at(6), version=7, title="Dune")]))

    [accepted] = _remote(session).push_changes("books", [operation])

    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["params"] == [("on_conflict", "id")]
    assert call["headers"]["Prefer"] == "resolution=merge-duplicates,return=representation"
    assert call["json"][0]["title"] == "Dune"
    assert call["json"][0]["version"] == 2
    assert (accepted.version, accepted.updated_at) == (7, at(6))


def test_push_delete_y_rechazos() -> None:
    deletion = SyncOperation.delete("b1", SyncMetadata("b1", T0, at(5), at(5), 3))
    rejected = SyncOperation.create({"title": "Duplicado"}, SyncMetadata("b2", T0, at(5)))
    session = _FakeSession(_FakeResponse(204, text=""), _FakeResponse(409, text="duplicate key"))

    accepted = _remote(session).push_changes("books", [deletion, rejected])

    assert accepted == [deletion.metadata]
    assert session.calls[0]["method"] == "DELETE"
    assert session.calls[0]["params"] == [("id", "eq.b1")]


def test_push_error_de_servidor_se_propaga() -> None:
    operation = SyncOperation.create({"title": "Dune"}, SyncMetadata("b1", T0, at(5)))

    with pytest.raises(NetworkError):
        _remote(_FakeSession(_FakeResponse(500, text="boom"))).push_changes("books", [operation])


@pytest.mark.parametrize(
    ("response", "expected"),
    [
        (_FakeResponse(200, text=""), True),
        (_FakeResponse(401, text=""), True),
        (_FakeResponse(502, text=""), False),
        (requests.ConnectionError("sin red"), False),
    ],
)
def test_check_connectivity(response, expected) -> None:
    session = _FakeSession(response)

    assert _remote(session).check_connectivity() is expected
    assert session.calls[0]["timeout"] == 5.0


def test_rest_errors_helpers() -> None:
    assert parse_retry_after(None) is None
    assert parse_retry_after("abc") is None
    assert parse_retry_after("-3") == 0.0
    assert isinstance(error_for_response(_FakeResponse(408, text="")), SyncTimeoutError)
    assert is_rejection(error_for_response(_FakeResponse(422, text="inválido")))
    assert not is_rejection(error_for_response(_FakeResponse(401, text="")))
    assert not is_rejection(error_for_response(_FakeResponse(429, text="")))
    assert not is_rejection(error_for_response(_FakeResponse(500, text="")))
