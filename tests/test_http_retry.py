from __future__ import annotations

import httpx
import pytest

from flowdesk.core.http.client import request_with_retry
from flowdesk.core.http.errors import FlowdeskHTTPNetworkError, FlowdeskHTTPStatusError


@pytest.fixture
def no_sleep(monkeypatch) -> None:
    monkeypatch.setattr("flowdesk.core.http.client.time.sleep", lambda _: None)
    monkeypatch.setattr("flowdesk.core.http.client.random.random", lambda: 0.5)


def test_request_with_retry_retries_transient_http_status(monkeypatch, no_sleep) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] < 3:
            return httpx.Response(503, request=request)
        return httpx.Response(200, request=request, json={"ok": True})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    monkeypatch.setattr("flowdesk.core.http.client.get_http_client", lambda: client)

    response = request_with_retry("GET", "http://erp.local/test", retries=2)

    assert response.status_code == 200
    assert calls["count"] == 3


def test_client_errors_are_not_retried(no_sleep) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(422, request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))

    with pytest.raises(FlowdeskHTTPStatusError) as excinfo:
        request_with_retry("POST", "http://erp.local/jsonrpc", json={}, retries=3, client=client)

    assert calls["count"] == 1
    assert excinfo.value.http_status == 422
    assert excinfo.value.retryable is False


def test_connection_errors_exhaust_into_network_error(no_sleep) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))

    with pytest.raises(FlowdeskHTTPNetworkError, match="connection failed after retries"):
        request_with_retry("GET", "http://erp.local/", retries=1, client=client)

    assert calls["count"] == 2


def test_idempotency_key_header_is_sent(no_sleep) -> None:
    seen: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("Idempotency-Key"))
        return httpx.Response(200, request=request, json={})

    client = httpx.Client(transport=httpx.MockTransport(handler))

    request_with_retry("POST", "http://erp.local/jsonrpc", json={}, idempotency_key="abc-123", client=client)

    assert seen == ["abc-123"]


def test_retry_after_header_sets_the_delay(monkeypatch) -> None:
    delays: list[float] = []
    monkeypatch.setattr("flowdesk.core.http.client.time.sleep", delays.append)
    answers = [httpx.Response(429, headers={"Retry-After": "3"}), httpx.Response(200, json={})]

    def handler(request: httpx.Request) -> httpx.Response:
        return answers.pop(0)

    client = httpx.Client(transport=httpx.MockTransport(handler))

    response = request_with_retry("GET", "http://erp.local/", retries=1, client=client)

    assert response.status_code == 200
    assert delays == [3.0]
