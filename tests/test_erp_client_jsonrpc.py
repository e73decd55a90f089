from __future__ import annotations

import json

import httpx
import pytest

from flowdesk.core.errors import FatalError
from flowdesk.core.sync import ERPError, JsonRpcERPClient
from flowdesk.core.sync.erp_client import UnconfiguredERPClient, erp_client_from_env


def _client(handler) -> JsonRpcERPClient:
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return JsonRpcERPClient("http://erp.local/", "prod", 2, "s3cret", http_client=http)


def test_call_posts_execute_kw_with_idempotency_key() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["key"] = request.headers.get("Idempotency-Key")
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, request=request, json={"jsonrpc": "2.0", "id": 1, "result": 17})

    result = _client(handler).call(
        "hr.employee",
        "create",
        [{"name": "Ada"}],
        idempotency_key="create-hr.employee-1",
    )

    assert result == 17
    assert captured["url"] == "http://erp.local/jsonrpc"
    assert captured["key"] == "create-hr.employee-1"
    params = captured["body"]["params"]
    assert params["service"] == "object"
    assert params["method"] == "execute_kw"
    assert params["args"] == ["prod", 2, "s3cret", "hr.employee", "create", [{"name": "Ada"}], {}]


def test_error_payload_raises_erp_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            request=request,
            json={"jsonrpc": "2.0", "error": {"code": 200, "message": "Odoo Server Error", "data": {"message": "Invalid field 'foo'"}}},
        )

    with pytest.raises(ERPError) as excinfo:
        _client(handler).call("hr.employee", "write", [[5], {"foo": 1}])

    assert "Invalid field 'foo'" in str(excinfo.value)
    assert excinfo.value.code == 200
    assert excinfo.value.retryable is False


def test_unconfigured_environment_yields_failing_client(monkeypatch) -> None:
    monkeypatch.delenv("FLOWDESK_ERP_URL", raising=False)

    client = erp_client_from_env()

    assert isinstance(client, UnconfiguredERPClient)
    with pytest.raises(FatalError):
        client.call("hr.employee", "read", [[1]])


def test_partial_configuration_is_fatal(monkeypatch) -> None:
    monkeypatch.setenv("FLOWDESK_ERP_URL", "http://erp.local")
    monkeypatch.delenv("FLOWDESK_ERP_API_KEY", raising=False)

    with pytest.raises(FatalError):
        erp_client_from_env()
