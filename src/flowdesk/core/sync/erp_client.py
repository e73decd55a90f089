from __future__ import annotations

import os
from typing import Any, Protocol

import httpx

from flowdesk.core.env import env_int
from flowdesk.core.errors import FatalError, FlowdeskError
from flowdesk.core.http import request_with_retry
from flowdesk.core.store import new_id


class ERPError(FlowdeskError):
    """The ERP answered with a structured error."""

    def __init__(self, message: str, code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class ERPClient(Protocol):
    def call(
        self,
        model: str,
        method: str,
        args: list[Any] | None = None,
        kwargs: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> Any: ...


class JsonRpcERPClient:
    """Odoo-style ``execute_kw`` over JSON-RPC."""

    def __init__(
        self,
        url: str,
        database: str,
        user_id: int,
        api_key: str,
        *,
        http_client: httpx.Client | None = None,
        retries: int = 0,
        timeout_s: float | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.database = database
        self.user_id = user_id
        self.api_key = api_key
        self.http_client = http_client
        self.retries = retries
        self.timeout_s = timeout_s

    @classmethod
    def from_env(cls) -> "JsonRpcERPClient":
        url = os.getenv("FLOWDESK_ERP_URL", "").strip()
        database = os.getenv("FLOWDESK_ERP_DATABASE", "").strip()
        api_key = os.getenv("FLOWDESK_ERP_API_KEY", "").strip()
        if not url or not database or not api_key:
            raise FatalError("ERP client is not configured (FLOWDESK_ERP_URL, FLOWDESK_ERP_DATABASE, FLOWDESK_ERP_API_KEY)")
        return cls(url, database, env_int("FLOWDESK_ERP_USER_ID", 2), api_key)

    def call(
        self,
        model: str,
        method: str,
        args: list[Any] | None = None,
        kwargs: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> Any:
        body = {
            "jsonrpc": "2.0",
            "method": "call",
            "id": new_id(),
            "params": {
                "service": "object",
                "method": "execute_kw",
                "args": [self.database, self.user_id, self.api_key, model, method, list(args or []), dict(kwargs or {})],
            },
        }
        response = request_with_retry(
            "POST",
            f"{self.url}/jsonrpc",
            json=body,
            retries=self.retries,
            timeout_override=self.timeout_s,
            idempotency_key=idempotency_key,
            client=self.http_client,
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ERPError(f"ERP returned a non-JSON response for {model}.{method}") from exc

        error = payload.get("error") if isinstance(payload, dict) else None
        if error:
            data = error.get("data") or {}
            message = data.get("message") or error.get("message") or "unknown ERP error"
            raise ERPError(f"{model}.{method}: {message}", code=error.get("code"), data=data)
        return payload.get("result") if isinstance(payload, dict) else None


class UnconfiguredERPClient:
    """Stands in when no ERP connection is configured; every call fails without retries."""

    def call(
        self,
        model: str,
        method: str,
        args: list[Any] | None = None,
        kwargs: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> Any:
        raise FatalError(f"ERP client is not configured; cannot call {model}.{method}")


def erp_client_from_env() -> ERPClient:
    if not os.getenv("FLOWDESK_ERP_URL", "").strip():
        return UnconfiguredERPClient()
    return JsonRpcERPClient.from_env()
