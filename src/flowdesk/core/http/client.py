from __future__ import annotations

import logging
import os
import random
import threading
import time
from dataclasses import dataclass

import httpx

from flowdesk.core.env import env_float, env_int
from flowdesk.core.logging.redact import redact_string

from .errors import FlowdeskHTTPNetworkError, FlowdeskHTTPStatusError

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_TRANSPORT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout, httpx.RemoteProtocolError)
_MAX_RETRY_AFTER_S = 30.0

_client: httpx.Client | None = None
_client_lock = threading.Lock()
logger = logging.getLogger("flowdesk.http")


@dataclass(frozen=True)
class RetryPolicy:
    retries: int
    backoff_base_s: float
    backoff_max_s: float

    @classmethod
    def from_env(cls, retries: int | None = None) -> "RetryPolicy":
        return cls(
            retries=env_int("FLOWDESK_HTTP_RETRIES", 2) if retries is None else max(0, retries),
            backoff_base_s=max(0.01, env_float("FLOWDESK_HTTP_BACKOFF_BASE_S", 0.25)),
            backoff_max_s=max(0.01, env_float("FLOWDESK_HTTP_BACKOFF_MAX_S", 2.0)),
        )

    def delay(self, attempt: int, retry_after: float | None = None) -> float:
        if retry_after is not None:
            return min(retry_after, _MAX_RETRY_AFTER_S)
        return min(self.backoff_max_s, self.backoff_base_s * (2**attempt)) * (0.5 + random.random())


def _build_timeout(total_s: float | None = None) -> httpx.Timeout:
    connect_s = max(0.1, env_float("FLOWDESK_HTTP_CONNECT_TIMEOUT_S", 5.0))
    read_total = max(0.1, total_s if total_s is not None else env_float("FLOWDESK_HTTP_TIMEOUT_S", 15.0))
    return httpx.Timeout(read_total, connect=min(connect_s, read_total))


def get_http_client() -> httpx.Client:
    global _client
    if _client is not None:
        return _client

    with _client_lock:
        if _client is None:
            user_agent = os.getenv("FLOWDESK_HTTP_USER_AGENT", "flowdesk/0.1")
            _client = httpx.Client(timeout=_build_timeout(), headers={"User-Agent": user_agent})
    return _client


def close_http_client() -> None:
    global _client
    with _client_lock:
        if _client is not None:
            _client.close()
            _client = None


def _retry_after_seconds(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def _wait(policy: RetryPolicy, attempt: int, url: str, reason: str, retry_after: float | None = None) -> None:
    delay_s = policy.delay(attempt, retry_after)
    logger.info(
        "http_retry_scheduled",
        extra={"extra_fields": {"url": redact_string(url), "attempt": attempt + 1, "reason": reason, "delay_s": round(delay_s, 3)}},
    )
    time.sleep(delay_s)


def request_with_retry(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    json: object | None = None,
    timeout_override: float | None = None,
    retries: int | None = None,
    idempotency_key: str | None = None,
    client: httpx.Client | None = None,
) -> httpx.Response:
    """Sends one request, retrying transport errors and 429/5xx answers.

    Retries reuse ``idempotency_key`` so the remote side can drop duplicates.
    """
    policy = RetryPolicy.from_env(retries)
    merged_headers = dict(headers or {})
    if idempotency_key and "Idempotency-Key" not in merged_headers:
        merged_headers["Idempotency-Key"] = idempotency_key

    http = client or get_http_client()
    timeout = _build_timeout(timeout_override) if timeout_override is not None else None
    for attempt in range(policy.retries + 1):
        last_attempt = attempt >= policy.retries
        try:
            response = http.request(method, url, headers=merged_headers or None, json=json, timeout=timeout)
        except _TRANSPORT_ERRORS as exc:
            if last_attempt:
                raise FlowdeskHTTPNetworkError(f"connection failed after retries for {url}: {exc.__class__.__name__}") from exc
            _wait(policy, attempt, url, exc.__class__.__name__)
            continue
        except httpx.HTTPError as exc:
            raise FlowdeskHTTPNetworkError(f"network error for {url}: {exc.__class__.__name__}") from exc

        status = response.status_code
        if 200 <= status < 300:
            return response
        if status in _RETRYABLE_STATUS_CODES and not last_attempt:
            _wait(policy, attempt, url, f"status {status}", _retry_after_seconds(response))
            continue
        raise FlowdeskHTTPStatusError(f"HTTP status {status} for {url}", status_code=status)

    raise FlowdeskHTTPNetworkError(f"no attempt made for {url}")
