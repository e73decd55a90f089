from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from types import MappingProxyType
from typing import Iterator, Mapping

CONTEXT_KEYS = ("correlation_id", "organization_id", "request_id", "job_id", "operation_id")

_EMPTY: Mapping[str, str] = MappingProxyType({})
_log_context: ContextVar[Mapping[str, str]] = ContextVar("flowdesk_log_context", default=_EMPTY)


@contextmanager
def log_context(
    correlation_id: str | None = None,
    organization_id: str | None = None,
    request_id: str | None = None,
    job_id: str | None = None,
    operation_id: str | None = None,
) -> Iterator[None]:
    """Layers the given ids over the current context for the duration of the block."""
    updates = {
        "correlation_id": correlation_id,
        "organization_id": organization_id,
        "request_id": request_id,
        "job_id": job_id,
        "operation_id": operation_id,
    }
    merged = dict(_log_context.get())
    merged.update({key: value for key, value in updates.items() if value is not None})
    token = _log_context.set(MappingProxyType(merged))
    try:
        yield
    finally:
        _log_context.reset(token)


def get_log_context() -> dict[str, str]:
    current = _log_context.get()
    return {key: current[key] for key in CONTEXT_KEYS if key in current}


def current_correlation_id() -> str | None:
    return _log_context.get().get("correlation_id")
