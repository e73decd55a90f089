from __future__ import annotations

import logging
import random
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import TypeAdapter

from flowdesk.core.env import env_float, env_int
from flowdesk.core.errors import CircuitOpenError, FatalError, RetryableError
from flowdesk.core.infra import BreakerManager
from flowdesk.core.logging.context import log_context
from flowdesk.core.logging.redact import redact_mapping
from flowdesk.core.store import new_id

from .audit import OperationAuditEntry, OperationAuditLog
from .idempotency import IdempotencyStore

_RESULT_ADAPTER: TypeAdapter[Any] = TypeAdapter(Any)

TRANSIENT_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"ECONNREFUSED|connection refused",
        r"ETIMEDOUT|timed out",
        r"ENOTFOUND|host not found|name or service not known",
        r"network",
        r"timeout",
        r"session.*expired",
        r"ECONNRESET|connection.*reset",
    )
]


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, RetryableError) and exc.retryable:
        return True
    message = str(exc)
    return any(pattern.search(message) for pattern in TRANSIENT_PATTERNS)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """Runs external operations behind a circuit breaker.

    Keyed operations run at most once per idempotency key; a ``None`` key
    (reads) still gets breaker gating, retry and audit but is never cached.
    """

    def __init__(
        self,
        idempotency: IdempotencyStore,
        audit_log: OperationAuditLog,
        breakers: BreakerManager,
        integration: str = "odoo",
        *,
        max_retries: int | None = None,
        backoff_base_s: float | None = None,
        backoff_max_s: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.idempotency = idempotency
        self.audit_log = audit_log
        self.breakers = breakers
        self.integration = integration
        self.max_retries = max(0, max_retries if max_retries is not None else env_int("FLOWDESK_SYNC_MAX_RETRIES", 3))
        self.backoff_base_s = backoff_base_s if backoff_base_s is not None else env_float("FLOWDESK_SYNC_BACKOFF_BASE_S", 1.0)
        self.backoff_max_s = backoff_max_s if backoff_max_s is not None else env_float("FLOWDESK_SYNC_BACKOFF_MAX_S", 10.0)
        self.sleep = sleep
        self.clock = clock
        self.logger = logging.getLogger("flowdesk.sync")

    def backoff_delay(self, attempt_index: int) -> float:
        delay = min(self.backoff_base_s * (2**attempt_index), self.backoff_max_s)
        return delay + delay * 0.2 * random.random()

    def execute(
        self,
        idempotency_key: str | None,
        operation: Callable[[], Any],
        *,
        operation_type: str = "operation",
        model: str | None = None,
        method: str | None = None,
        request_payload: Any = None,
        organization_id: str | None = None,
    ) -> Any:
        root_operation_id = new_id()
        with log_context(operation_id=root_operation_id, organization_id=organization_id):
            if idempotency_key is not None:
                claim = self.idempotency.claim(idempotency_key, root_operation_id, operation_type, now=self.clock())
                if claim.replay:
                    self.logger.info(
                        "idempotent_replay",
                        extra={"extra_fields": {"key": idempotency_key, "cached_operation_id": claim.record.operation_id}},
                    )
                    return claim.record.result

            redacted = redact_mapping(request_payload)
            attempts = self.max_retries + 1
            for attempt in range(1, attempts + 1):
                operation_id = root_operation_id if attempt == 1 else new_id()
                try:
                    circuit_state = self.breakers.before_call(self.integration, now=self.clock())
                except CircuitOpenError:
                    if idempotency_key is None:
                        raise
                    if attempt == 1:
                        self.idempotency.release(idempotency_key, root_operation_id)
                    else:
                        self.idempotency.fail(idempotency_key, f"circuit open for {self.integration}")
                    raise

                started_at = self.clock()
                started = time.perf_counter()
                self.logger.info(
                    "sync_attempt_started",
                    extra={"extra_fields": {"operation_type": operation_type, "attempt": attempt, "circuit_state": circuit_state}},
                )
                try:
                    raw_result = operation()
                except Exception as exc:
                    duration_ms = int((time.perf_counter() - started) * 1000)
                    transient = is_transient(exc)
                    will_retry = transient and attempt < attempts
                    self.breakers.record_failure(self.integration, str(exc), now=self.clock())
                    self._audit(
                        operation_id=operation_id,
                        root_operation_id=root_operation_id,
                        attempt=attempt,
                        idempotency_key=idempotency_key,
                        organization_id=organization_id,
                        operation_type=operation_type,
                        model=model,
                        method=method,
                        circuit_state=circuit_state,
                        status="retrying" if will_retry else "failed",
                        request_payload=redacted,
                        error=f"{type(exc).__name__}: {exc}",
                        started_at=started_at,
                        duration_ms=duration_ms,
                    )
                    self.logger.warning(
                        "sync_attempt_failed",
                        extra={
                            "extra_fields": {
                                "operation_type": operation_type,
                                "attempt": attempt,
                                "transient": transient,
                                "will_retry": will_retry,
                                "error": str(exc),
                            }
                        },
                    )
                    if will_retry:
                        self.sleep(self.backoff_delay(attempt - 1))
                        continue

                    if idempotency_key is not None:
                        self.idempotency.fail(idempotency_key, str(exc))
                    self.logger.error(
                        "sync_operation_failed",
                        extra={"extra_fields": {"operation_type": operation_type, "attempts": attempt, "transient": transient}},
                    )
                    if transient:
                        raise RetryableError(f"{operation_type} failed after {attempt} attempts: {exc}") from exc
                    raise FatalError(f"{operation_type} failed: {exc}") from exc

                result = _RESULT_ADAPTER.dump_python(raw_result, mode="json")
                duration_ms = int((time.perf_counter() - started) * 1000)
                self.breakers.record_success(self.integration, now=self.clock())
                self._audit(
                    operation_id=operation_id,
                    root_operation_id=root_operation_id,
                    attempt=attempt,
                    idempotency_key=idempotency_key,
                    organization_id=organization_id,
                    operation_type=operation_type,
                    model=model,
                    method=method,
                    circuit_state=circuit_state,
                    status="success",
                    request_payload=redacted,
                    response_payload=result,
                    started_at=started_at,
                    duration_ms=duration_ms,
                )
                if idempotency_key is not None:
                    self.idempotency.complete(idempotency_key, result)
                self.logger.info(
                    "sync_operation_succeeded",
                    extra={"extra_fields": {"operation_type": operation_type, "attempts": attempt, "duration_ms": duration_ms}},
                )
                return result

        raise FatalError(f"{operation_type} made no attempts")

    def _audit(
        self,
        *,
        operation_id: str,
        root_operation_id: str,
        attempt: int,
        idempotency_key: str | None,
        organization_id: str | None,
        operation_type: str,
        model: str | None,
        method: str | None,
        circuit_state: str,
        status: str,
        request_payload: Any,
        started_at: datetime,
        duration_ms: int,
        response_payload: Any = None,
        error: str | None = None,
    ) -> None:
        self.audit_log.record(
            OperationAuditEntry(
                operation_id=operation_id,
                parent_operation_id=root_operation_id if attempt > 1 else None,
                idempotency_key=idempotency_key,
                organization_id=organization_id,
                integration=self.integration,
                operation_type=operation_type,
                model=model,
                method=method,
                attempt_number=attempt,
                max_retries=self.max_retries,
                is_retry=attempt > 1,
                circuit_state=circuit_state,
                status=status,
                request_payload=request_payload,
                response_payload=response_payload,
                error=error,
                started_at_iso=started_at.isoformat(),
                duration_ms=duration_ms,
            )
        )
