from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from flowdesk.core.store import StateStore, new_id, now_iso

AUDIT = "operation_audit"


class OperationAuditEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    operation_id: str
    parent_operation_id: str | None = None
    idempotency_key: str | None = None
    organization_id: str | None = None
    integration: str
    operation_type: str
    model: str | None = None
    method: str | None = None
    attempt_number: int = 1
    max_retries: int = 0
    is_retry: bool = False
    circuit_state: str = "closed"
    status: Literal["success", "retrying", "failed"]
    request_payload: Any = None
    response_payload: Any = None
    error: str | None = None
    started_at_iso: str
    finished_at_iso: str = Field(default_factory=now_iso)
    duration_ms: int = 0


class OperationAuditLog:
    """Append-only record of every external call attempt."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def record(self, entry: OperationAuditEntry) -> OperationAuditEntry:
        with self.store.transaction() as uow:
            uow.insert(AUDIT, entry.model_dump(mode="json"))
        return entry

    def list(
        self,
        organization_id: str | None = None,
        idempotency_key: str | None = None,
        operation_id: str | None = None,
        limit: int = 200,
    ) -> list[OperationAuditEntry]:
        filters = {
            key: value
            for key, value in {
                "organization_id": organization_id,
                "idempotency_key": idempotency_key,
                "operation_id": operation_id,
            }.items()
            if value is not None
        }
        rows = self.store.snapshot().find(AUDIT, **filters)
        rows.sort(key=lambda row: (row["started_at_iso"], row["attempt_number"]))
        return [OperationAuditEntry.model_validate(row) for row in rows[: max(0, limit)]]
