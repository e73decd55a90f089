from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from pydantic import BaseModel

from flowdesk.core.env import env_int
from flowdesk.core.errors import Conflict
from flowdesk.core.store import StateStore, parse_iso

KEYS = "idempotency_keys"


class IdempotencyRecord(BaseModel):
    id: str
    operation_type: str
    operation_id: str
    status: Literal["running", "completed", "failed"]
    result: Any = None
    error: str | None = None
    first_attempt_at_iso: str
    last_attempt_at_iso: str
    expires_at_iso: str

    def is_expired(self, now: datetime) -> bool:
        expires = parse_iso(self.expires_at_iso)
        return expires is not None and expires <= now


class ClaimResult(BaseModel):
    record: IdempotencyRecord
    replay: bool = False


class IdempotencyStore:
    def __init__(self, store: StateStore, ttl_hours: int | None = None) -> None:
        self.store = store
        self.ttl_hours = ttl_hours if ttl_hours is not None else env_int("FLOWDESK_IDEMPOTENCY_TTL_HOURS", 24)
        self.logger = logging.getLogger("flowdesk.sync")

    def get(self, key: str) -> IdempotencyRecord | None:
        row = self.store.snapshot().get(KEYS, key)
        return IdempotencyRecord.model_validate(row) if row is not None else None

    def claim(
        self,
        key: str,
        operation_id: str,
        operation_type: str,
        now: datetime | None = None,
    ) -> ClaimResult:
        """Marks ``key`` running for this operation, or returns the stored completed record."""
        current = now or datetime.now(timezone.utc)
        with self.store.transaction() as uow:
            row = uow.get(KEYS, key)
            existing = IdempotencyRecord.model_validate(row) if row is not None else None
            if existing is not None and not existing.is_expired(current):
                if existing.status == "completed":
                    return ClaimResult(record=existing, replay=True)
                if existing.status == "running":
                    raise Conflict(f"operation already in progress for idempotency key {key[:32]}")

            record = IdempotencyRecord(
                id=key,
                operation_type=operation_type,
                operation_id=operation_id,
                status="running",
                first_attempt_at_iso=(
                    existing.first_attempt_at_iso
                    if existing is not None and not existing.is_expired(current)
                    else current.isoformat()
                ),
                last_attempt_at_iso=current.isoformat(),
                expires_at_iso=(current + timedelta(hours=self.ttl_hours)).isoformat(),
            )
            if existing is not None:
                uow.delete(KEYS, key)
                self.logger.info(
                    "idempotency_key_reclaimed",
                    extra={"extra_fields": {"key": key, "previous_status": existing.status}},
                )
            uow.insert(KEYS, record.model_dump(mode="json"))
        return ClaimResult(record=record)

    def complete(self, key: str, result: Any) -> None:
        with self.store.transaction() as uow:
            uow.update(KEYS, key, status="completed", result=result, error=None)

    def fail(self, key: str, error: str) -> None:
        with self.store.transaction() as uow:
            uow.update(KEYS, key, status="failed", error=error)

    def release(self, key: str, operation_id: str) -> bool:
        with self.store.transaction() as uow:
            row = uow.get(KEYS, key)
            if row is None or row["operation_id"] != operation_id or row["status"] != "running":
                return False
            return uow.delete(KEYS, key)

    def cleanup_expired(self, now: datetime | None = None) -> int:
        current = now or datetime.now(timezone.utc)
        with self.store.transaction() as uow:
            expired = uow.find(KEYS, lambda row: IdempotencyRecord.model_validate(row).is_expired(current))
            for row in expired:
                uow.delete(KEYS, row["id"])
        if expired:
            self.logger.info("idempotency_keys_cleaned", extra={"extra_fields": {"count": len(expired)}})
        return len(expired)
