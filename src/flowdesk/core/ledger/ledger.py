from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Iterable

from flowdesk.core.errors import InvalidInput, NotFound
from flowdesk.core.store import StateStore, now_iso, parse_iso

from .schemas import JobLedgerEntry, JobLogEntry, JobStats

JOBS = "jobs"
JOB_LOGS = "job_logs"

# Legal status moves; terminal states have none.
_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"running", "cancelled", "failed"},
    "running": {"completed", "failed", "pending", "cancelled"},
}


class JobLedger:
    """Durable record of every asynchronous job; the authority on what ran and how it ended."""

    def __init__(self, store: StateStore) -> None:
        self.store = store
        self.logger = logging.getLogger("flowdesk.ledger")

    def create(self, entry: JobLedgerEntry) -> JobLedgerEntry:
        with self.store.transaction() as uow:
            uow.insert(JOBS, entry.model_dump(mode="json"))
        self.logger.info(
            "job_recorded",
            extra={"extra_fields": {"job_id": entry.id, "queue": entry.queue_name, "priority": entry.priority}},
        )
        return entry

    def get(self, job_id: str) -> JobLedgerEntry:
        row = self.store.snapshot().get(JOBS, job_id)
        if row is None:
            raise NotFound(f"job {job_id} not found")
        return JobLedgerEntry.model_validate(row)

    def transition(self, job_id: str, status: str, **changes: Any) -> JobLedgerEntry:
        with self.store.transaction() as uow:
            row = uow.get(JOBS, job_id)
            if row is None:
                raise NotFound(f"job {job_id} not found")
            current = row["status"]
            if status not in _TRANSITIONS.get(current, set()):
                raise InvalidInput(f"job {job_id} cannot move from {current} to {status}")
            updated = uow.update(JOBS, job_id, status=status, updated_at_iso=now_iso(), **changes)
        return JobLedgerEntry.model_validate(updated)

    def mark_running(self, job_id: str) -> JobLedgerEntry:
        with self.store.transaction() as uow:
            row = uow.get(JOBS, job_id)
            if row is None:
                raise NotFound(f"job {job_id} not found")
            return self.transition(
                job_id,
                "running",
                attempts=int(row.get("attempts", 0)) + 1,
                started_at_iso=now_iso(),
                error=None,
            )

    def mark_completed(self, job_id: str, result: Any) -> JobLedgerEntry:
        return self.transition(job_id, "completed", result=result, completed_at_iso=now_iso(), error=None)

    def mark_failed(self, job_id: str, error: str) -> JobLedgerEntry:
        return self.transition(job_id, "failed", error=error, completed_at_iso=now_iso())

    def mark_retry(self, job_id: str, error: str, scheduled_for_iso: str) -> JobLedgerEntry:
        return self.transition(job_id, "pending", error=error, scheduled_for_iso=scheduled_for_iso)

    def mark_stalled(self, job_id: str, error: str) -> JobLedgerEntry:
        return self.transition(job_id, "pending", error=error, scheduled_for_iso=None)

    def mark_cancelled(self, job_id: str) -> JobLedgerEntry:
        return self.transition(job_id, "cancelled", completed_at_iso=now_iso())

    def cancel(self, job_id: str) -> JobLedgerEntry:
        """Cancels a pending job outright; a running one only gets ``cancel_requested`` set.

        The status check and the write share one unit of work.
        """
        with self.store.transaction() as uow:
            row = uow.get(JOBS, job_id)
            if row is None:
                raise NotFound(f"job {job_id} not found")
            status = row["status"]
            stamp = now_iso()
            if status == "pending":
                updated = uow.update(JOBS, job_id, status="cancelled", completed_at_iso=stamp, updated_at_iso=stamp)
            elif status == "running":
                updated = uow.update(JOBS, job_id, cancel_requested=True, updated_at_iso=stamp)
            else:
                raise InvalidInput(f"job {job_id} is already {status}")
        return JobLedgerEntry.model_validate(updated)

    def mark_enqueued(self, job_id: str) -> None:
        with self.store.transaction() as uow:
            uow.update(JOBS, job_id, enqueued_at_iso=now_iso())

    def list_by_status(
        self,
        statuses: Iterable[str] | None = None,
        organization_id: str | None = None,
        limit: int = 100,
    ) -> list[JobLedgerEntry]:
        wanted = set(statuses) if statuses else None
        rows = self.store.snapshot().find(
            JOBS,
            lambda row: (wanted is None or row["status"] in wanted)
            and (organization_id is None or row.get("organization_id") == organization_id),
        )
        rows.sort(key=lambda row: row["created_at_iso"], reverse=True)
        return [JobLedgerEntry.model_validate(row) for row in rows[: max(0, limit)]]

    def get_pending(
        self,
        limit: int = 100,
        organization_id: str | None = None,
        now: datetime | None = None,
    ) -> list[JobLedgerEntry]:
        current = now or datetime.now(timezone.utc)

        def ready(row: dict[str, Any]) -> bool:
            due = parse_iso(row.get("scheduled_for_iso"))
            return due is None or due <= current

        rows = self.store.snapshot().find(JOBS, ready, status="pending")
        if organization_id is not None:
            rows = [row for row in rows if row.get("organization_id") == organization_id]
        rows.sort(key=lambda row: row["created_at_iso"])
        return [JobLedgerEntry.model_validate(row) for row in rows[: max(0, limit)]]

    def find_by_trigger(self, trigger_ref: str) -> list[JobLedgerEntry]:
        rows = self.store.snapshot().find(JOBS, trigger_ref=trigger_ref)
        rows.sort(key=lambda row: row["created_at_iso"])
        return [JobLedgerEntry.model_validate(row) for row in rows]

    def stats(self, organization_id: str | None = None) -> JobStats:
        rows = self.store.snapshot().find(
            JOBS,
            lambda row: organization_id is None or row.get("organization_id") == organization_id,
        )
        return JobStats(
            total=len(rows),
            by_status=dict(Counter(row["status"] for row in rows)),
            by_type=dict(Counter(row["job_type"] for row in rows)),
            by_priority=dict(Counter(row["priority"] for row in rows)),
        )

    def log(self, job_id: str, level: str, message: str, metadata: dict[str, Any] | None = None) -> JobLogEntry:
        entry = JobLogEntry(job_id=job_id, level=level, message=message, metadata=metadata or {})
        with self.store.transaction() as uow:
            uow.insert(JOB_LOGS, entry.model_dump(mode="json"))
        return entry

    def get_logs(self, job_id: str, levels: Iterable[str] | None = None, limit: int = 100) -> list[JobLogEntry]:
        wanted = set(levels) if levels else None
        rows = self.store.snapshot().find(
            JOB_LOGS,
            lambda row: wanted is None or row["level"] in wanted,
            job_id=job_id,
        )
        rows.sort(key=lambda row: row["ts_iso"])
        return [JobLogEntry.model_validate(row) for row in rows[: max(0, limit)]]
