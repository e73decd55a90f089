from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel

from flowdesk.core.env import env_float, env_int
from flowdesk.core.errors import BrokerEnqueueError, InvalidInput
from flowdesk.core.ledger import BROKER_PRIORITY, JobLedger, JobLedgerEntry
from flowdesk.core.store import parse_iso

from .broker import InMemoryBroker
from .handlers import job_name_for_queue, queue_for_job_name


class AddJobResult(BaseModel):
    broker_job_id: str
    ledger_job_id: str


class QueueManager:
    """Writes the ledger entry, then hands its id to the broker."""

    def __init__(
        self,
        ledger: JobLedger,
        broker: InMemoryBroker,
        default_max_retries: int | None = None,
    ) -> None:
        self.ledger = ledger
        self.broker = broker
        self.default_max_retries = (
            default_max_retries if default_max_retries is not None else env_int("FLOWDESK_JOB_MAX_RETRIES", 3)
        )
        self.logger = logging.getLogger("flowdesk.queue")

    def add_job(
        self,
        queue_name: str,
        payload: dict[str, Any],
        priority: str = "normal",
        organization_id: str | None = None,
        max_retries: int | None = None,
        run_at: datetime | None = None,
        trigger_ref: str | None = None,
    ) -> AddJobResult:
        job_name = job_name_for_queue(queue_name)
        if priority not in BROKER_PRIORITY:
            raise InvalidInput(f"unknown priority: {priority}")
        if max_retries is not None and max_retries < 0:
            raise InvalidInput("max_retries must be >= 0")

        now = datetime.now(timezone.utc)
        delay_s = 0.0
        if run_at is not None:
            run_at = run_at if run_at.tzinfo else run_at.replace(tzinfo=timezone.utc)
            delay_s = max(0.0, (run_at - now).total_seconds())

        entry = self.ledger.create(
            JobLedgerEntry(
                organization_id=organization_id,
                queue_name=queue_name,
                job_name=job_name,
                job_type="scheduled" if run_at is not None else "immediate",
                priority=priority,
                payload=dict(payload),
                max_retries=max_retries if max_retries is not None else self.default_max_retries,
                trigger_ref=trigger_ref,
                scheduled_for_iso=run_at.isoformat() if run_at is not None else None,
            )
        )
        self._dispatch(entry, delay_s)
        return AddJobResult(broker_job_id=entry.id, ledger_job_id=entry.id)

    def add_job_by_name(self, job_name: str, payload: dict[str, Any], **options: Any) -> AddJobResult:
        return self.add_job(queue_for_job_name(job_name), payload, **options)

    def _dispatch(self, entry: JobLedgerEntry, delay_s: float) -> None:
        try:
            self.broker.enqueue(entry.id, entry.queue_name, priority=BROKER_PRIORITY[entry.priority], delay_s=delay_s)
        except Exception as exc:
            self.logger.error(
                "job_enqueue_failed",
                extra={"extra_fields": {"job_id": entry.id, "queue": entry.queue_name, "error": str(exc)}},
            )
            self.ledger.log(entry.id, "error", "broker enqueue failed", {"error": str(exc)})
            raise BrokerEnqueueError(entry.id, f"job {entry.id} recorded but not enqueued") from exc
        self.ledger.mark_enqueued(entry.id)
        self.logger.info(
            "job_enqueued",
            extra={"extra_fields": {"job_id": entry.id, "queue": entry.queue_name, "delay_s": round(delay_s, 3)}},
        )

    def get_job(self, job_id: str) -> JobLedgerEntry:
        return self.ledger.get(job_id)

    def cancel(self, job_id: str) -> JobLedgerEntry:
        entry = self.ledger.cancel(job_id)
        if entry.status == "running":
            self.ledger.log(job_id, "info", "cancel requested while running")
            self.logger.info("job_cancel_requested", extra={"extra_fields": {"job_id": job_id}})
            return entry

        self.broker.remove(job_id)
        self.ledger.log(job_id, "info", "job cancelled")
        self.logger.info("job_cancelled", extra={"extra_fields": {"job_id": job_id}})
        return entry

    def reconcile(
        self,
        grace_s: float | None = None,
        now: datetime | None = None,
        running_timeout_s: float | None = None,
    ) -> list[str]:
        """Re-enqueues pending entries the broker lost, and running entries nobody finished.

        A running entry counts as abandoned once it has run longer than
        ``running_timeout_s`` and this broker is not holding it.
        """
        grace = grace_s if grace_s is not None else env_float("FLOWDESK_RECONCILE_GRACE_S", 60.0)
        current = now or datetime.now(timezone.utc)
        cutoff = current - timedelta(seconds=grace)
        requeued = self._recover_abandoned(current, running_timeout_s)

        for entry in self.ledger.list_by_status(["pending"], limit=10_000):
            touched = parse_iso(entry.updated_at_iso) or parse_iso(entry.created_at_iso)
            if touched is not None and touched > cutoff:
                continue
            if self.broker.contains(entry.id):
                continue
            due = parse_iso(entry.scheduled_for_iso)
            delay_s = max(0.0, (due - current).total_seconds()) if due is not None else 0.0
            try:
                self._dispatch(entry, delay_s)
            except BrokerEnqueueError:
                continue
            self.ledger.log(entry.id, "warn", "re-enqueued by reconciliation")
            requeued.append(entry.id)

        if requeued:
            self.logger.warning("jobs_reconciled", extra={"extra_fields": {"count": len(requeued)}})
        return requeued

    def _recover_abandoned(self, now: datetime, running_timeout_s: float | None) -> list[str]:
        timeout = (
            running_timeout_s if running_timeout_s is not None else env_float("FLOWDESK_JOB_RUNNING_TIMEOUT_S", 3600.0)
        )
        cutoff = now - timedelta(seconds=timeout)
        recovered: list[str] = []
        for entry in self.ledger.list_by_status(["running"], limit=10_000):
            started = parse_iso(entry.started_at_iso) or parse_iso(entry.updated_at_iso)
            if started is not None and started > cutoff:
                continue
            if self.broker.contains(entry.id):
                continue
            try:
                self.ledger.mark_stalled(entry.id, f"no outcome recorded within {int(timeout)}s of start")
            except InvalidInput:
                continue
            self.ledger.log(entry.id, "warn", "running job abandoned; re-enqueued by reconciliation")
            self.logger.warning("job_abandoned", extra={"extra_fields": {"job_id": entry.id}})
            try:
                self._dispatch(entry, 0.0)
            except BrokerEnqueueError:
                continue
            recovered.append(entry.id)
        return recovered
