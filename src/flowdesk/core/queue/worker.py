from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import TypeAdapter

from flowdesk.core.env import env_float, env_int
from flowdesk.core.errors import InvalidInput, JobCancelled, NotFound, RetryableError, is_retryable
from flowdesk.core.ledger import JobLedger, JobLedgerEntry
from flowdesk.core.logging.context import log_context
from flowdesk.core.notifications import EventPublisher, NullEventPublisher

from .broker import BrokerTask, InMemoryBroker
from .handlers import HandlerRegistry, JobContext

_RESULT_ADAPTER: TypeAdapter[Any] = TypeAdapter(Any)
_COMPLETION_WRITE_ATTEMPTS = 3


class JobWorker:
    def __init__(
        self,
        ledger: JobLedger,
        broker: InMemoryBroker,
        registry: HandlerRegistry,
        publisher: EventPublisher | None = None,
        concurrency: int | None = None,
        backoff_base_s: float | None = None,
        backoff_max_s: float | None = None,
        poll_timeout_s: float = 0.5,
    ) -> None:
        self.ledger = ledger
        self.broker = broker
        self.registry = registry
        self.publisher = publisher or NullEventPublisher()
        self.concurrency = max(1, concurrency if concurrency is not None else env_int("FLOWDESK_WORKER_CONCURRENCY", 5))
        self.backoff_base_s = (
            backoff_base_s if backoff_base_s is not None else env_float("FLOWDESK_JOB_BACKOFF_BASE_S", 5.0)
        )
        self.backoff_max_s = backoff_max_s if backoff_max_s is not None else env_float("FLOWDESK_JOB_BACKOFF_MAX_S", 300.0)
        self.poll_timeout_s = poll_timeout_s
        self.logger = logging.getLogger("flowdesk.worker")
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def backoff_delay(self, attempts: int) -> float:
        return min(self.backoff_base_s * (2 ** attempts), self.backoff_max_s)

    def run_once(self, timeout: float | None = 0.0) -> JobLedgerEntry | None:
        task = self.broker.reserve(timeout=timeout)
        if task is None:
            return None
        return self.process(task)

    def drain(self, max_jobs: int = 1000) -> int:
        processed = 0
        while processed < max_jobs:
            task = self.broker.reserve(timeout=0.0)
            if task is None:
                break
            self.process(task)
            processed += 1
        return processed

    def process(self, task: BrokerTask) -> JobLedgerEntry | None:
        try:
            entry = self.ledger.get(task.job_id)
        except NotFound:
            self.broker.ack(task.job_id)
            self.logger.warning("job_missing_from_ledger", extra={"extra_fields": {"job_id": task.job_id}})
            return None

        if entry.status != "pending":
            self.broker.ack(task.job_id)
            self.logger.info(
                "job_skipped",
                extra={"extra_fields": {"job_id": entry.id, "status": entry.status}},
            )
            return entry

        try:
            entry = self.ledger.mark_running(entry.id)
        except InvalidInput:
            self.broker.ack(task.job_id)
            self.logger.info("job_claimed_elsewhere", extra={"extra_fields": {"job_id": task.job_id}})
            return None
        with log_context(job_id=entry.id, organization_id=entry.organization_id):
            self.logger.info(
                "job_started",
                extra={"extra_fields": {"job_name": entry.job_name, "attempt": entry.attempts}},
            )
            try:
                handler = self.registry.get(entry.job_name)
                result = _RESULT_ADAPTER.dump_python(handler(JobContext(entry=entry, ledger=self.ledger)), mode="json")
            except JobCancelled as exc:
                return self._cancelled(entry, exc)
            except Exception as exc:
                return self._failed(entry, exc)

            completed = self._record_completion(entry, result)
            self.broker.ack(entry.id)
            self.ledger.log(entry.id, "info", "job completed", {"attempt": entry.attempts})
            self.logger.info("job_completed", extra={"extra_fields": {"attempt": entry.attempts}})
            return completed

    def _record_completion(self, entry: JobLedgerEntry, result: Any) -> JobLedgerEntry:
        # The handler has already run; a busy store gets a few more tries before
        # the entry is left running for reconciliation to pick up.
        for attempt in range(1, _COMPLETION_WRITE_ATTEMPTS + 1):
            try:
                return self.ledger.mark_completed(entry.id, result)
            except RetryableError as exc:
                if attempt == _COMPLETION_WRITE_ATTEMPTS:
                    self.broker.ack(entry.id)
                    self.logger.error(
                        "job_completion_unrecorded",
                        extra={"extra_fields": {"attempts": attempt, "error": str(exc)}},
                    )
                    raise
                self.logger.warning(
                    "job_completion_write_retry",
                    extra={"extra_fields": {"attempt": attempt, "error": str(exc)}},
                )
                time.sleep(0.05 * attempt)
        raise InvalidInput(f"job {entry.id} completion was never attempted")

    def _cancelled(self, entry: JobLedgerEntry, exc: JobCancelled) -> JobLedgerEntry:
        cancelled = self.ledger.mark_cancelled(entry.id)
        self.broker.ack(entry.id)
        self.ledger.log(entry.id, "info", "job cancelled by handler", {"reason": str(exc)})
        self.logger.info("job_cancelled", extra={"extra_fields": {"reason": str(exc)}})
        return cancelled

    def _failed(self, entry: JobLedgerEntry, exc: Exception) -> JobLedgerEntry:
        error = f"{type(exc).__name__}: {exc}"
        if is_retryable(exc) and entry.attempts <= entry.max_retries:
            delay_s = self.backoff_delay(entry.attempts)
            scheduled_for = datetime.now(timezone.utc) + timedelta(seconds=delay_s)
            retried = self.ledger.mark_retry(entry.id, error, scheduled_for.isoformat())
            self.broker.retry(entry.id, delay_s)
            self.ledger.log(entry.id, "warn", "job attempt failed; retry scheduled", {"error": error, "delay_s": delay_s})
            self.logger.warning(
                "job_retry_scheduled",
                extra={"extra_fields": {"attempt": entry.attempts, "delay_s": delay_s, "error": error}},
            )
            return retried

        failed = self.ledger.mark_failed(entry.id, error)
        self.broker.ack(entry.id)
        self.ledger.log(entry.id, "error", "job failed", {"error": error, "attempts": entry.attempts})
        self.logger.error(
            "job_failed",
            extra={"extra_fields": {"attempts": entry.attempts, "error": error, "job_name": entry.job_name}},
        )
        self.publisher.publish(
            "job.failed",
            {
                "job_id": entry.id,
                "job_name": entry.job_name,
                "queue_name": entry.queue_name,
                "attempts": entry.attempts,
                "error": error,
            },
            organization_id=entry.organization_id,
        )
        return failed

    def _loop(self) -> None:
        while not self._stop.is_set():
            task = self.broker.reserve(timeout=self.poll_timeout_s)
            if task is None:
                continue
            try:
                self.process(task)
            except Exception:
                self.logger.exception("worker_process_error", extra={"extra_fields": {"job_id": task.job_id}})
                self.broker.retry(task.job_id, self.backoff_base_s)

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for index in range(self.concurrency):
            thread = threading.Thread(target=self._loop, name=f"flowdesk-worker-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)
        self.logger.info("worker_pool_started", extra={"extra_fields": {"concurrency": self.concurrency}})

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self.broker.wake_all()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        self.logger.info("worker_pool_stopped")
