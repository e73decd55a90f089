from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from flowdesk.core.errors import InvalidInput
from flowdesk.core.ledger import JobLedger, JobLedgerEntry

QUEUE_TO_JOB: dict[str, str] = {
    "odoo-sync": "sync_odoo",
    "reports": "generate_report",
}
JOB_TO_QUEUE: dict[str, str] = {job: queue for queue, job in QUEUE_TO_JOB.items()}


def job_name_for_queue(queue_name: str) -> str:
    try:
        return QUEUE_TO_JOB[queue_name]
    except KeyError as exc:
        raise InvalidInput(f"unknown queue: {queue_name}") from exc


def queue_for_job_name(job_name: str) -> str:
    try:
        return JOB_TO_QUEUE[job_name]
    except KeyError as exc:
        raise InvalidInput(f"unknown job: {job_name}") from exc


@dataclass
class JobContext:
    entry: JobLedgerEntry
    ledger: JobLedger
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("flowdesk.worker"))

    @property
    def job_id(self) -> str:
        return self.entry.id

    @property
    def payload(self) -> dict[str, Any]:
        return self.entry.payload

    @property
    def attempt(self) -> int:
        return self.entry.attempts

    def cancel_requested(self) -> bool:
        return self.ledger.get(self.entry.id).cancel_requested

    def log(self, message: str, level: str = "info", **metadata: Any) -> None:
        self.ledger.log(self.entry.id, level, message, metadata)


JobHandler = Callable[[JobContext], Any]


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def register(self, job_name: str, handler: JobHandler) -> None:
        self._handlers[job_name] = handler

    def get(self, job_name: str) -> JobHandler:
        handler = self._handlers.get(job_name)
        if handler is None:
            raise InvalidInput(f"no handler registered for job {job_name}")
        return handler

    def names(self) -> list[str]:
        return sorted(self._handlers)
