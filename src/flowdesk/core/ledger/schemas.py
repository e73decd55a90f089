from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from flowdesk.core.store import new_id, now_iso

JobStatus = Literal["pending", "running", "completed", "failed", "cancelled"]
JobType = Literal["immediate", "scheduled"]
JobPriority = Literal["critical", "high", "normal", "low"]
LogLevel = Literal["debug", "info", "warn", "error"]

TERMINAL_JOB_STATUSES = {"completed", "failed", "cancelled"}

BROKER_PRIORITY: dict[str, int] = {"critical": 1, "high": 3, "normal": 5, "low": 10}


class JobLedgerEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str | None = None
    queue_name: str
    job_name: str
    job_type: JobType = "immediate"
    status: JobStatus = "pending"
    priority: JobPriority = "normal"
    payload: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: str | None = None
    attempts: int = 0
    max_retries: int = 3
    trigger_ref: str | None = None
    cancel_requested: bool = False
    scheduled_for_iso: str | None = None
    enqueued_at_iso: str | None = None
    started_at_iso: str | None = None
    completed_at_iso: str | None = None
    created_at_iso: str = Field(default_factory=now_iso)
    updated_at_iso: str = Field(default_factory=now_iso)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class JobLogEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    job_id: str
    level: LogLevel = "info"
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    ts_iso: str = Field(default_factory=now_iso)


class JobStats(BaseModel):
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_type: dict[str, int] = Field(default_factory=dict)
    by_priority: dict[str, int] = Field(default_factory=dict)
