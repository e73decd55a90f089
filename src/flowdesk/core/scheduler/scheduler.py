from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable
from zoneinfo import ZoneInfo

from apscheduler.job import Job
from apscheduler.jobstores.base import BaseJobStore
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from pydantic import BaseModel, Field

from flowdesk.core.env import default_state_dir, is_test_mode

PERSISTENT_JOBSTORE = "default"
# Jobs bound to live in-process objects (broker, worker) cannot be pickled.
LOCAL_JOBSTORE = "local"


class ScheduledJobInfo(BaseModel):
    id: str
    next_run_time_iso: str | None = None
    trigger: str
    kwargs: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_job(cls, job: Job) -> "ScheduledJobInfo":
        # Jobs added before start() are pending and carry no next_run_time yet.
        next_run = getattr(job, "next_run_time", None)
        return cls(
            id=job.id,
            next_run_time_iso=next_run.isoformat() if next_run else None,
            trigger=str(job.trigger),
            kwargs=dict(job.kwargs),
        )


class SchedulerService:
    """Maintenance timers for the worker and API processes.

    Picklable jobs go to a SQLite-backed store under the state dir so they
    survive restarts; test mode keeps everything in memory and never starts.
    """

    def __init__(self, state_dir: Path | None = None) -> None:
        self.state_dir = state_dir or default_state_dir()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.test_mode = is_test_mode()
        self.timezone = ZoneInfo(os.getenv("FLOWDESK_TIMEZONE", "UTC"))
        self.logger = logging.getLogger("flowdesk.scheduler")
        self.scheduler = BackgroundScheduler(jobstores=self._jobstores(), timezone=self.timezone)
        self._started = False

    def _jobstores(self) -> dict[str, BaseJobStore]:
        persistent: BaseJobStore
        if self.test_mode:
            persistent = MemoryJobStore()
        else:
            persistent = SQLAlchemyJobStore(url=f"sqlite:///{self.state_dir / 'scheduler.sqlite'}")
        return {PERSISTENT_JOBSTORE: persistent, LOCAL_JOBSTORE: MemoryJobStore()}

    def _register(self, job_id: str, func: Callable[..., Any], trigger: str, **options: Any) -> None:
        self.scheduler.add_job(func, trigger=trigger, id=job_id, replace_existing=True, **options)
        self.logger.info("scheduler_job_registered", extra={"extra_fields": {"job_id": job_id, "trigger": trigger}})

    def add_interval(
        self,
        job_id: str,
        seconds: float,
        func: Callable[..., Any],
        kwargs: dict[str, Any] | None = None,
        jobstore: str = LOCAL_JOBSTORE,
    ) -> None:
        self._register(
            job_id,
            func,
            "interval",
            seconds=max(1.0, seconds),
            kwargs=kwargs or {},
            jobstore=jobstore,
            coalesce=True,
            max_instances=1,
        )

    def add_cron(
        self,
        job_id: str,
        hour: int,
        minute: int,
        func: Callable[..., Any],
        kwargs: dict[str, Any] | None = None,
    ) -> None:
        self._register(
            job_id,
            func,
            "cron",
            hour=hour,
            minute=minute,
            timezone=self.timezone,
            kwargs=kwargs or {},
            jobstore=PERSISTENT_JOBSTORE,
        )

    def list_jobs(self) -> list[ScheduledJobInfo]:
        return [ScheduledJobInfo.from_job(job) for job in self.scheduler.get_jobs()]

    def start(self) -> None:
        if self._started or self.test_mode:
            return
        self.scheduler.start()
        self._started = True
        self.logger.info("scheduler_started", extra={"extra_fields": {"jobs": len(self.scheduler.get_jobs())}})

    def shutdown(self) -> None:
        if not self._started:
            return
        self.scheduler.shutdown(wait=False)
        self._started = False
        self.logger.info("scheduler_stopped")
