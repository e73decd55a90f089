from __future__ import annotations

import logging
import os
import signal
import time

from flowdesk.core.env import default_state_dir, env_float
from flowdesk.core.logging import configure_logging
from flowdesk.core.runtime import Runtime, build_runtime
from flowdesk.core.scheduler import SchedulerService
from flowdesk.core.scheduler.jobs import run_idempotency_cleanup


def _parse_hhmm(value: str, default: tuple[int, int]) -> tuple[int, int]:
    try:
        hour_raw, minute_raw = value.split(":", 1)
        hour = int(hour_raw)
        minute = int(minute_raw)
    except ValueError:
        return default
    if 0 <= hour <= 23 and 0 <= minute <= 59:
        return hour, minute
    return default


class Worker:
    def __init__(self, runtime: Runtime | None = None) -> None:
        self.runtime = runtime or build_runtime(default_state_dir())
        self.scheduler = SchedulerService(state_dir=self.runtime.state_dir)
        self.logger = logging.getLogger("flowdesk.worker")
        self._running = True

    def schedule_maintenance_jobs(self) -> None:
        self.scheduler.add_interval(
            "maintenance:reconcile",
            env_float("FLOWDESK_RECONCILE_INTERVAL_S", 60.0),
            self.runtime.queue.reconcile,
        )
        self.scheduler.add_interval(
            "maintenance:approval_sweep",
            env_float("FLOWDESK_RECONCILE_INTERVAL_S", 60.0),
            self.runtime.trigger.sweep,
            kwargs={"service": self.runtime.approvals},
        )
        hour, minute = _parse_hhmm(os.getenv("FLOWDESK_IDEMPOTENCY_CLEANUP_TIME", "03:30"), (3, 30))
        self.scheduler.add_cron(
            "maintenance:idempotency_cleanup",
            hour=hour,
            minute=minute,
            func=run_idempotency_cleanup,
            kwargs={"state_dir": str(self.runtime.state_dir)},
        )

    def _handle_signal(self, signum, frame) -> None:  # type: ignore[no-untyped-def]
        _ = frame
        self.logger.info("worker_signal_received", extra={"extra_fields": {"signal": signum}})
        self._running = False

    def run_forever(self) -> None:
        configure_logging(self.runtime.state_dir, component="worker")
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

        # The broker starts empty; every pending ledger entry is picked up again.
        recovered = self.runtime.queue.reconcile(grace_s=0)
        self.logger.info("worker_recovered_pending_jobs", extra={"extra_fields": {"count": len(recovered)}})

        self.schedule_maintenance_jobs()
        self.runtime.worker.start()
        self.scheduler.start()
        try:
            while self._running:
                time.sleep(0.5)
        finally:
            self.scheduler.shutdown()
            self.runtime.worker.stop()
            self.logger.info("worker_stopped")


def run() -> None:
    Worker().run_forever()


if __name__ == "__main__":
    run()
