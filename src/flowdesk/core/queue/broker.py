from __future__ import annotations

import heapq
import itertools
import threading
import time
from dataclasses import dataclass


@dataclass(frozen=True)
class BrokerTask:
    job_id: str
    queue_name: str
    priority: int


class InMemoryBroker:
    """Priority dispatch of ledger ids; lower priority numbers go first, FIFO within a level.

    An id is held at most once, either queued or in flight.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._seq = itertools.count()
        self._ready: list[tuple[int, int, str]] = []
        self._delayed: list[tuple[float, int, str]] = []
        self._queued: dict[str, tuple[int, BrokerTask]] = {}
        self._in_flight: dict[str, BrokerTask] = {}

    def enqueue(
        self,
        job_id: str,
        queue_name: str,
        priority: int = 5,
        delay_s: float = 0.0,
        now: float | None = None,
    ) -> bool:
        with self._cond:
            if job_id in self._queued or job_id in self._in_flight:
                return False
            self._push(BrokerTask(job_id=job_id, queue_name=queue_name, priority=priority), delay_s, now)
            self._cond.notify()
            return True

    def _push(self, task: BrokerTask, delay_s: float, now: float | None) -> None:
        seq = next(self._seq)
        self._queued[task.job_id] = (seq, task)
        if delay_s > 0:
            current = now if now is not None else time.monotonic()
            heapq.heappush(self._delayed, (current + delay_s, seq, task.job_id))
        else:
            heapq.heappush(self._ready, (task.priority, seq, task.job_id))

    def _promote_due(self, now: float) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, seq, job_id = heapq.heappop(self._delayed)
            held = self._queued.get(job_id)
            if held is None or held[0] != seq:
                continue
            heapq.heappush(self._ready, (held[1].priority, seq, job_id))

    def _pop_ready(self) -> BrokerTask | None:
        while self._ready:
            _, seq, job_id = heapq.heappop(self._ready)
            held = self._queued.get(job_id)
            if held is None or held[0] != seq:
                continue
            del self._queued[job_id]
            self._in_flight[job_id] = held[1]
            return held[1]
        return None

    def reserve(self, timeout: float | None = None, now: float | None = None) -> BrokerTask | None:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                self._promote_due(now if now is not None else time.monotonic())
                task = self._pop_ready()
                if task is not None or now is not None:
                    return task
                wait = None if deadline is None else deadline - time.monotonic()
                if wait is not None and wait <= 0:
                    return None
                if self._delayed:
                    until_due = self._delayed[0][0] - time.monotonic()
                    wait = until_due if wait is None else min(wait, until_due)
                self._cond.wait(timeout=max(0.0, wait) if wait is not None else None)

    def ack(self, job_id: str) -> None:
        with self._cond:
            self._in_flight.pop(job_id, None)

    def retry(self, job_id: str, delay_s: float, now: float | None = None) -> bool:
        with self._cond:
            task = self._in_flight.pop(job_id, None)
            if task is None:
                return False
            self._push(task, delay_s, now)
            self._cond.notify()
            return True

    def remove(self, job_id: str) -> bool:
        with self._cond:
            return self._queued.pop(job_id, None) is not None

    def contains(self, job_id: str) -> bool:
        with self._cond:
            return job_id in self._queued or job_id in self._in_flight

    def flush(self) -> None:
        with self._cond:
            self._ready.clear()
            self._delayed.clear()
            self._queued.clear()

    def size(self) -> int:
        with self._cond:
            return len(self._queued)

    def wake_all(self) -> None:
        with self._cond:
            self._cond.notify_all()
