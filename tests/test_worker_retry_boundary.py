from __future__ import annotations

from flowdesk.core.errors import InvalidInput, RetryableError


def test_retryable_failure_runs_max_retries_plus_one_times(queue) -> None:
    calls: list[int] = []

    def flaky(ctx):
        calls.append(ctx.attempt)
        raise RetryableError("upstream timeout")

    queue.registry.register("sync_odoo", flaky)
    added = queue.manager.add_job("odoo-sync", {"record_id": "r-1"}, max_retries=2)

    queue.worker.drain()

    entry = queue.ledger.get(added.ledger_job_id)
    assert calls == [1, 2, 3]
    assert entry.status == "failed"
    assert entry.attempts == 3
    assert entry.error == "RetryableError: upstream timeout"
    failed_events = queue.bus.events("job.failed")
    assert len(failed_events) == 1
    assert failed_events[0].payload["attempts"] == 3

    warnings = queue.ledger.get_logs(added.ledger_job_id, levels=["warn"])
    assert len(warnings) == 2
    errors = queue.ledger.get_logs(added.ledger_job_id, levels=["error"])
    assert [log.message for log in errors] == ["job failed"]


def test_retry_then_success(queue) -> None:
    def second_time_lucky(ctx):
        if ctx.attempt == 1:
            raise RetryableError("busy")
        return "ok"

    queue.registry.register("sync_odoo", second_time_lucky)
    added = queue.manager.add_job("odoo-sync", {}, max_retries=1)

    queue.worker.drain()

    entry = queue.ledger.get(added.ledger_job_id)
    assert entry.status == "completed"
    assert entry.attempts == 2
    assert entry.error is None
    assert entry.result == "ok"
    assert queue.bus.events("job.failed") == []


def test_non_retryable_failure_fails_on_first_attempt(queue) -> None:
    calls: list[int] = []

    def bad_payload(ctx):
        calls.append(ctx.attempt)
        raise InvalidInput("missing record_id")

    queue.registry.register("sync_odoo", bad_payload)
    added = queue.manager.add_job("odoo-sync", {}, max_retries=5)

    queue.worker.drain()

    assert calls == [1]
    entry = queue.ledger.get(added.ledger_job_id)
    assert entry.status == "failed"
    assert len(queue.bus.events("job.failed")) == 1


def test_zero_retries_fails_once(queue) -> None:
    def down(ctx):
        raise RetryableError("down")

    queue.registry.register("sync_odoo", down)
    added = queue.manager.add_job("odoo-sync", {}, max_retries=0)

    queue.worker.drain()

    entry = queue.ledger.get(added.ledger_job_id)
    assert entry.status == "failed"
    assert entry.attempts == 1


def test_backoff_is_exponential_and_capped(queue) -> None:
    from flowdesk.core.queue import JobWorker

    worker = JobWorker(queue.ledger, queue.broker, queue.registry, backoff_base_s=5, backoff_max_s=300)

    assert [worker.backoff_delay(n) for n in (1, 2, 3, 7)] == [10, 20, 40, 300]
