from __future__ import annotations

import pytest

from flowdesk.core.errors import InvalidInput, JobCancelled


def test_cancel_pending_job_removes_it_from_broker(queue) -> None:
    calls: list[str] = []
    queue.registry.register("generate_report", lambda ctx: calls.append(ctx.job_id))
    added = queue.manager.add_job("reports", {})

    cancelled = queue.manager.cancel(added.ledger_job_id)

    assert cancelled.status == "cancelled"
    assert cancelled.completed_at_iso is not None
    assert not queue.broker.contains(added.ledger_job_id)
    assert queue.worker.drain() == 0
    assert calls == []


def test_cancel_running_job_sets_flag_for_handler(queue) -> None:
    def long_running(ctx):
        queue.manager.cancel(ctx.job_id)
        assert ctx.cancel_requested()
        raise JobCancelled("stopped between records")

    queue.registry.register("sync_odoo", long_running)
    added = queue.manager.add_job("odoo-sync", {}, max_retries=3)

    queue.worker.drain()

    entry = queue.ledger.get(added.ledger_job_id)
    assert entry.status == "cancelled"
    assert entry.cancel_requested is True
    assert entry.attempts == 1
    assert queue.bus.events("job.failed") == []
    assert not queue.broker.contains(added.ledger_job_id)


def test_cancel_terminal_job_is_rejected(queue) -> None:
    queue.registry.register("generate_report", lambda ctx: "done")
    added = queue.manager.add_job("reports", {})
    queue.worker.drain()

    with pytest.raises(InvalidInput):
        queue.manager.cancel(added.ledger_job_id)
    assert queue.ledger.get(added.ledger_job_id).status == "completed"


def test_stale_broker_delivery_of_cancelled_job_is_skipped(queue) -> None:
    calls: list[str] = []
    queue.registry.register("generate_report", lambda ctx: calls.append(ctx.job_id))
    added = queue.manager.add_job("reports", {})
    queue.ledger.mark_cancelled(added.ledger_job_id)

    queue.worker.drain()

    assert calls == []
    assert queue.ledger.get(added.ledger_job_id).status == "cancelled"
    assert not queue.broker.contains(added.ledger_job_id)


def test_cancel_after_worker_claim_only_flags_the_job(queue) -> None:
    queue.registry.register("generate_report", lambda ctx: "done")
    added = queue.manager.add_job("reports", {})
    queue.ledger.mark_running(added.ledger_job_id)

    flagged = queue.manager.cancel(added.ledger_job_id)

    assert flagged.status == "running"
    assert flagged.cancel_requested is True
    assert flagged.completed_at_iso is None
    completed = queue.ledger.mark_completed(added.ledger_job_id, "done")
    assert completed.status == "completed"


def test_claim_after_cancel_is_refused(queue) -> None:
    calls: list[str] = []
    queue.registry.register("generate_report", lambda ctx: calls.append(ctx.job_id))
    added = queue.manager.add_job("reports", {})
    queue.ledger.cancel(added.ledger_job_id)

    with pytest.raises(InvalidInput):
        queue.ledger.mark_running(added.ledger_job_id)
    assert calls == []
