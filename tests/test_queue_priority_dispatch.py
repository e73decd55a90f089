from __future__ import annotations

import pytest

from flowdesk.core.errors import InvalidInput


def test_higher_priority_jobs_dispatch_first(queue) -> None:
    seen: list[str] = []
    queue.registry.register("generate_report", lambda ctx: seen.append(ctx.payload["tag"]))

    for priority in ("low", "normal", "critical", "high", "normal"):
        queue.manager.add_job("reports", {"tag": priority}, priority=priority)

    assert queue.worker.drain() == 5
    assert seen == ["critical", "high", "normal", "normal", "low"]


def test_completed_job_records_result(queue) -> None:
    queue.registry.register("sync_odoo", lambda ctx: {"synced": ctx.payload["record_id"], "attempt": ctx.attempt})

    added = queue.manager.add_job("odoo-sync", {"record_id": "r-1"}, organization_id="org-1")
    assert added.broker_job_id == added.ledger_job_id

    pending = queue.manager.get_job(added.ledger_job_id)
    assert pending.status == "pending"
    assert pending.job_name == "sync_odoo"

    assert pending.enqueued_at_iso is not None
    queue.worker.drain()

    done = queue.manager.get_job(added.ledger_job_id)
    assert done.status == "completed"
    assert done.result == {"synced": "r-1", "attempt": 1}
    assert done.attempts == 1
    assert done.completed_at_iso is not None
    assert done.started_at_iso is not None
    assert queue.broker.size() == 0
    assert not queue.broker.contains(added.ledger_job_id)


def test_add_job_by_name_routes_to_queue(queue) -> None:
    added = queue.manager.add_job_by_name("generate_report", {"type": "pdf"}, priority="high")

    entry = queue.manager.get_job(added.ledger_job_id)
    assert entry.queue_name == "reports"
    assert entry.priority == "high"


def test_unknown_queue_or_priority_is_rejected(queue) -> None:
    with pytest.raises(InvalidInput):
        queue.manager.add_job("emails", {})
    with pytest.raises(InvalidInput):
        queue.manager.add_job_by_name("send_email", {})
    with pytest.raises(InvalidInput):
        queue.manager.add_job("reports", {}, priority="urgent")
    assert queue.ledger.stats().total == 0


def test_job_without_handler_fails_without_retry(queue) -> None:
    added = queue.manager.add_job("reports", {"type": "pdf"})

    queue.worker.drain()

    entry = queue.ledger.get(added.ledger_job_id)
    assert entry.status == "failed"
    assert entry.attempts == 1
    assert "no handler registered" in (entry.error or "")


def test_stats_count_by_status_and_priority(queue) -> None:
    queue.registry.register("generate_report", lambda ctx: None)
    queue.manager.add_job("reports", {}, priority="high", organization_id="org-1")
    queue.manager.add_job("reports", {}, organization_id="org-1")
    queue.manager.add_job("reports", {}, organization_id="org-2")
    queue.worker.run_once()

    stats = queue.ledger.stats(organization_id="org-1")
    assert stats.total == 2
    assert stats.by_status == {"completed": 1, "pending": 1}
    assert stats.by_priority == {"high": 1, "normal": 1}
