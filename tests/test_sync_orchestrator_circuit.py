from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from flowdesk.core.errors import CircuitOpenError, FatalError
from flowdesk.core.infra import BreakerManager
from flowdesk.core.notifications import InMemoryEventBus
from flowdesk.core.store import StateStore
from flowdesk.core.sync import IdempotencyStore, OperationAuditLog, SyncOrchestrator


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _build(tmp_path, clock: Clock, bus: InMemoryEventBus | None = None) -> SyncOrchestrator:
    store = StateStore(tmp_path, "sync.json")
    breakers = BreakerManager(
        StateStore(tmp_path, "breakers.json"),
        publisher=bus,
        enabled=True,
        failure_threshold=5,
        window_seconds=120,
        open_seconds=60,
        half_open_max_trials=1,
    )
    return SyncOrchestrator(
        IdempotencyStore(store),
        OperationAuditLog(store),
        breakers,
        max_retries=0,
        sleep=lambda _: None,
        clock=clock,
    )


def _rejected():
    raise ValueError("record rejected by server")


def test_open_circuit_fails_fast_and_releases_key(tmp_path) -> None:
    clock = Clock()
    bus = InMemoryEventBus()
    orchestrator = _build(tmp_path, clock, bus)

    for index in range(5):
        with pytest.raises(FatalError):
            orchestrator.execute(f"k{index}", _rejected, operation_type="sync_employee")
        clock.advance(1)

    assert orchestrator.breakers.state("odoo", now=clock()) == "open"
    assert len(bus.events("integration.circuit_opened")) == 1

    calls: list[int] = []
    with pytest.raises(CircuitOpenError) as excinfo:
        orchestrator.execute("fresh", lambda: calls.append(1), operation_type="sync_employee")

    assert calls == []
    assert excinfo.value.last_error == "record rejected by server"
    assert orchestrator.idempotency.get("fresh") is None
    assert orchestrator.audit_log.list(idempotency_key="fresh") == []


def test_half_open_allows_one_trial_then_closes(tmp_path) -> None:
    clock = Clock()
    orchestrator = _build(tmp_path, clock)
    for index in range(5):
        with pytest.raises(FatalError):
            orchestrator.execute(f"k{index}", _rejected, operation_type="sync_employee")

    clock.advance(61)
    assert orchestrator.breakers.state("odoo", now=clock()) == "half-open"

    seen_states: list[str] = []

    def trial():
        seen_states.append(orchestrator.breakers.get("odoo").state)
        with pytest.raises(CircuitOpenError):
            orchestrator.execute("other", lambda: "blocked", operation_type="sync_employee")
        return {"ok": True}

    assert orchestrator.execute("trial", trial, operation_type="sync_employee") == {"ok": True}
    assert seen_states == ["half-open"]
    assert orchestrator.breakers.state("odoo", now=clock()) == "closed"
    assert orchestrator.execute("after", lambda: "open for business", operation_type="sync_employee") == "open for business"


def test_failed_trial_reopens_circuit(tmp_path) -> None:
    clock = Clock()
    orchestrator = _build(tmp_path, clock)
    for index in range(5):
        with pytest.raises(FatalError):
            orchestrator.execute(f"k{index}", _rejected, operation_type="sync_employee")

    clock.advance(61)
    with pytest.raises(FatalError):
        orchestrator.execute("trial", _rejected, operation_type="sync_employee")

    assert orchestrator.breakers.state("odoo", now=clock()) == "open"
    with pytest.raises(CircuitOpenError):
        orchestrator.execute("trial-2", lambda: "blocked", operation_type="sync_employee")
