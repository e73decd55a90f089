from datetime import datetime, timedelta, timezone

import pytest

from flowdesk.core.errors import CircuitOpenError
from flowdesk.core.infra import BreakerManager
from flowdesk.core.notifications import InMemoryEventBus
from flowdesk.core.store import StateStore


def test_breaker_persists_across_managers(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("FLOWDESK_BREAKER_FAILURE_THRESHOLD", "1")
    monkeypatch.setenv("FLOWDESK_BREAKERS_ENABLED", "on")
    bus = InMemoryEventBus()

    manager = BreakerManager(StateStore(tmp_path, "breakers.json"), publisher=bus)

    def boom():
        raise RuntimeError("boom")

    for _ in range(2):
        with pytest.raises((RuntimeError, CircuitOpenError)):
            manager.wrap("odoo", boom)

    snapshot = manager.snapshot()
    assert snapshot["odoo"]["state"] == "open"
    assert len(bus.events("integration.circuit_opened")) == 1

    loaded = BreakerManager(StateStore(tmp_path, "breakers.json"))
    loaded_snapshot = loaded.snapshot()
    assert loaded_snapshot["odoo"]["state"] == "open"
    assert loaded_snapshot["odoo"]["last_error"] == "boom"
    with pytest.raises(CircuitOpenError):
        loaded.before_call("odoo")


def test_half_open_admits_a_single_trial_across_managers(tmp_path) -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    first = BreakerManager(StateStore(tmp_path, "breakers.json"), failure_threshold=2, open_seconds=30)
    second = BreakerManager(StateStore(tmp_path, "breakers.json"), failure_threshold=2, open_seconds=30)

    first.record_failure("odoo", "timeout", now=now)
    second.record_failure("odoo", "timeout", now=now + timedelta(seconds=1))
    assert first.state("odoo", now=now + timedelta(seconds=2)) == "open"

    trial_time = now + timedelta(seconds=40)
    assert first.before_call("odoo", now=trial_time) == "half-open"
    with pytest.raises(CircuitOpenError):
        second.before_call("odoo", now=trial_time)

    second.record_success("odoo", now=trial_time)
    assert first.state("odoo") == "closed"
    assert first.before_call("odoo") == "closed"


def test_disabled_manager_never_blocks(tmp_path) -> None:
    manager = BreakerManager(StateStore(tmp_path, "breakers.json"), enabled=False, failure_threshold=1)

    manager.record_failure("odoo", "down")
    manager.record_failure("odoo", "down")

    assert manager.before_call("odoo") == "closed"
    assert manager.snapshot() == {}
