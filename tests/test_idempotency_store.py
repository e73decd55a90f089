from datetime import datetime, timedelta, timezone

import pytest

from flowdesk.core.errors import Conflict
from flowdesk.core.store import StateStore
from flowdesk.core.sync import IdempotencyStore
from flowdesk.core.sync.keys import derive_idempotency_key

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _store(tmp_path) -> IdempotencyStore:
    return IdempotencyStore(StateStore(tmp_path, "sync.json"), ttl_hours=24)


def test_claim_then_complete_replays_result(tmp_path) -> None:
    store = _store(tmp_path)

    first = store.claim("k1", "op-1", "sync_employee", now=NOW)
    assert first.replay is False
    assert first.record.status == "running"
    store.complete("k1", {"odoo_id": 7})

    again = store.claim("k1", "op-2", "sync_employee", now=NOW + timedelta(minutes=5))
    assert again.replay is True
    assert again.record.operation_id == "op-1"
    assert again.record.result == {"odoo_id": 7}


def test_running_key_conflicts_until_expired(tmp_path) -> None:
    store = _store(tmp_path)
    store.claim("k1", "op-1", "sync_employee", now=NOW)

    with pytest.raises(Conflict):
        store.claim("k1", "op-2", "sync_employee", now=NOW + timedelta(hours=1))

    later = store.claim("k1", "op-3", "sync_employee", now=NOW + timedelta(hours=25))
    assert later.replay is False
    assert later.record.operation_id == "op-3"
    assert later.record.first_attempt_at_iso == (NOW + timedelta(hours=25)).isoformat()


def test_failed_key_can_be_reclaimed(tmp_path) -> None:
    store = _store(tmp_path)
    store.claim("k1", "op-1", "sync_employee", now=NOW)
    store.fail("k1", "rejected")

    retry = store.claim("k1", "op-2", "sync_employee", now=NOW + timedelta(minutes=1))

    assert retry.replay is False
    assert retry.record.first_attempt_at_iso == NOW.isoformat()
    assert retry.record.error is None


def test_release_only_drops_own_running_claim(tmp_path) -> None:
    store = _store(tmp_path)
    store.claim("k1", "op-1", "sync_employee", now=NOW)

    assert store.release("k1", "op-other") is False
    assert store.release("k1", "op-1") is True
    assert store.get("k1") is None


def test_cleanup_removes_only_expired_keys(tmp_path) -> None:
    store = _store(tmp_path)
    store.claim("old", "op-1", "sync_employee", now=NOW)
    store.claim("fresh", "op-2", "sync_employee", now=NOW + timedelta(hours=20))

    assert store.cleanup_expired(now=NOW + timedelta(hours=30)) == 1
    assert store.get("old") is None
    assert store.get("fresh") is not None


def test_derived_key_ignores_mapping_order() -> None:
    left = derive_idempotency_key("create", "hr.employee", {"name": "A", "dept": {"x": 1, "y": 2}}, "org-1")
    right = derive_idempotency_key("create", "hr.employee", {"dept": {"y": 2, "x": 1}, "name": "A"}, "org-1")

    assert left == right
    assert left.startswith("create-hr.employee-")
    assert left != derive_idempotency_key("create", "hr.employee", {"name": "A", "dept": {"x": 1, "y": 2}}, "org-2")
