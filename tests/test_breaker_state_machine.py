from datetime import datetime, timedelta, timezone

from flowdesk.core.infra.breaker import CircuitBreaker


def test_breaker_transitions() -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    breaker = CircuitBreaker(integration="odoo", failure_threshold=3, open_seconds=60, half_open_max_trials=1)

    assert breaker.allow_request(now=now) is True
    assert breaker.record_failure("e1", now=now) is None
    assert breaker.state == "closed"

    assert breaker.record_failure("e2", now=now + timedelta(seconds=1)) is None
    transition = breaker.record_failure("e3", now=now + timedelta(seconds=2))
    assert transition == ("closed", "open")
    assert breaker.state == "open"

    assert breaker.allow_request(now=now + timedelta(seconds=10)) is False
    assert breaker.current_state(now=now + timedelta(seconds=63)) == "half-open"
    assert breaker.allow_request(now=now + timedelta(seconds=63)) is True
    assert breaker.state == "half-open"
    assert breaker.allow_request(now=now + timedelta(seconds=64)) is False

    closed_transition = breaker.record_success(now=now + timedelta(seconds=65))
    assert closed_transition == ("half-open", "closed")
    assert breaker.state == "closed"
    assert breaker.failure_count == 0

    breaker.record_failure("e1", now=now + timedelta(seconds=66))
    breaker.record_failure("e2", now=now + timedelta(seconds=67))
    breaker.record_failure("e3", now=now + timedelta(seconds=68))
    assert breaker.state == "open"
    assert breaker.allow_request(now=now + timedelta(seconds=131)) is True
    reopen = breaker.record_failure("still broken", now=now + timedelta(seconds=132))
    assert reopen == ("half-open", "open")
    assert breaker.opened_at == now + timedelta(seconds=132)
    assert breaker.last_error == "still broken"


def test_failures_outside_window_do_not_count() -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    breaker = CircuitBreaker(integration="odoo", failure_threshold=2, window_seconds=30)

    breaker.record_failure("old", now=now)
    assert breaker.record_failure("new", now=now + timedelta(seconds=31)) is None
    assert breaker.state == "closed"
    assert breaker.failure_count == 1


def test_round_trips_through_dict() -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    breaker = CircuitBreaker(integration="odoo", failure_threshold=1)
    breaker.record_failure("boom", now=now)

    restored = CircuitBreaker.from_dict(
        "odoo",
        breaker.to_dict(),
        failure_threshold=1,
        window_seconds=120,
        open_seconds=60,
        half_open_max_trials=1,
    )

    assert restored.state == "open"
    assert restored.opened_at == now
    assert restored.failures == [now]
    assert restored.last_error == "boom"
