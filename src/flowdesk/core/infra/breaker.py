from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from flowdesk.core.store import parse_iso

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half-open"

Transition = tuple[str, str]


def _iso_or_none(value: datetime | None) -> str | None:
    return None if value is None else value.isoformat()


def _optional_iso(payload: dict[str, object], key: str) -> datetime | None:
    raw = payload.get(key)
    return parse_iso(raw) if isinstance(raw, str) else None


@dataclass
class CircuitBreaker:
    """Fail-fast gate for one integration point.

    Failures are counted inside a rolling window; reaching the threshold opens
    the circuit. After ``open_seconds`` a limited number of trial calls are let
    through (half-open); one success closes it, one failure reopens it.
    """

    integration: str
    failure_threshold: int = 5
    window_seconds: int = 120
    open_seconds: int = 60
    half_open_max_trials: int = 1
    state: str = CLOSED
    failures: list[datetime] = field(default_factory=list)
    opened_at: datetime | None = None
    last_failure: datetime | None = None
    last_error: str | None = None
    half_open_trials_used: int = 0

    def __post_init__(self) -> None:
        if self.state not in (CLOSED, OPEN, HALF_OPEN):
            self.state = CLOSED

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    def _reopens_at(self) -> datetime | None:
        if self.opened_at is None:
            return None
        return self.opened_at + timedelta(seconds=max(1, self.open_seconds))

    def _cooled_down(self, now: datetime) -> bool:
        reopens_at = self._reopens_at()
        return reopens_at is not None and now >= reopens_at

    def _move(self, target: str) -> Transition | None:
        previous, self.state = self.state, target
        return (previous, target) if previous != target else None

    def _trip(self, now: datetime) -> Transition | None:
        self.opened_at = now
        self.half_open_trials_used = 0
        return self._move(OPEN)

    def current_state(self, now: datetime | None = None) -> str:
        """State as observed at ``now``; an expired open circuit reads as half-open."""
        if self.state == OPEN and self._cooled_down(now or datetime.now(timezone.utc)):
            return HALF_OPEN
        return self.state

    def allow_request(self, now: datetime | None = None) -> bool:
        moment = now or datetime.now(timezone.utc)
        if self.state == OPEN:
            if not self._cooled_down(moment):
                return False
            self._move(HALF_OPEN)
            self.half_open_trials_used = 0
        if self.state == CLOSED:
            return True
        if self.half_open_trials_used >= max(1, self.half_open_max_trials):
            return False
        self.half_open_trials_used += 1
        return True

    def record_success(self, now: datetime | None = None) -> Transition | None:
        self.failures.clear()
        self.opened_at = self.last_failure = self.last_error = None
        self.half_open_trials_used = 0
        return self._move(CLOSED)

    def record_failure(self, error_str: str, now: datetime | None = None) -> Transition | None:
        moment = now or datetime.now(timezone.utc)
        self.last_failure = moment
        self.last_error = error_str

        if self.state == HALF_OPEN:
            return self._trip(moment)
        if self.state == OPEN:
            return None

        horizon = moment - timedelta(seconds=max(1, self.window_seconds))
        self.failures = [ts for ts in self.failures if ts > horizon]
        self.failures.append(moment)
        if len(self.failures) < max(1, self.failure_threshold):
            return None
        return self._trip(moment)

    def to_dict(self) -> dict[str, object]:
        return {
            "state": self.state,
            "failure_count": self.failure_count,
            "failures_iso": [ts.isoformat() for ts in self.failures],
            "opened_at_iso": _iso_or_none(self.opened_at),
            "last_failure_iso": _iso_or_none(self.last_failure),
            "last_error": self.last_error,
            "half_open_trials_used": self.half_open_trials_used,
        }

    @classmethod
    def from_dict(
        cls,
        integration: str,
        payload: dict[str, object],
        *,
        failure_threshold: int,
        window_seconds: int,
        open_seconds: int,
        half_open_max_trials: int,
    ) -> "CircuitBreaker":
        stamps = payload.get("failures_iso")
        failures: list[datetime] = []
        for raw in stamps if isinstance(stamps, list) else []:
            parsed = parse_iso(raw) if isinstance(raw, str) else None
            if parsed is not None:
                failures.append(parsed)
        last_error = payload.get("last_error")
        return cls(
            integration=integration,
            failure_threshold=failure_threshold,
            window_seconds=window_seconds,
            open_seconds=open_seconds,
            half_open_max_trials=half_open_max_trials,
            state=str(payload.get("state") or CLOSED),
            failures=failures,
            opened_at=_optional_iso(payload, "opened_at_iso"),
            last_failure=_optional_iso(payload, "last_failure_iso"),
            last_error=None if last_error is None else str(last_error),
            half_open_trials_used=int(payload.get("half_open_trials_used") or 0),
        )
