from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, TypeVar

from flowdesk.core.env import env_int, is_on
from flowdesk.core.errors import CircuitOpenError
from flowdesk.core.notifications import EventPublisher, NullEventPublisher
from flowdesk.core.store import StateStore

from .breaker import CircuitBreaker

BREAKERS = "breakers"
T = TypeVar("T")


class BreakerManager:
    """Per-integration breakers kept in a shared store so every process gates on the same state."""

    def __init__(
        self,
        store: StateStore,
        publisher: EventPublisher | None = None,
        *,
        enabled: bool | None = None,
        failure_threshold: int | None = None,
        window_seconds: int | None = None,
        open_seconds: int | None = None,
        half_open_max_trials: int | None = None,
    ) -> None:
        self.store = store
        self.publisher = publisher or NullEventPublisher()
        self.enabled = enabled if enabled is not None else is_on("FLOWDESK_BREAKERS_ENABLED", "on")
        self.failure_threshold = max(1, failure_threshold or env_int("FLOWDESK_BREAKER_FAILURE_THRESHOLD", 5))
        self.window_seconds = max(1, window_seconds or env_int("FLOWDESK_BREAKER_WINDOW_SECONDS", 120))
        self.open_seconds = max(1, open_seconds or env_int("FLOWDESK_BREAKER_OPEN_SECONDS", 60))
        self.half_open_max_trials = max(1, half_open_max_trials or env_int("FLOWDESK_BREAKER_HALFOPEN_MAX_TRIALS", 1))
        self.logger = logging.getLogger("flowdesk.breaker")

    def _build(self, integration: str, payload: dict[str, object] | None) -> CircuitBreaker:
        return CircuitBreaker.from_dict(
            integration,
            payload or {},
            failure_threshold=self.failure_threshold,
            window_seconds=self.window_seconds,
            open_seconds=self.open_seconds,
            half_open_max_trials=self.half_open_max_trials,
        )

    def get(self, integration: str) -> CircuitBreaker:
        return self._build(integration, self.store.snapshot().get(BREAKERS, integration))

    def state(self, integration: str, now: datetime | None = None) -> str:
        return self.get(integration).current_state(now)

    def snapshot(self) -> dict[str, dict[str, object]]:
        rows = self.store.snapshot().find(BREAKERS)
        return {str(row["id"]): self._build(str(row["id"]), row).to_dict() for row in rows}

    def _mutate(self, integration: str, fn: Callable[[CircuitBreaker], T]) -> tuple[T, CircuitBreaker]:
        with self.store.transaction() as uow:
            breaker = self._build(integration, uow.get(BREAKERS, integration))
            outcome = fn(breaker)
            row = {"id": integration, **breaker.to_dict()}
            if uow.get(BREAKERS, integration) is None:
                uow.insert(BREAKERS, row)
            else:
                uow.update(BREAKERS, integration, **row)
        return outcome, breaker

    def before_call(self, integration: str, now: datetime | None = None) -> str:
        """Claims permission for one call; raises CircuitOpenError when the gate is shut."""
        if not self.enabled:
            return "closed"
        previous: dict[str, str] = {}

        def claim(breaker: CircuitBreaker) -> bool:
            previous["state"] = breaker.state
            return breaker.allow_request(now=now)

        allowed, breaker = self._mutate(integration, claim)
        if previous["state"] != breaker.state:
            self._record_transition(integration, previous["state"], breaker.state, "cooldown elapsed")
        if not allowed:
            self.logger.info(
                "circuit_rejected_call",
                extra={"extra_fields": {"integration": integration, "state": breaker.state}},
            )
            raise CircuitOpenError(integration, breaker.last_error)
        return breaker.state

    def record_success(self, integration: str, now: datetime | None = None) -> None:
        if not self.enabled:
            return
        transition, _ = self._mutate(integration, lambda breaker: breaker.record_success(now=now))
        if transition is not None:
            self._record_transition(integration, transition[0], transition[1], "request succeeded")

    def record_failure(self, integration: str, error: str, now: datetime | None = None) -> None:
        if not self.enabled:
            return
        transition, breaker = self._mutate(integration, lambda item: item.record_failure(error, now=now))
        if transition is not None:
            self._record_transition(integration, transition[0], transition[1], error)
        else:
            self.logger.info(
                "circuit_failure_recorded",
                extra={"extra_fields": {"integration": integration, "failure_count": breaker.failure_count}},
            )

    def wrap(self, integration: str, fn: Callable[[], T]) -> T:
        self.before_call(integration)
        try:
            result = fn()
        except Exception as exc:
            self.record_failure(integration, str(exc))
            raise
        self.record_success(integration)
        return result

    def reset(self, integration: str) -> None:
        self.record_success(integration)

    def _record_transition(self, integration: str, from_state: str, to_state: str, reason: str) -> None:
        event = {"open": "circuit_opened", "half-open": "circuit_half_open", "closed": "circuit_closed"}[to_state]
        log = self.logger.warning if to_state == "open" else self.logger.info
        log(
            event,
            extra={"extra_fields": {"integration": integration, "from_state": from_state, "to_state": to_state, "reason": reason}},
        )
        if to_state == "open":
            self.publisher.publish(
                "integration.circuit_opened",
                {"integration": integration, "from_state": from_state, "reason": reason},
            )
