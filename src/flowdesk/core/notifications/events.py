from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Protocol

from pydantic import BaseModel, Field

from flowdesk.core.logging.context import current_correlation_id
from flowdesk.core.store import new_id, now_iso

logger = logging.getLogger("flowdesk.events")


class DomainEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    topic: str
    organization_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str | None = None
    published_at_iso: str = Field(default_factory=now_iso)


EventHandler = Callable[[DomainEvent], None]


class EventPublisher(Protocol):
    def publish(self, topic: str, payload: dict[str, Any], organization_id: str | None = None) -> str: ...


class NullEventPublisher:
    def publish(self, topic: str, payload: dict[str, Any], organization_id: str | None = None) -> str:
        return ""


class InMemoryEventBus:
    """Process-local pub/sub; handler failures are logged and never reach the publisher."""

    def __init__(self, history_limit: int = 500) -> None:
        self._subscribers: dict[str, list[EventHandler]] = {}
        self._lock = threading.Lock()
        self.history_limit = history_limit
        self.history: list[DomainEvent] = []

    def subscribe(self, topic: str, handler: EventHandler) -> None:
        with self._lock:
            self._subscribers.setdefault(topic, []).append(handler)

    def publish(self, topic: str, payload: dict[str, Any], organization_id: str | None = None) -> str:
        event = DomainEvent(
            topic=topic,
            organization_id=organization_id,
            payload=payload,
            correlation_id=current_correlation_id(),
        )
        with self._lock:
            self.history.append(event)
            if len(self.history) > self.history_limit:
                self.history = self.history[-self.history_limit :]
            handlers = list(self._subscribers.get(topic, [])) + list(self._subscribers.get("*", []))

        logger.debug("event_published", extra={"extra_fields": {"topic": topic, "event_id": event.id}})
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("event_handler_failed", extra={"extra_fields": {"topic": topic, "event_id": event.id}})
        return event.id

    def events(self, topic: str | None = None) -> list[DomainEvent]:
        with self._lock:
            return [event for event in self.history if topic is None or event.topic == topic]
