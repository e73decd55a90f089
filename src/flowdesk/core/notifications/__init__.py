from .events import DomainEvent, EventPublisher, InMemoryEventBus, NullEventPublisher

__all__ = ["DomainEvent", "EventPublisher", "InMemoryEventBus", "NullEventPublisher"]
