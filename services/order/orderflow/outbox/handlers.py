"""Explicit per-event-type handler registry used by the outbox processor."""

from collections import defaultdict
from typing import Callable, Optional

import structlog

from orderflow.core.config import settings
from orderflow.db.models import OutboxEvent
from orderflow.outbox.events import ALL_EVENT_TYPES

logger = structlog.get_logger(__name__)

Handler = Callable[[OutboxEvent], None]


class HandlerRegistry:
    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def register(self, event_type: str, fn: Optional[Handler] = None):
        """Register ``fn`` for ``event_type``; usable as a decorator."""
        def add(handler: Handler) -> Handler:
            self._handlers[event_type].append(handler)
            return handler
        return add(fn) if fn is not None else add

    def handlers_for(self, event_type: str) -> list[Handler]:
        return list(self._handlers.get(event_type, ()))

    def event_types(self) -> list[str]:
        return sorted(t for t, hs in self._handlers.items() if hs)

    def dispatch(self, ev: OutboxEvent) -> int:
        """Run every handler for ``ev``; the first exception propagates."""
        handlers = self.handlers_for(ev.event_type)
        if not handlers:
            logger.warning("outbox.no_handler", event_id=ev.id, event_type=ev.event_type)
        for handler in handlers:
            handler(ev)
        return len(handlers)


def publish_to_kafka(ev: OutboxEvent) -> None:
    from orderflow.kafka.producer import send

    send(
        topic=settings.TOPIC_ORDER_EVENTS,
        key=ev.aggregate_id,
        value={**ev.payload, "event_id": ev.id, "event_type": ev.event_type},
        headers={"event_type": ev.event_type, "idempotency_key": ev.idempotency_key or f"outbox:{ev.id}"},
    )


def default_registry() -> HandlerRegistry:
    registry = HandlerRegistry()
    if settings.OUTBOX_PUBLISH_TO_KAFKA:
        for event_type in ALL_EVENT_TYPES:
            registry.register(event_type, publish_to_kafka)
    return registry
