"""
Event bus for invoicing domain events.

Synchronous in-process pub/sub. Handlers execute immediately in the same
thread as the publisher. Handler errors are logged and never propagate: the
invoice or subscription change has already been committed by the time the
event is published.
"""

import logging
from typing import Callable, Dict, List, Type

from core.events import DomainEvent

logger = logging.getLogger(__name__)

Handler = Callable[[DomainEvent], None]


class EventBus:
    """
    In-process event bus for invoicing domain events.

    Subscribe by event class or class name, publish by event instance.
    Handlers are called synchronously in subscription order.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Handler]] = {}

    @staticmethod
    def _key(event_type: str | Type[DomainEvent]) -> str:
        return event_type if isinstance(event_type, str) else event_type.__name__

    def subscribe(self, event_type: str | Type[DomainEvent], callback: Handler) -> None:
        """
        Subscribe to events of a specific type.

        Args:
            event_type: Event class, or its name (e.g. 'InvoicePaid')
            callback: Function to call when event is published
        """
        self._subscribers.setdefault(self._key(event_type), []).append(callback)

    def unsubscribe(self, event_type: str | Type[DomainEvent], callback: Handler) -> bool:
        """Remove a handler. Returns False if it was not subscribed."""
        handlers = self._subscribers.get(self._key(event_type), [])
        if callback in handlers:
            handlers.remove(callback)
            return True
        return False

    def handler_count(self, event_type: str | Type[DomainEvent]) -> int:
        return len(self._subscribers.get(self._key(event_type), []))

    def publish(self, event: DomainEvent) -> None:
        """
        Publish an event to all subscribers of that type.

        Args:
            event: DomainEvent instance to publish
        """
        event_type = event.__class__.__name__

        for callback in list(self._subscribers.get(event_type, [])):
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Handler %s failed for %s (event_id=%s)",
                    getattr(callback, "__name__", repr(callback)),
                    event_type,
                    event.event_id,
                )
