"""
In-process publish/subscribe bus for route events.
"""
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
import logging
import threading
import uuid

from batch_routing.core.route_types import RouteEvent, RouteEventType

logger = logging.getLogger(__name__)

EventHandler = Callable[[RouteEvent], None]


@dataclass
class Subscription:
    """Handle returned by RouteEventBus.subscribe; cancel() detaches the handler."""
    event_type: RouteEventType
    handler: EventHandler
    batch_id: Optional[str] = None
    bus: Optional['RouteEventBus'] = field(default=None, repr=False)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    active: bool = True

    def matches(self, event: RouteEvent) -> bool:
        if not self.active or event.type != self.event_type:
            return False
        return self.batch_id is None or self.batch_id == event.batch_id

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        if self.bus is not None:
            self.bus._remove(self)


class RouteEventBus:
    """
    Dispatches published events synchronously to matching subscribers.

    A failing handler is logged and does not prevent delivery to the others.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: Dict[RouteEventType, List[Subscription]] = {}

    def subscribe(self, event_type: RouteEventType, handler: EventHandler, batch_id: Optional[str] = None) -> Subscription:
        subscription = Subscription(event_type=RouteEventType(event_type), handler=handler, batch_id=batch_id, bus=self)
        with self._lock:
            self._subscriptions.setdefault(subscription.event_type, []).append(subscription)
        logger.debug(f"Subscribed {subscription.id} to {subscription.event_type.value} (batch={batch_id})")
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            handlers = self._subscriptions.get(subscription.event_type, [])
            if subscription in handlers:
                handlers.remove(subscription)

    def publish(self, event: RouteEvent) -> int:
        """
        Deliver an event to every matching handler.

        Returns:
            Number of handlers invoked.
        """
        with self._lock:
            targets = [s for s in self._subscriptions.get(event.type, []) if s.matches(event)]

        delivered = 0
        for subscription in targets:
            try:
                subscription.handler(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Handler {subscription.id} failed for {event.type.value} event {event.id}: {e}",
                    exc_info=True
                )
        return delivered

    def subscriber_count(self, event_type: Optional[RouteEventType] = None, batch_id: Optional[str] = None) -> int:
        with self._lock:
            if event_type is not None:
                subscriptions = list(self._subscriptions.get(event_type, []))
            else:
                subscriptions = [s for subs in self._subscriptions.values() for s in subs]
        if batch_id is not None:
            subscriptions = [s for s in subscriptions if s.batch_id == batch_id]
        return len(subscriptions)
