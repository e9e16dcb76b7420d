"""In-process publish/subscribe bus for UI notifications."""

from collections import defaultdict, deque
from typing import Any, Callable

import structlog

logger = structlog.get_logger(__name__)

Event = dict[str, Any]
Handler = Callable[[Event], None]

# Topics published by the core
ROUTE_CHANGED = "routeChanged"
ONLINE = "online"
OFFLINE = "offline"
SYNC_STARTED = "syncStarted"
SYNC_PROGRESS = "syncProgress"
SYNC_COMPLETED = "syncCompleted"
SYNC_FAILED = "syncFailed"
CONFLICT = "conflict"
SYNC_BACKLOG_HIGH = "syncBacklogHigh"
SIGNED_IN = "signedIn"
SIGNED_OUT = "signedOut"
LOCAL_CHANGED = "localChanged"
SNAPSHOT_CREATED = "snapshotCreated"
SNAPSHOT_RESTORED = "snapshotRestored"

WILDCARD = "*"


class EventBus:
    """Topic-routed event bus with synchronous, publish-ordered delivery.

    Events published from inside a handler are queued and delivered after
    the current event has reached every subscriber, so each subscriber
    observes events in publish order.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)
        self._queue: deque[tuple[str, Event]] = deque()
        self._dispatching = False

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Subscribe a handler to a topic ("*" for all).

        Returns:
            A callable that removes the subscription.
        """
        self._subscribers[topic].append(handler)
        return lambda: self.unsubscribe(topic, handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        """Remove a handler. Unknown handlers are ignored."""
        handlers = self._subscribers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, topic: str, payload: Event | None = None) -> None:
        """Publish an event to a topic."""
        event = dict(payload or {})
        event["topic"] = topic
        self._queue.append((topic, event))
        if self._dispatching:
            return

        self._dispatching = True
        try:
            while self._queue:
                self._deliver(*self._queue.popleft())
        finally:
            self._dispatching = False

    def _deliver(self, topic: str, event: Event) -> None:
        handlers = list(self._subscribers.get(topic, []))
        handlers.extend(self._subscribers.get(WILDCARD, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("event_handler_failed", topic=topic)
