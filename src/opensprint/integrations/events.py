"""In-process event bus.

The orchestrator publishes status and output events here without knowing how
they are delivered. Subscribers (a WebSocket bridge, Slack, a test recorder)
receive each event at most once; a failing subscriber never affects the
publisher or the other subscribers.
"""

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, dict], None]


class EventBus:
    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback(project_id, event). Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, project_id: str, event: dict) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(project_id, event)
            except Exception:
                logger.exception(
                    "Event subscriber failed for %s event in project %s",
                    event.get("type"), project_id,
                )
