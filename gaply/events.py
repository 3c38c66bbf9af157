from __future__ import annotations

import logging
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)

GAPS_UPDATED = "gaps_updated"
PREFERENCE_CHANGE_SUMMARY = "preference_change_summary"

Listener = Callable[[dict[str, Any]], None]


class EventBus:
    """In-process notifications for collaborators such as the timeline view."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(topic, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners.get(topic, []):
                    self._listeners[topic].remove(listener)

        return unsubscribe

    def publish(self, topic: str, payload: dict[str, Any]) -> int:
        with self._lock:
            listeners = list(self._listeners.get(topic, []))
        delivered = 0
        for listener in listeners:
            try:
                listener(payload)
                delivered += 1
            except Exception:
                logger.exception("Listener for %s failed", topic)
        return delivered
