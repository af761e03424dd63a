"""
In-process notification channel.

Publishing is fire-and-forget: subscribers are invoked synchronously in
subscription order, and a subscriber that raises is logged and skipped so
one broken observer never affects the publisher or its siblings.
"""

import logging
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger("Ferry.Notify")

UPLOAD_PROGRESS = "upload-progress"
UPLOAD_COMPLETED = "upload-completed"
UPLOAD_FAILED = "upload-failed"
PROCESSOR_STATUS_CHANGED = "processor-status-changed"

Subscriber = Callable[[str, Dict[str, Any]], Any]


class Notifier:
    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback(event, payload)``; returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event, payload)
            except Exception as exc:
                logger.warning("Subscriber %r failed on %s: %s", callback, event, exc)
