"""User-facing notifications — fire-and-forget transient messages.

Messages are queued for the front end, which drains them via the
``notifications`` command and shows them as toasts.
"""

import logging
import threading
import time
from collections import deque

logger = logging.getLogger(__name__)

# Oldest messages are dropped once the front end falls this far behind
MAX_PENDING_NOTIFICATIONS = 50


class Notifier:
    """Thread-safe, non-blocking message queue."""

    def __init__(self, maxlen: int = MAX_PENDING_NOTIFICATIONS):
        self._lock = threading.Lock()
        self._pending: deque[dict] = deque(maxlen=maxlen)

    def notify(self, message: str) -> None:
        logger.info("notify: %s", message)
        with self._lock:
            self._pending.append({"message": message, "ts": time.time()})

    def drain(self) -> list[dict]:
        """Return and clear all pending messages, oldest first."""
        with self._lock:
            items = list(self._pending)
            self._pending.clear()
        return items
