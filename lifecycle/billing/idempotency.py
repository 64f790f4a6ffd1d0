import threading
from datetime import datetime, timedelta
from typing import Dict

from flask import current_app


class IdempotencyCache:
    """
    Process-local, short-lived set of processed webhook event ids.

    Not persisted across restarts: provider redelivery windows are short and
    every transition except the initial-purchase side effect is idempotent at
    the record level (that one has its own guard in the store).
    """

    def __init__(self, ttl_seconds: int = 300):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._seen: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def _evict(self, now: datetime) -> None:
        cutoff = now - self.ttl
        stale = [k for k, at in self._seen.items() if at <= cutoff]
        for k in stale:
            del self._seen[k]

    def add_if_absent(self, event_id: str, now: datetime) -> bool:
        """Atomic check-and-insert. True if this caller owns the event."""
        with self._lock:
            self._evict(now)
            if event_id in self._seen:
                return False
            self._seen[event_id] = now
            return True

    def discard(self, event_id: str) -> None:
        """Release an id whose apply failed so redelivery can retry it."""
        with self._lock:
            self._seen.pop(event_id, None)

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()

    def __contains__(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._seen

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)


def get_idempotency_cache() -> IdempotencyCache:
    return current_app.extensions["idempotency_cache"]
