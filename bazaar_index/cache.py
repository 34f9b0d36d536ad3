"""Process-local snapshot cache with a TTL and ordered publication.

Every refresh takes a ticket before it starts scanning. When it finishes it
may publish only if its ticket is newer than the one already published, so a
slow refresh that started earlier can never overwrite the result of a refresh
that started later and finished first. Nothing here is persisted; a restart
simply re-scans.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class SnapshotCache(Generic[T]):
    """Holds the latest published value of one index family."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must not be negative")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._next_ticket = 1
        self._published_ticket = 0
        self._published_at: Optional[float] = None
        self._value: Optional[T] = None
        self._stale = False

    def begin(self) -> int:
        """Reserve the ticket for a refresh that is about to start."""

        with self._lock:
            ticket = self._next_ticket
            self._next_ticket += 1
            return ticket

    def publish(self, ticket: int, value: T) -> bool:
        """Publish ``value`` unless a newer refresh already published."""

        with self._lock:
            if ticket <= self._published_ticket:
                return False
            self._published_ticket = ticket
            self._published_at = self._clock()
            self._value = value
            self._stale = False
            return True

    @property
    def version(self) -> int:
        """Ticket of the published value; ``0`` before the first publish."""

        with self._lock:
            return self._published_ticket

    def is_fresh(self) -> bool:
        with self._lock:
            return self._is_fresh_locked()

    def _is_fresh_locked(self) -> bool:
        if self._value is None or self._stale or self._published_at is None:
            return False
        return self._clock() - self._published_at < self.ttl_seconds

    def get(self) -> Optional[T]:
        """Return the published value while it is fresh, else ``None``."""

        with self._lock:
            return self._value if self._is_fresh_locked() else None

    def last(self) -> Optional[T]:
        """Return the published value regardless of age."""

        with self._lock:
            return self._value

    def invalidate(self) -> None:
        """Force the next read to refresh; the last value stays as a fallback."""

        with self._lock:
            self._stale = True
