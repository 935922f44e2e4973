"""Fixed-budget attempt limiter backed by a bounded, expiring store."""
from __future__ import annotations

import logging
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional, Protocol

logger = logging.getLogger("keydesk.admission")


@dataclass
class RateLimitEntry:
    count: int
    window_start: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a single attempt against the limiter."""

    allowed: bool
    remaining: int
    retry_after: int = 0


class RateLimitStore(Protocol):
    """Storage for attempt counters; entries disappear once expired."""

    def get(self, key: str) -> Optional[RateLimitEntry]:
        ...

    def set(self, key: str, entry: RateLimitEntry) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryRateLimitStore:
    """Process-local store evicting the least recently used key past ``capacity``."""

    def __init__(self, capacity: int = 5000, *, clock: Callable[[], float] = time.monotonic) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._clock = clock
        self._entries: "OrderedDict[str, RateLimitEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[RateLimitEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            self._entries.pop(key, None)
            return None
        self._entries.move_to_end(key)
        return entry

    def set(self, key: str, entry: RateLimitEntry) -> None:
        if entry.is_expired(self._clock()):
            self._entries.pop(key, None)
            return
        self._entries[key] = entry
        self._entries.move_to_end(key)
        while len(self._entries) > self._capacity:
            self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()


class RateLimiter:
    """Allows ``max_attempts`` per key within a window opened by the first attempt.

    Once the budget is spent further attempts are rejected without being
    counted, so a blocked caller cannot extend its own window.
    """

    def __init__(
        self,
        store: RateLimitStore,
        *,
        window_seconds: float,
        max_attempts: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._store = store
        self._window = float(window_seconds)
        self._max_attempts = max_attempts
        self._clock = clock
        self._lock = Lock()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def hit(self, key: str) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._store.set(key, RateLimitEntry(count=1, window_start=now, expires_at=now + self._window))
                return RateLimitResult(allowed=True, remaining=self._max_attempts - 1)

            if entry.count >= self._max_attempts:
                retry_after = max(1, math.ceil(entry.expires_at - now))
                logger.warning("Rate limit exceeded for %s", key)
                return RateLimitResult(allowed=False, remaining=0, retry_after=retry_after)

            entry.count += 1
            self._store.set(key, entry)
            return RateLimitResult(allowed=True, remaining=self._max_attempts - entry.count)

    def is_rate_limited(self, key: str) -> bool:
        return not self.hit(key).allowed

    def reset(self, key: str) -> None:
        with self._lock:
            self._store.delete(key)


__all__ = ["InMemoryRateLimitStore", "RateLimitEntry", "RateLimitResult", "RateLimitStore", "RateLimiter"]
