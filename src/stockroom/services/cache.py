from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Hashable

log = logging.getLogger(__name__)

_MISSING = object()


class TtlCache:
    """Thread-safe in-memory cache with a single time-to-live for all entries.

    A ttl of zero or less disables the cache: every lookup misses and nothing
    is stored. Expired entries are dropped on access.
    """

    def __init__(self, ttl_seconds: float = 0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[Hashable, tuple[float, Any]] = {}
        self.hits = 0
        self.misses = 0

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key, _MISSING)
            if entry is _MISSING:
                self.misses += 1
                return default
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                self.misses += 1
                return default
            self.hits += 1
            return value

    def set(self, key: Hashable, value: Any) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._entries[key] = (self._clock(), value)

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        value = compute()
        self.set(key, value)
        return value

    def invalidate(self) -> None:
        with self._lock:
            dropped = len(self._entries)
            self._entries.clear()
        if dropped:
            log.debug("cache_invalidated entries=%s", dropped)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
