"""Bounded in-memory cache with per-entry time-to-live."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

V = TypeVar("V")

EVICTION_FRACTION = 0.2


@dataclass
class _CacheEntry(Generic[V]):
    value: V
    created_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl


@dataclass(frozen=True)
class CacheStats:
    """Point-in-time view of cache occupancy."""

    total_entries: int
    valid_entries: int
    expired_entries: int
    max_size: int


class BoundedTTLCache(Generic[V]):
    """Thread-safe key/value store bounded by capacity and entry age.

    Eviction is insertion-ordered rather than LRU: reads never refresh an
    entry. When a write finds the cache full, expired entries are dropped
    first and then the oldest fifth of the remaining entries.
    """

    def __init__(
        self,
        capacity: int = 500,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")

        self._capacity = capacity
        self._default_ttl = default_ttl
        self._clock = clock
        self._logger = logger or logging.getLogger("worker_lookup.cache")
        self._entries: dict[str, _CacheEntry[V]] = {}
        self._lock = threading.RLock()
        self._sweeper: threading.Timer | None = None
        self._sweep_interval: float | None = None

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.expired(self._clock())

    def get(self, key: str) -> V | None:
        """Return the cached value, or None when missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expired(self._clock()):
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: V, ttl: float | None = None) -> None:
        """Insert or overwrite a value, making room first when the cache is full."""
        with self._lock:
            if len(self._entries) >= self._capacity:
                self.cleanup()
            self._entries.pop(key, None)
            self._entries[key] = _CacheEntry(
                value=value,
                created_at=self._clock(),
                ttl=self._default_ttl if ttl is None else ttl,
            )

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with prefix; returns how many were dropped."""
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def cleanup(self) -> int:
        """Remove expired entries, then the oldest ones if still at capacity."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.expired(now)]
            for key in expired:
                del self._entries[key]
            removed = len(expired)

            if len(self._entries) >= self._capacity:
                oldest = sorted(self._entries.items(), key=lambda item: item[1].created_at)
                batch = max(1, int(self._capacity * EVICTION_FRACTION))
                for key, _ in oldest[:batch]:
                    del self._entries[key]
                removed += min(batch, len(oldest))

            if removed:
                self._logger.debug(
                    "Cache cleanup removed %d entries (%d expired), %d remain",
                    removed,
                    len(expired),
                    len(self._entries),
                )
            return removed

    def stats(self) -> CacheStats:
        with self._lock:
            now = self._clock()
            expired = sum(1 for entry in self._entries.values() if entry.expired(now))
            return CacheStats(
                total_entries=len(self._entries),
                valid_entries=len(self._entries) - expired,
                expired_entries=expired,
                max_size=self._capacity,
            )

    def start_sweeper(self, interval: float = 60.0) -> None:
        """Run cleanup every interval seconds until stop_sweeper is called."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        with self._lock:
            self._sweep_interval = interval
            self._schedule_sweep()

    def stop_sweeper(self) -> None:
        with self._lock:
            self._sweep_interval = None
            if self._sweeper is not None:
                self._sweeper.cancel()
                self._sweeper = None

    def _schedule_sweep(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
        if self._sweep_interval is None:
            self._sweeper = None
            return
        self._sweeper = threading.Timer(self._sweep_interval, self._sweep)
        self._sweeper.daemon = True
        self._sweeper.start()

    def _sweep(self) -> None:
        with self._lock:
            if self._sweep_interval is None:
                return
            self.cleanup()
            self._schedule_sweep()
