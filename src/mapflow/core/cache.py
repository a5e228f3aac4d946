"""
Bounded in-memory cache with hit/miss accounting.

Used for compiled pipelines, mapping results and optimized payloads. When
the cache is full the least recently accessed quarter of the entries is
evicted in one sweep and a ``cacheEviction`` event is emitted.

Example:
    cache = CacheManager(max_size=500, ttl_seconds=1800)
    cache.set("users_v2", pipeline)
    pipeline = cache.get("users_v2")
    cache.hit_rate  # percentage
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from mapflow.core.events import EventEmitter
from mapflow.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CacheEntry:
    value: Any
    created_at: float
    last_access: float
    expires_at: float | None = None
    hits: int = 0


class CacheManager:
    """Bounded cache with TTL and LRU-ish bulk eviction.

    Attributes:
        max_size: Maximum number of keys before eviction.
        ttl_seconds: Default TTL for keys (``None`` means no expiry).
        eviction_fraction: Share of entries dropped per eviction sweep.
    """

    def __init__(
        self,
        *,
        max_size: int = 1000,
        ttl_seconds: float | None = None,
        eviction_fraction: float = 0.25,
        name: str = "cache",
        emitter: EventEmitter | None = None,
    ):
        self._store: dict[str, CacheEntry] = {}
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._eviction_fraction = eviction_fraction
        self._name = name
        self._emitter = emitter
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @property
    def max_size(self) -> int:
        return self._max_size

    def get(self, key: str, default: Any = None) -> Any:
        """Retrieve a value by key, counting the lookup as a hit or a miss."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self.misses += 1
                return default
            now = time.monotonic()
            if entry.expires_at is not None and now > entry.expires_at:
                del self._store[key]
                self.misses += 1
                return default
            entry.last_access = now
            entry.hits += 1
            self.hits += 1
            return entry.value

    def set(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> None:
        """Store a value with optional TTL, evicting if at capacity."""
        ttl = ttl_seconds if ttl_seconds is not None else self._ttl
        now = time.monotonic()
        with self._lock:
            if key not in self._store and len(self._store) >= self._max_size:
                self._evict()
            self._store[key] = CacheEntry(
                value=value,
                created_at=now,
                last_access=now,
                expires_at=(now + ttl) if ttl else None,
            )

    def get_or_set(self, key: str, factory: Callable[[], Any]) -> Any:
        """Return the cached value or compute, store and return it."""
        with self._lock:
            sentinel = object()
            value = self.get(key, sentinel)
            if value is sentinel:
                value = factory()
                self.set(key, value)
            return value

    def _evict(self) -> None:
        count = max(1, int(len(self._store) * self._eviction_fraction))
        oldest = sorted(self._store.items(), key=lambda kv: kv[1].last_access)[:count]
        for key, _ in oldest:
            del self._store[key]
        self.evictions += len(oldest)
        logger.debug("cache.evicted", cache=self._name, removed=len(oldest), remaining=len(self._store))
        if self._emitter is not None:
            self._emitter.emit(
                "cacheEviction",
                cache=self._name,
                removed_count=len(oldest),
                remaining_size=len(self._store),
            )

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def delete_where(self, predicate: Callable[[str], bool]) -> int:
        """Remove every key matching ``predicate``; returns the count removed."""
        with self._lock:
            doomed = [k for k in self._store if predicate(k)]
            for k in doomed:
                del self._store[k]
            return len(doomed)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return False
            if entry.expires_at is not None and time.monotonic() > entry.expires_at:
                del self._store[key]
                return False
            return True

    def clear(self) -> None:
        """Remove all keys."""
        with self._lock:
            self._store.clear()

    def size(self) -> int:
        return len(self._store)

    def __len__(self) -> int:
        return len(self._store)

    @property
    def hit_rate(self) -> float:
        """Hit rate as a percentage of all lookups."""
        total = self.hits + self.misses
        return (self.hits / total) * 100 if total else 0.0

    def stats(self) -> dict[str, Any]:
        return {
            "name": self._name,
            "size": len(self._store),
            "max_size": self._max_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": self.hit_rate,
        }


__all__ = ["CacheManager", "CacheEntry"]
