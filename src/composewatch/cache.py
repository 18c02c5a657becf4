"""
Thread-safe TTL caching for update check results.

This module provides the in-memory store behind update checks and the two
typed caches built on top of it (per project, per container).

Features:
- Absolute TTL plus sliding expiration (each hit extends the entry)
- Post-eviction callbacks carrying the eviction reason
- Thread-safe operations with RLock
- Cache statistics
- Live key index per typed cache for bulk summaries

Architecture:
- CacheManager: Generic key/value store with per-entry expiry
- CacheEntry: Individual cache entries with timestamps
- UpdateCheckCache: Typed cache + key index (project and container flavours)

The key index is only pruned when an entry expires or is removed, never
when a fresher value replaces it.
"""

import time
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, Set, TypeVar
import logging

from .model import (
    ContainerUpdateCheck,
    ContainerUpdateSummary,
    ProjectUpdateCheck,
    ProjectUpdateSummary,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EvictionReason(str, Enum):
    EXPIRED = "expired"
    REMOVED = "removed"
    REPLACED = "replaced"


EvictionCallback = Callable[[str, Any, EvictionReason], None]


@dataclass
class CacheEntry:
    """Individual cache entry with value and timestamps."""
    value: Any
    created: float
    last_access: float
    ttl: float
    sliding: Optional[float] = None
    on_evict: Optional[EvictionCallback] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Expired once past the absolute TTL or idle longer than the sliding window."""
        now = time.monotonic() if now is None else now
        if now - self.created > self.ttl:
            return True
        if self.sliding is not None and now - self.last_access > self.sliding:
            return True
        return False


class CacheManager:
    """Thread-safe key/value store with TTL expiry and eviction callbacks."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._clock = clock
        self._stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'evictions': 0
        }

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache if not expired."""
        evicted = None
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats['misses'] += 1
                return None

            now = self._clock()
            if entry.is_expired(now):
                del self._cache[key]
                self._stats['misses'] += 1
                self._stats['evictions'] += 1
                evicted = entry
            else:
                entry.last_access = now
                self._stats['hits'] += 1
                return entry.value

        self._fire(key, evicted, EvictionReason.EXPIRED)
        return None

    def set(self, key: str, value: Any, ttl: float, sliding: Optional[float] = None,
            on_evict: Optional[EvictionCallback] = None) -> None:
        """Set value with an absolute TTL and optional sliding window (seconds)."""
        with self._lock:
            now = self._clock()
            previous = self._cache.get(key)
            self._cache[key] = CacheEntry(value, now, now, ttl, sliding, on_evict)
            self._stats['sets'] += 1

        if previous is not None:
            self._fire(key, previous, EvictionReason.REPLACED)

    def contains(self, key: str) -> bool:
        """True when a live entry exists; does not count as an access."""
        with self._lock:
            entry = self._cache.get(key)
            return entry is not None and not entry.is_expired(self._clock())

    def remove(self, key: str) -> None:
        with self._lock:
            entry = self._cache.pop(key, None)
        if entry is not None:
            self._fire(key, entry, EvictionReason.REMOVED)

    def cleanup_expired(self) -> int:
        """Clean up expired entries and return count of cleaned items."""
        with self._lock:
            now = self._clock()
            expired = [(k, e) for k, e in self._cache.items() if e.is_expired(now)]
            for key, _ in expired:
                del self._cache[key]
            if expired:
                self._stats['evictions'] += len(expired)
                logger.debug(f"Cleaned up {len(expired)} expired cache entries")

        for key, entry in expired:
            self._fire(key, entry, EvictionReason.EXPIRED)
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache performance statistics."""
        with self._lock:
            total_requests = self._stats['hits'] + self._stats['misses']
            hit_rate = (self._stats['hits'] / total_requests * 100) if total_requests > 0 else 0

            return {
                **self._stats,
                'cache_size': len(self._cache),
                'hit_rate_percent': round(hit_rate, 2),
                'total_requests': total_requests
            }

    @staticmethod
    def _fire(key: str, entry: CacheEntry, reason: EvictionReason) -> None:
        if entry.on_evict is None:
            return
        try:
            entry.on_evict(key, entry.value, reason)
        except Exception as e:
            logger.warning(f"Eviction callback for {key} failed: {e}")


class UpdateCheckCache(Generic[T]):
    """Typed update-check cache with an index of live keys."""

    def __init__(self, store: CacheManager, prefix: str, cache_duration_minutes: float):
        self._store = store
        self._prefix = prefix
        self.ttl_seconds = cache_duration_minutes * 60
        self.sliding_seconds = self.ttl_seconds / 2
        self._keys: Set[str] = set()
        self._keys_lock = threading.Lock()

    def _key(self, name: str) -> str:
        return f"{self._prefix}{name.lower()}"

    def _on_evict(self, key: str, value: Any, reason: EvictionReason) -> None:
        if reason == EvictionReason.REPLACED:
            return
        with self._keys_lock:
            # A set() may have stored a fresh entry after this one was evicted
            if not self._store.contains(key):
                self._keys.discard(key)

    def get(self, name: str) -> Optional[T]:
        return self._store.get(self._key(name))

    def set(self, name: str, value: T) -> None:
        key = self._key(name)
        # Store and index change under one lock
        with self._keys_lock:
            self._store.set(key, value, self.ttl_seconds, self.sliding_seconds, self._on_evict)
            self._keys.add(key)

    def invalidate(self, name: str) -> None:
        self._store.remove(self._key(name))
        logger.debug(f"Invalidated update cache entry {self._key(name)}")

    def invalidate_all(self) -> None:
        with self._keys_lock:
            keys = list(self._keys)
            self._keys.clear()
        for key in keys:
            self._store.remove(key)
        logger.debug(f"Invalidated {len(keys)} entries with prefix {self._prefix}")

    def values(self) -> List[T]:
        """Live cached values; keys whose entry has gone are skipped."""
        with self._keys_lock:
            keys = list(self._keys)
        result = []
        for key in keys:
            value = self._store.get(key)
            if value is not None:
                result.append(value)
        return result


class ProjectUpdateCache(UpdateCheckCache[ProjectUpdateCheck]):
    PREFIX = "image_update_"

    def __init__(self, store: CacheManager, cache_duration_minutes: float):
        super().__init__(store, self.PREFIX, cache_duration_minutes)

    def get_summaries(self) -> List[ProjectUpdateSummary]:
        return sorted(
            (
                ProjectUpdateSummary(
                    project_name=check.project_name,
                    services_with_updates=check.services_with_updates,
                    last_checked=check.last_checked,
                )
                for check in self.values()
            ),
            key=lambda s: s.project_name.lower(),
        )


class ContainerUpdateCache(UpdateCheckCache[ContainerUpdateCheck]):
    PREFIX = "container_update_"

    def __init__(self, store: CacheManager, cache_duration_minutes: float):
        super().__init__(store, self.PREFIX, cache_duration_minutes)

    def get_summaries(self) -> List[ContainerUpdateSummary]:
        return sorted(
            (
                ContainerUpdateSummary(
                    container_id=check.container_id,
                    container_name=check.container_name,
                    image=check.image,
                    update_available=check.update_available,
                    is_compose_managed=check.is_compose_managed,
                    project_name=check.project_name,
                )
                for check in self.values()
            ),
            key=lambda s: s.container_name.lower(),
        )
