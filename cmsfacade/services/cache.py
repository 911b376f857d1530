"""
CacheManager - In-process cache with TTL, stale-while-revalidate and tags.

Features:
- Three-way lookup: HIT (fresh), STALE (servable, refresh due), MISS
- Tag index for bulk invalidation (e.g. every entry of a collection)
- LRU eviction once max_size is reached; expired entries are swept first
- Synchronous and lock-protected, so it never suspends the event loop
"""

import hashlib
import json
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Generic, Iterable, TypeVar

from loguru import logger

T = TypeVar("T")


class CacheStatus(str, Enum):
    """Outcome of a cache lookup."""

    HIT = "HIT"
    STALE = "STALE"
    MISS = "MISS"


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with metadata."""

    key: str
    value: T
    created_at: datetime
    stale_at: datetime
    expires_at: datetime
    tags: frozenset[str] = frozenset()

    def is_expired(self, now: datetime) -> bool:
        """Past expires_at - no longer servable."""
        return now >= self.expires_at

    def is_stale(self, now: datetime) -> bool:
        """Servable, but a refresh is due."""
        return self.stale_at <= now < self.expires_at


@dataclass
class CacheResult(Generic[T]):
    """Result from cache lookup."""

    status: CacheStatus
    value: T | None = None

    @property
    def is_hit(self) -> bool:
        return self.status == CacheStatus.HIT

    @property
    def is_stale(self) -> bool:
        return self.status == CacheStatus.STALE

    @property
    def is_miss(self) -> bool:
        return self.status == CacheStatus.MISS


MISS: CacheResult[Any] = CacheResult(CacheStatus.MISS)


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    stale_hits: int = 0
    evictions: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.stale_hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits + self.stale_hits) / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "evictions": self.evictions,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


def _normalize(value: Any) -> Any:
    """Reduce query parameters to a canonical, order-independent shape."""
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (set, frozenset)):
        return sorted(str(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if value is None:
        return None
    return str(value)


class CacheManager:
    """
    Cache manager with TTL, stale-while-revalidate and tag invalidation.

    Usage:
        cache = CacheManager(max_size=1000)

        key = cache.generate_key("baserow", "stations", "fetch_all", params)
        result = cache.get(key)
        if result.is_hit:
            return result.value

        data = await fetch_data()
        cache.set(key, data, ttl=timedelta(hours=1),
                  stale_window=timedelta(minutes=5), tags={"stations"})
    """

    def __init__(
        self,
        prefix: str = "cms:",
        max_size: int = 1000,
        default_ttl: timedelta = timedelta(hours=1),
        default_stale_window: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")

        self._memory: OrderedDict[str, CacheEntry[Any]] = OrderedDict()
        self._tag_index: dict[str, set[str]] = {}
        self._prefix = prefix
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._default_stale_window = default_stale_window
        self._clock = clock
        self._debug = debug
        self._lock = threading.RLock()
        self._stats = CacheStats()

    def generate_key(
        self,
        provider: str,
        collection: str,
        operation: str,
        params: dict[str, Any] | None = None,
    ) -> str:
        """
        Generate a deterministic cache key.

        Filter keys are sorted and values stringified, so equivalent queries
        given in a different parameter order produce the same key.
        """
        payload = json.dumps(_normalize(params or {}), sort_keys=True, separators=(",", ":"))
        digest = hashlib.sha256(payload.encode()).hexdigest()[:24]
        return f"{self._prefix}{provider}:{collection}:{operation}:{digest}"

    def get(self, key: str) -> CacheResult[Any]:
        """
        Look up a key.

        Returns HIT before stale_at, STALE between stale_at and expires_at,
        MISS otherwise. HIT and STALE both count as a use for LRU purposes.
        """
        with self._lock:
            entry = self._memory.get(key)
            if entry is None:
                self._stats.misses += 1
                self._log(f"MISS: {key[:60]}")
                return MISS

            now = self._clock()
            if entry.is_expired(now):
                self._remove(key)
                self._stats.misses += 1
                self._log(f"EXPIRED: {key[:60]}")
                return MISS

            self._memory.move_to_end(key)

            if entry.is_stale(now):
                self._stats.stale_hits += 1
                self._log(f"STALE HIT: {key[:60]}")
                return CacheResult(CacheStatus.STALE, entry.value)

            self._stats.hits += 1
            self._log(f"HIT: {key[:60]}")
            return CacheResult(CacheStatus.HIT, entry.value)

    def peek(self, key: str) -> CacheEntry[Any] | None:
        """Return the raw entry without touching stats or recency."""
        with self._lock:
            return self._memory.get(key)

    def set(
        self,
        key: str,
        value: Any,
        ttl: timedelta | None = None,
        stale_window: timedelta | None = None,
        tags: Iterable[str] | None = None,
    ) -> None:
        """
        Insert or overwrite an entry.

        Args:
            key: Cache key
            value: Data to cache
            ttl: Time to live (uses default if not specified)
            stale_window: Trailing part of the TTL during which the entry is
                served as STALE (uses default if not specified)
            tags: Labels used by invalidate(tags=...)
        """
        ttl = self._default_ttl if ttl is None else ttl
        stale_window = self._default_stale_window if stale_window is None else stale_window

        now = self._clock()
        expires_at = now + ttl
        stale_at = max(now, now + (ttl - stale_window))

        entry = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            stale_at=stale_at,
            expires_at=expires_at,
            tags=frozenset(tags or ()),
        )

        with self._lock:
            if key in self._memory:
                self._remove(key)
            elif len(self._memory) >= self._max_size:
                self._sweep_expired(now)
                while len(self._memory) >= self._max_size:
                    self._evict_oldest()

            self._memory[key] = entry
            for tag in entry.tags:
                self._tag_index.setdefault(tag, set()).add(key)

            self._log(f"SET: {key[:60]} (TTL: {ttl.total_seconds()}s, tags: {sorted(entry.tags)})")

    def invalidate(
        self,
        keys: Iterable[str] | None = None,
        tags: Iterable[str] | None = None,
    ) -> int:
        """
        Remove entries by key and/or by tag.

        Returns:
            Number of entries removed
        """
        if keys is None and tags is None:
            raise ValueError("invalidate() needs keys or tags")

        with self._lock:
            targets: set[str] = set(keys or ())
            for tag in tags or ():
                targets.update(self._tag_index.get(tag, ()))

            removed = 0
            for key in targets:
                if self._remove(key):
                    removed += 1

            if removed:
                self._log(f"INVALIDATE: {removed} entries")
            return removed

    def delete(self, key: str) -> bool:
        """Delete a specific key from cache."""
        with self._lock:
            return self._remove(key)

    def clear(self) -> None:
        """Clear all cache entries."""
        with self._lock:
            count = len(self._memory)
            self._memory.clear()
            self._tag_index.clear()
            self._log(f"CLEAR: {count} entries removed")

    def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count of removed entries."""
        with self._lock:
            return self._sweep_expired(self._clock())

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        with self._lock:
            self._stats.size = len(self._memory)
            self._stats.max_size = self._max_size
            return self._stats

    def __len__(self) -> int:
        with self._lock:
            return len(self._memory)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._memory

    def _sweep_expired(self, now: datetime) -> int:
        expired_keys = [k for k, v in self._memory.items() if v.is_expired(now)]
        for key in expired_keys:
            self._remove(key)

        if expired_keys:
            self._log(f"CLEANUP: {len(expired_keys)} expired entries removed")

        return len(expired_keys)

    def _evict_oldest(self) -> None:
        """Evict the least recently used entry."""
        if not self._memory:
            return

        oldest_key = next(iter(self._memory))
        self._remove(oldest_key)
        self._stats.evictions += 1
        self._log(f"EVICT: {oldest_key[:60]}")

    def _remove(self, key: str) -> bool:
        entry = self._memory.pop(key, None)
        if entry is None:
            return False

        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tag_index[tag]
        return True

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheManager] {message}")
