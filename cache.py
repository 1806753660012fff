"""
Scribe Cache Layer
Bounded in-memory cache with per-entry TTL and LRU eviction.

Used for three process-wide caches:
- AI responses keyed by content fingerprint (long TTL)
- Rate-limit decisions keyed by client identity (short TTL)
- Note list reads keyed by sort order (cleared on every mutation)
"""

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Optional, TypeVar

V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """Single cache entry: value plus the monotonic time it was written and its TTL."""

    value: V
    inserted_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.inserted_at > self.ttl


class BoundedTTLCache(Generic[V]):
    """
    Capacity-bounded key/value store with lazy TTL expiry.

    - get() on a live entry promotes it to most recently used
    - get() on an expired entry removes it and reports a miss
    - set() at capacity evicts the least recently used entry first

    Single-threaded asyncio use only: no method awaits, so no lock is held.
    A threaded caller must wrap access in a lock.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        default_ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: OrderedDict[Hashable, CacheEntry[V]] = OrderedDict()
        self._hits: int = 0
        self._misses: int = 0
        self._evictions: int = 0

    def get(self, key: Hashable) -> Optional[V]:
        """
        Retrieve a live value.

        Returns:
            The stored value, or None if absent or expired.
        """
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._misses += 1
            return None

        self._entries.move_to_end(key)
        self._hits += 1
        return entry.value

    def set(self, key: Hashable, value: V, ttl: Optional[float] = None) -> None:
        """Insert or overwrite a value, evicting the LRU entry if at capacity."""
        ttl = self.default_ttl if ttl is None else ttl
        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
            self._evictions += 1

        self._entries[key] = CacheEntry(value=value, inserted_at=self._clock(), ttl=ttl)

    def delete(self, key: Hashable) -> bool:
        """Remove a single key. Returns True if it existed."""
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        """Drop all entries."""
        self._entries.clear()

    def keys(self) -> list:
        """Keys from least to most recently used (expired entries included)."""
        return list(self._entries.keys())

    def __contains__(self, key: Hashable) -> bool:
        # Membership does not count as a use.
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self._clock())

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        """Return cache statistics for monitoring."""
        total = self._hits + self._misses
        hit_rate = (self._hits / total * 100) if total > 0 else 0

        return {
            "total_requests": total,
            "cache_hits": self._hits,
            "cache_misses": self._misses,
            "hit_rate_percent": round(hit_rate, 2),
            "evictions": self._evictions,
            "stored_items": len(self._entries),
            "max_entries": self.max_entries,
        }
