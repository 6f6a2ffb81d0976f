"""In-memory TTL cache backing the process-local thread maps.

LRU cache with per-entry TTL expiration. Entries live only as long as the
process, so it suits single-instance deployments.
"""

from __future__ import annotations

import asyncio
import time

from collections import OrderedDict
from typing import Any


class TTLCache:
    """In-memory cache with per-entry TTL and max size.

    Thread-safe for asyncio (uses asyncio.Lock).
    """

    def __init__(self, max_size: int = 1000, default_ttl: float = 60.0) -> None:
        """Initialize cache.

        Args:
            max_size: Maximum number of entries (LRU eviction when exceeded)
            default_ttl: Default time-to-live in seconds
        """
        self._cache: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    async def get(self, key: str) -> Any | None:
        """Get value from cache if not expired."""
        async with self._lock:
            if key not in self._cache:
                self._misses += 1
                return None

            value, expires_at = self._cache[key]
            if time.monotonic() >= expires_at:
                del self._cache[key]
                self._evictions += 1
                self._misses += 1
                return None

            self._cache.move_to_end(key)
            self._hits += 1
            return value

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Set value in cache with TTL (seconds). A TTL <= 0 stores nothing."""
        ttl = ttl if ttl is not None else self._default_ttl

        async with self._lock:
            if key in self._cache:
                del self._cache[key]

            if ttl <= 0:
                return

            while len(self._cache) >= self._max_size:
                self._cache.popitem(last=False)
                self._evictions += 1

            self._cache[key] = (value, time.monotonic() + ttl)

    async def delete(self, key: str) -> bool:
        """Remove entry from cache."""
        async with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    async def clear(self) -> None:
        """Clear all entries."""
        async with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    def stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        total = self._hits + self._misses
        hit_rate = self._hits / total if total > 0 else 0.0
        return {
            "size": len(self._cache),
            "max_size": self._max_size,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate": f"{hit_rate:.1%}",
        }
