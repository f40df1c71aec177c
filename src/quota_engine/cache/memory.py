"""In-process distributed-cache backend for single-instance deployments and tests."""

import asyncio
import fnmatch
import logging
from typing import Any

from quota_engine.cache.base import CacheBackend, CacheEntry
from quota_engine.clock import Clock, utc_now

logger = logging.getLogger(__name__)


class InMemoryCache(CacheBackend):
    """
    Dictionary-backed cache.

    Behaves like the shared cache for a single process: entries expire by TTL
    and the oldest entry is evicted when ``max_size`` is reached. Not shared
    across instances and lost on restart.
    """

    def __init__(
        self,
        default_ttl_seconds: int = 3600,
        max_size: int | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """
        Initialize in-memory cache.

        Args:
            default_ttl_seconds: TTL used when ``set`` gets none
            max_size: Maximum number of entries (None = unlimited)
            clock: Source of the current time
        """
        self._entries: dict[str, CacheEntry] = {}
        self._default_ttl = default_ttl_seconds
        self._max_size = max_size
        self._clock = clock
        self._lock = asyncio.Lock()
        self._connected = True

    @property
    def name(self) -> str:
        return "memory"

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return entry.value

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl

        async with self._lock:
            if self._max_size and key not in self._entries and len(self._entries) >= self._max_size:
                self._evict()
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                stored_at=self._clock(),
                ttl_seconds=ttl if ttl > 0 else None,
            )
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def clear(self, pattern: str | None = None) -> int:
        async with self._lock:
            if pattern is None:
                count = len(self._entries)
                self._entries.clear()
                return count

            matched = [k for k in self._entries if fnmatch.fnmatch(k, pattern)]
            for key in matched:
                del self._entries[key]
            return len(matched)

    async def connect(self) -> bool:
        self._connected = True
        return True

    async def close(self) -> None:
        self._connected = False
        self._entries.clear()

    def _evict(self) -> None:
        """Drop expired entries, or the oldest one if none expired (caller holds lock)."""
        now = self._clock()
        expired = [k for k, entry in self._entries.items() if entry.is_expired(now)]
        if expired:
            for key in expired:
                del self._entries[key]
            logger.debug(f"Evicted {len(expired)} expired cache entries")
            return

        oldest_key = min(self._entries, key=lambda k: self._entries[k].stored_at)
        del self._entries[oldest_key]

    async def health_check(self) -> dict[str, Any]:
        return {
            "backend": self.name,
            "connected": self.is_connected,
            "total_entries": len(self._entries),
            "max_size": self._max_size,
        }

    def size(self) -> int:
        return len(self._entries)
