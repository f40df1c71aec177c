"""Abstract base class for distributed cache backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any


@dataclass
class CacheEntry:
    """
    A cached value with its expiry.

    Attributes:
        key: Cache key
        value: Cached data (JSON-serializable)
        stored_at: When the entry was written
        ttl_seconds: Time-to-live in seconds (None = no expiry)
    """

    key: str
    value: Any
    stored_at: datetime
    ttl_seconds: int | None = None

    @property
    def expires_at(self) -> datetime | None:
        if self.ttl_seconds is None:
            return None
        return self.stored_at + timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: datetime) -> bool:
        expires_at = self.expires_at
        return expires_at is not None and now >= expires_at


class CacheBackend(ABC):
    """
    Shared get/set/delete with per-key TTL.

    Sits between request-handling instances and the quota store. The cache is
    advisory: backends log their own faults and report a miss (or False)
    instead of raising, so a cache outage only costs latency.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name (e.g., 'memory', 'redis')."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """
        Get a value from the cache.

        Args:
            key: Cache key

        Returns:
            Cached value, or None if missing, expired or unreachable
        """
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        """
        Store a value.

        Args:
            key: Cache key
            value: JSON-serializable value
            ttl_seconds: Time-to-live in seconds (None = backend default)

        Returns:
            True if stored, False otherwise
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if something was removed."""
        ...

    @abstractmethod
    async def clear(self, pattern: str | None = None) -> int:
        """
        Clear cache entries.

        Args:
            pattern: Optional glob pattern (e.g., "limits:*"), None = everything

        Returns:
            Number of entries cleared
        """
        ...

    async def connect(self) -> bool:
        """Open connections, if the backend has any."""
        return True

    @abstractmethod
    async def close(self) -> None:
        ...

    async def health_check(self) -> dict[str, Any]:
        return {
            "backend": self.name,
            "connected": self.is_connected,
        }
