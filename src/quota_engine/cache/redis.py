"""Redis distributed-cache backend."""

import json
import logging
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from quota_engine.cache.base import CacheBackend
from quota_engine.clock import utc_now

logger = logging.getLogger(__name__)


def create_redis_client(
    url: str,
    max_connections: int = 10,
    socket_timeout: float = 5.0,
    socket_connect_timeout: float = 5.0,
) -> redis.Redis:
    """Build a pooled asyncio Redis client. No connection is made until first use."""
    return redis.from_url(
        url,
        max_connections=max_connections,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_connect_timeout,
        decode_responses=False,  # We handle encoding ourselves
    )


class RedisCache(CacheBackend):
    """
    Redis cache backend shared by every engine instance.

    Values are stored as ``{"v": value, "t": written_at}`` JSON envelopes
    under ``<prefix><key>``. Any Redis fault is logged and reported as a miss.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        default_ttl_seconds: int = 3600,
        prefix: str = "quota:",
        max_connections: int = 10,
        client: redis.Redis | None = None,
    ) -> None:
        """
        Initialize Redis cache.

        Args:
            url: Redis connection URL
            default_ttl_seconds: Default TTL for cache entries
            prefix: Key prefix for namespacing
            max_connections: Maximum connections in pool
            client: Existing client to share (the pool is then not owned)
        """
        self._url = url
        self._default_ttl = default_ttl_seconds
        self._prefix = prefix
        self._max_connections = max_connections
        self._client = client
        self._owns_client = client is None
        self._connected = False

    @property
    def name(self) -> str:
        return "redis"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _get_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _serialize(self, value: Any) -> str:
        return json.dumps({"v": value, "t": utc_now().isoformat()})

    def _deserialize(self, data: str | bytes | None) -> Any | None:
        if data is None:
            return None
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            return json.loads(data).get("v")
        except (json.JSONDecodeError, TypeError, AttributeError):
            logger.warning("Discarding malformed cache entry")
            return None

    async def connect(self) -> bool:
        """
        Connect to Redis.

        Returns:
            True if the server answered a PING
        """
        if self._client is None:
            self._client = create_redis_client(self._url, self._max_connections)

        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            logger.error(f"Failed to connect to Redis cache at {self._url}: {e}")
            self._connected = False
            return False

        self._connected = True
        logger.info(f"Connected to Redis cache at {self._url}")
        return True

    async def _ensure_client(self) -> bool:
        if self._client is None:
            return await self.connect()
        return True

    async def get(self, key: str) -> Any | None:
        if not await self._ensure_client():
            return None

        try:
            data = await self._client.get(self._get_key(key))
        except (RedisError, OSError) as e:
            logger.error(f"Redis GET error for {key}: {e}")
            self._connected = False
            return None

        self._connected = True
        return self._deserialize(data)

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        if not await self._ensure_client():
            return False

        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        serialized = self._serialize(value)
        try:
            if ttl > 0:
                await self._client.setex(self._get_key(key), ttl, serialized)
            else:
                await self._client.set(self._get_key(key), serialized)
        except (RedisError, OSError) as e:
            logger.error(f"Redis SET error for {key}: {e}")
            self._connected = False
            return False

        self._connected = True
        return True

    async def delete(self, key: str) -> bool:
        if not await self._ensure_client():
            return False

        try:
            return await self._client.delete(self._get_key(key)) > 0
        except (RedisError, OSError) as e:
            logger.error(f"Redis DELETE error for {key}: {e}")
            self._connected = False
            return False

    async def clear(self, pattern: str | None = None) -> int:
        if not await self._ensure_client():
            return 0

        search_pattern = f"{self._prefix}{pattern or '*'}"
        try:
            # SCAN rather than KEYS so large keyspaces do not block the server
            keys = [key async for key in self._client.scan_iter(match=search_pattern)]
            if keys:
                await self._client.delete(*keys)
            return len(keys)
        except (RedisError, OSError) as e:
            logger.error(f"Redis CLEAR error: {e}")
            return 0

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            try:
                await self._client.aclose()
            except (RedisError, OSError) as e:
                logger.error(f"Error closing Redis connection: {e}")
        self._client = None
        self._connected = False

    async def health_check(self) -> dict[str, Any]:
        if not await self._ensure_client():
            return {"backend": self.name, "connected": False, "error": "Not connected to Redis"}

        try:
            keys_count = await self._client.dbsize()
        except (RedisError, OSError) as e:
            return {"backend": self.name, "connected": False, "error": str(e)}

        return {"backend": self.name, "connected": True, "total_keys": keys_count}
