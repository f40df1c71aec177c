"""Redis atomic counter store using server-side Lua scripts."""

import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from quota_engine.counters.base import AtomicCounterStore, CounterState
from quota_engine.errors import StoreUnavailable

logger = logging.getLogger(__name__)


# Returns: [count, ttl]
INCREMENT_AND_EXPIRE_LUA = """
local key = KEYS[1]
local window_seconds = tonumber(ARGV[1])

local count = redis.call('INCR', key)
if count == 1 then
    redis.call('EXPIRE', key, window_seconds)
end

local ttl = redis.call('TTL', key)
if ttl == -1 then
    redis.call('EXPIRE', key, window_seconds)
    ttl = window_seconds
end

return {count, ttl}
"""

# Returns: new count, or -1 when the key does not exist
DECREMENT_IF_POSITIVE_LUA = """
local key = KEYS[1]

local current = redis.call('GET', key)
if not current then
    return -1
end

current = tonumber(current)
if current <= 0 then
    return 0
end

return redis.call('DECR', key)
"""


class RedisCounterStore(AtomicCounterStore):
    """
    Counters shared by every instance through Redis.

    ``increment_and_maybe_expire`` runs INCR and the first-increment EXPIRE in
    one script, so a crash between the two cannot leave a window without a
    TTL. A key found without a TTL is repaired in the same script. DECR does
    not touch the TTL, so compensation never extends a window.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        prefix: str = "quota:",
        client: redis.Redis | None = None,
        max_connections: int = 10,
    ) -> None:
        """
        Initialize Redis counter store.

        Args:
            url: Redis connection URL
            prefix: Key prefix for namespacing
            client: Existing client to share (the pool is then not owned)
            max_connections: Maximum connections in pool
        """
        self._url = url
        self._prefix = prefix
        self._owns_client = client is None
        self._client = client or redis.from_url(
            url,
            max_connections=max_connections,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
            decode_responses=False,
        )
        self._increment_script = self._client.register_script(INCREMENT_AND_EXPIRE_LUA)
        self._decrement_script = self._client.register_script(DECREMENT_IF_POSITIVE_LUA)

    @property
    def name(self) -> str:
        return "redis"

    def _get_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def connect(self) -> None:
        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            # Not fatal: the rate limiter fails open until Redis is back
            logger.error(f"Redis counter store at {self._url} is unreachable: {e}")
            return
        logger.info(f"Connected to Redis counter store at {self._url}")

    async def increment_and_maybe_expire(self, key: str, ttl_if_new: int) -> CounterState:
        try:
            count, ttl = await self._increment_script(
                keys=[self._get_key(key)],
                args=[ttl_if_new],
            )
        except (RedisError, OSError) as e:
            raise StoreUnavailable("counter store", "increment", e) from e
        return CounterState(int(count), int(ttl) if int(ttl) >= 0 else None)

    async def get(self, key: str) -> CounterState | None:
        full_key = self._get_key(key)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.get(full_key)
                pipe.ttl(full_key)
                value, ttl = await pipe.execute()
        except (RedisError, OSError) as e:
            raise StoreUnavailable("counter store", "get", e) from e

        if value is None:
            return None
        ttl = int(ttl)
        return CounterState(int(value), ttl if ttl >= 0 else None)

    async def decrement(self, key: str) -> int | None:
        try:
            result = int(await self._decrement_script(keys=[self._get_key(key)]))
        except (RedisError, OSError) as e:
            raise StoreUnavailable("counter store", "decrement", e) from e
        return None if result < 0 else result

    async def delete(self, key: str) -> bool:
        try:
            return await self._client.delete(self._get_key(key)) > 0
        except (RedisError, OSError) as e:
            raise StoreUnavailable("counter store", "delete", e) from e

    async def delete_by_prefix(self, prefix: str) -> int:
        try:
            keys = [k async for k in self._client.scan_iter(match=f"{self._get_key(prefix)}*")]
            if keys:
                await self._client.delete(*keys)
        except (RedisError, OSError) as e:
            raise StoreUnavailable("counter store", "delete_by_prefix", e) from e
        return len(keys)

    async def close(self) -> None:
        if self._owns_client:
            try:
                await self._client.aclose()
            except (RedisError, OSError) as e:
                logger.error(f"Error closing Redis connection: {e}")
