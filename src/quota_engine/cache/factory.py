"""Cache factory for creating the distributed cache from settings."""

import logging

import redis.asyncio as redis

from quota_engine.cache.base import CacheBackend
from quota_engine.cache.memory import InMemoryCache
from quota_engine.cache.redis import RedisCache
from quota_engine.config import Settings

logger = logging.getLogger(__name__)


def create_cache(
    settings: Settings,
    default_ttl_seconds: int = 3600,
    client: redis.Redis | None = None,
) -> CacheBackend:
    """
    Create a distributed cache backend.

    Args:
        settings: Process settings (``cache_backend``, ``redis_url``)
        default_ttl_seconds: Snapshot TTL from the enforcement policy
        client: Redis client to share with the counter store

    Returns:
        CacheBackend instance

    Raises:
        ValueError: If the backend type is unknown
    """
    backend_type = settings.cache_backend

    if backend_type == "memory":
        return InMemoryCache(default_ttl_seconds=default_ttl_seconds)

    if backend_type == "redis":
        if not settings.redis_url and client is None:
            logger.warning(
                "Redis URL not configured, falling back to in-memory cache. "
                "Set QUOTA_ENGINE_REDIS_URL to share snapshots across instances."
            )
            return InMemoryCache(default_ttl_seconds=default_ttl_seconds)

        return RedisCache(
            url=settings.redis_url or "",
            default_ttl_seconds=default_ttl_seconds,
            prefix=settings.redis_prefix,
            max_connections=settings.redis_max_connections,
            client=client,
        )

    raise ValueError(f"Unknown cache backend: {backend_type}")
