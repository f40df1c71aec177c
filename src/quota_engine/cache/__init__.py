"""
Cache layers for quota snapshots.

A shared cache (in-memory or Redis) holds serialized quota records between
instances; a small process-local cache remembers which subjects this process
verified recently.
"""

from quota_engine.cache.base import CacheBackend, CacheEntry
from quota_engine.cache.factory import create_cache
from quota_engine.cache.local import ProcessLocalCache
from quota_engine.cache.memory import InMemoryCache
from quota_engine.cache.redis import RedisCache, create_redis_client

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "InMemoryCache",
    "ProcessLocalCache",
    "RedisCache",
    "create_cache",
    "create_redis_client",
]
