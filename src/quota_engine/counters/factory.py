"""Counter store factory."""

import logging

import redis.asyncio as redis

from quota_engine.config import Settings
from quota_engine.counters.base import AtomicCounterStore
from quota_engine.counters.memory import InMemoryCounterStore
from quota_engine.counters.redis import RedisCounterStore

logger = logging.getLogger(__name__)


def create_counter_store(
    settings: Settings,
    client: redis.Redis | None = None,
) -> AtomicCounterStore:
    """
    Create the counter store named by ``settings.counter_backend``.

    Raises:
        ValueError: If the backend type is unknown
    """
    backend_type = settings.counter_backend

    if backend_type == "memory":
        return InMemoryCounterStore()

    if backend_type == "redis":
        if not settings.redis_url and client is None:
            logger.warning(
                "Redis URL not configured, falling back to in-memory counters. "
                "Rate limits will not be shared across instances."
            )
            return InMemoryCounterStore()
        return RedisCounterStore(
            url=settings.redis_url or "",
            prefix=settings.redis_prefix,
            client=client,
            max_connections=settings.redis_max_connections,
        )

    raise ValueError(f"Unknown counter backend: {backend_type}")
