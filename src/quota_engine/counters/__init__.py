"""Atomic counter stores for fixed-window rate limiting."""

from quota_engine.counters.base import AtomicCounterStore, CounterState
from quota_engine.counters.factory import create_counter_store
from quota_engine.counters.memory import InMemoryCounterStore
from quota_engine.counters.redis import RedisCounterStore

__all__ = [
    "AtomicCounterStore",
    "CounterState",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "create_counter_store",
]
