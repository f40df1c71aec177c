"""Pytest configuration and fixtures."""

import os
import tempfile
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone

import pytest

from quota_engine.cache.memory import InMemoryCache
from quota_engine.config import get_settings
from quota_engine.counters.memory import InMemoryCounterStore
from quota_engine.db.manager import DatabaseManager
from quota_engine.engine import QuotaEngine
from quota_engine.policy import EnforcementPolicy
from quota_engine.quota.manager import QuotaManager
from quota_engine.quota.store import InMemoryQuotaStore, QuotaStore
from quota_engine.scheduler.reset import ResetScheduler
from quota_engine.stats import EngineStats

# 17:30 at +05:30, so the next 04:00 reset is 2025-01-11T04:00+05:30 (22:30 UTC today)
START = datetime(2025, 1, 10, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    """Monotonic seconds that only move when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture(autouse=True)
def clear_settings_cache() -> Generator[None, None, None]:
    """Settings are lru_cached; make every test read the environment afresh."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def policy() -> EnforcementPolicy:
    return EnforcementPolicy()


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    yield db_path
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except OSError:
            pass


@pytest.fixture
def db_manager(temp_db_path: str) -> Generator[DatabaseManager, None, None]:
    """Create a DatabaseManager with a temporary database."""
    manager = DatabaseManager(database_url=f"sqlite:///{temp_db_path}")
    manager.init_db()
    yield manager
    manager.close()


@pytest.fixture
def make_manager(
    clock: FrozenClock,
    policy: EnforcementPolicy,
) -> Callable[..., QuotaManager]:
    """Factory for a QuotaManager over in-memory backends."""

    def factory(
        store: QuotaStore | None = None,
        policy_override: EnforcementPolicy | None = None,
        timeout_seconds: float = 2.0,
    ) -> QuotaManager:
        active_policy = policy_override or policy
        store = store if store is not None else InMemoryQuotaStore()
        cache = InMemoryCache(clock=clock)
        stats = EngineStats()
        resets = ResetScheduler(
            store,
            cache,
            policy=active_policy.reset,
            cache_key_prefix=active_policy.cache.distributed_key_prefix,
            clock=clock,
            stats=stats,
        )
        return QuotaManager(
            store,
            cache,
            active_policy,
            resets,
            clock=clock,
            stats=stats,
            timeout_seconds=timeout_seconds,
        )

    return factory


@pytest.fixture
def make_engine(
    clock: FrozenClock,
    monotonic: FakeMonotonic,
    policy: EnforcementPolicy,
) -> Callable[..., QuotaEngine]:
    """Factory for a QuotaEngine over in-memory backends."""

    def factory(
        store: QuotaStore | None = None,
        policy_override: EnforcementPolicy | None = None,
    ) -> QuotaEngine:
        return QuotaEngine(
            policy=policy_override or policy,
            counters=InMemoryCounterStore(clock=monotonic),
            cache=InMemoryCache(clock=clock),
            store=store if store is not None else InMemoryQuotaStore(),
            clock=clock,
        )

    return factory
