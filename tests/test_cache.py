"""Tests for the distributed cache backends and the process-local cache."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from quota_engine.cache.base import CacheEntry
from quota_engine.cache.factory import create_cache
from quota_engine.cache.local import ProcessLocalCache
from quota_engine.cache.memory import InMemoryCache
from quota_engine.cache.redis import RedisCache
from quota_engine.config import Settings

from conftest import FrozenClock


class TestCacheEntry:
    """Tests for CacheEntry dataclass."""

    def test_expires_at_with_ttl(self) -> None:
        """Test expires_at calculation with TTL."""
        entry = CacheEntry(
            key="test",
            value="data",
            stored_at=datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
            ttl_seconds=3600,
        )
        assert entry.expires_at == datetime(2025, 1, 1, 13, 0, 0, tzinfo=timezone.utc)

    def test_is_expired_boundary(self) -> None:
        """Test an entry is expired exactly at its expiry instant."""
        stored = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        entry = CacheEntry(key="test", value="data", stored_at=stored, ttl_seconds=60)

        assert entry.is_expired(stored + timedelta(seconds=59)) is False
        assert entry.is_expired(stored + timedelta(seconds=60)) is True

    def test_no_ttl_never_expires(self) -> None:
        """Test entry without TTL never expires."""
        stored = datetime(2025, 1, 1, tzinfo=timezone.utc)
        entry = CacheEntry(key="test", value="data", stored_at=stored, ttl_seconds=None)

        assert entry.expires_at is None
        assert entry.is_expired(stored + timedelta(days=365)) is False


class TestInMemoryCache:
    """Tests for InMemoryCache backend."""

    @pytest.fixture
    def cache(self, clock: FrozenClock) -> InMemoryCache:
        return InMemoryCache(default_ttl_seconds=60, clock=clock)

    def test_name(self, cache: InMemoryCache) -> None:
        """Test backend name."""
        assert cache.name == "memory"
        assert cache.is_connected is True

    @pytest.mark.asyncio
    async def test_set_and_get(self, cache: InMemoryCache) -> None:
        """Test basic set and get."""
        assert await cache.set("limits:u1", {"used": {"questions": 3}}) is True
        assert await cache.get("limits:u1") == {"used": {"questions": 3}}

    @pytest.mark.asyncio
    async def test_get_missing(self, cache: InMemoryCache) -> None:
        """Test get returns None for missing keys."""
        assert await cache.get("nope") is None

    @pytest.mark.asyncio
    async def test_default_ttl_expiry(self, cache: InMemoryCache, clock: FrozenClock) -> None:
        """Test entries expire after the default TTL."""
        await cache.set("k", "v")

        clock.advance(seconds=59)
        assert await cache.get("k") == "v"

        clock.advance(seconds=1)
        assert await cache.get("k") is None
        assert cache.size() == 0

    @pytest.mark.asyncio
    async def test_explicit_ttl(self, cache: InMemoryCache, clock: FrozenClock) -> None:
        """Test a per-key TTL overrides the default."""
        await cache.set("k", "v", ttl_seconds=3600)

        clock.advance(seconds=120)
        assert await cache.get("k") == "v"

    @pytest.mark.asyncio
    async def test_zero_ttl_never_expires(self, cache: InMemoryCache, clock: FrozenClock) -> None:
        """Test a zero TTL stores without expiry."""
        await cache.set("k", "v", ttl_seconds=0)

        clock.advance(days=30)
        assert await cache.get("k") == "v"

    @pytest.mark.asyncio
    async def test_delete(self, cache: InMemoryCache) -> None:
        """Test delete reports whether a key was removed."""
        await cache.set("k", "v")

        assert await cache.delete("k") is True
        assert await cache.delete("k") is False
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_clear_pattern(self, cache: InMemoryCache) -> None:
        """Test clear with a glob pattern."""
        await cache.set("limits:a", 1)
        await cache.set("limits:b", 2)
        await cache.set("other:c", 3)

        assert await cache.clear("limits:*") == 2
        assert await cache.get("other:c") == 3

        assert await cache.clear() == 1
        assert cache.size() == 0

    @pytest.mark.asyncio
    async def test_max_size_evicts_oldest(self, clock: FrozenClock) -> None:
        """Test the oldest entry is evicted when full."""
        cache = InMemoryCache(default_ttl_seconds=600, max_size=2, clock=clock)
        await cache.set("a", 1)
        clock.advance(seconds=1)
        await cache.set("b", 2)
        clock.advance(seconds=1)
        await cache.set("c", 3)

        assert await cache.get("a") is None
        assert await cache.get("b") == 2
        assert await cache.get("c") == 3

    @pytest.mark.asyncio
    async def test_max_size_prefers_expired(self, clock: FrozenClock) -> None:
        """Test expired entries are evicted before live ones."""
        cache = InMemoryCache(default_ttl_seconds=600, max_size=2, clock=clock)
        await cache.set("live", 1)
        await cache.set("short", 2, ttl_seconds=5)
        clock.advance(seconds=10)
        await cache.set("new", 3)

        assert await cache.get("live") == 1
        assert await cache.get("new") == 3

    @pytest.mark.asyncio
    async def test_close_and_reconnect(self, cache: InMemoryCache) -> None:
        """Test close drops entries and connect re-enables the backend."""
        await cache.set("k", "v")
        await cache.close()

        assert cache.is_connected is False
        assert cache.size() == 0

        assert await cache.connect() is True
        assert cache.is_connected is True

    @pytest.mark.asyncio
    async def test_health_check(self, cache: InMemoryCache) -> None:
        """Test health check reports entry counts."""
        await cache.set("k", "v")
        health = await cache.health_check()

        assert health["backend"] == "memory"
        assert health["total_entries"] == 1


class TestRedisCache:
    """Tests for RedisCache backend."""

    @pytest.fixture
    def cache(self) -> RedisCache:
        return RedisCache(
            url="redis://localhost:6379/0",
            default_ttl_seconds=60,
            prefix="test:",
        )

    def test_initial_state(self, cache: RedisCache) -> None:
        """Test name and initial connection status."""
        assert cache.name == "redis"
        assert cache.is_connected is False

    def test_get_key_prefix(self, cache: RedisCache) -> None:
        """Test key prefixing."""
        assert cache._get_key("limits:u1") == "test:limits:u1"

    def test_serialization(self, cache: RedisCache) -> None:
        """Test values survive the JSON envelope."""
        snapshot = {"subject_id": "u1", "used": {"questions": 4}}
        assert cache._deserialize(cache._serialize(snapshot)) == snapshot

    def test_deserialize_invalid(self, cache: RedisCache) -> None:
        """Test malformed payloads are treated as misses."""
        assert cache._deserialize(None) is None
        assert cache._deserialize("not json") is None
        assert cache._deserialize(b"[1, 2]") is None

    @pytest.mark.asyncio
    async def test_connect_success(self, cache: RedisCache) -> None:
        """Test successful connection (mocked)."""
        mock_client = AsyncMock()
        mock_client.ping = AsyncMock(return_value=True)

        with patch("redis.asyncio.from_url", return_value=mock_client):
            assert await cache.connect() is True

        assert cache.is_connected is True

    @pytest.mark.asyncio
    async def test_connect_failure(self, cache: RedisCache) -> None:
        """Test an unreachable server is reported, not raised."""
        mock_client = AsyncMock()
        mock_client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))

        with patch("redis.asyncio.from_url", return_value=mock_client):
            assert await cache.connect() is False

        assert cache.is_connected is False

    @pytest.mark.asyncio
    async def test_get_success(self) -> None:
        """Test get unwraps the envelope."""
        mock_client = AsyncMock()
        mock_client.get = AsyncMock(return_value=b'{"v": {"questions": 2}, "t": "2025-01-01T00:00:00"}')
        cache = RedisCache(prefix="test:", client=mock_client)

        assert await cache.get("limits:u1") == {"questions": 2}
        mock_client.get.assert_awaited_once_with("test:limits:u1")

    @pytest.mark.asyncio
    async def test_get_error_is_miss(self) -> None:
        """Test a Redis fault degrades to a miss."""
        mock_client = AsyncMock()
        mock_client.get = AsyncMock(side_effect=RedisConnectionError("reset by peer"))
        cache = RedisCache(prefix="test:", client=mock_client)

        assert await cache.get("limits:u1") is None
        assert cache.is_connected is False

    @pytest.mark.asyncio
    async def test_set_uses_ttl(self) -> None:
        """Test set writes with SETEX."""
        mock_client = AsyncMock()
        cache = RedisCache(prefix="test:", default_ttl_seconds=3600, client=mock_client)

        assert await cache.set("limits:u1", {"a": 1}) is True

        args = mock_client.setex.await_args.args
        assert args[0] == "test:limits:u1"
        assert args[1] == 3600

    @pytest.mark.asyncio
    async def test_set_error_returns_false(self) -> None:
        """Test a failed write is reported, not raised."""
        mock_client = AsyncMock()
        mock_client.setex = AsyncMock(side_effect=RedisConnectionError("down"))
        cache = RedisCache(prefix="test:", client=mock_client)

        assert await cache.set("k", 1) is False

    @pytest.mark.asyncio
    async def test_shared_client_not_closed(self) -> None:
        """Test a client passed in is left open on close."""
        mock_client = AsyncMock()
        cache = RedisCache(client=mock_client)

        await cache.close()

        mock_client.aclose.assert_not_awaited()


class TestCacheFactory:
    """Tests for create_cache."""

    def test_memory_backend(self) -> None:
        """Test the default in-memory backend."""
        cache = create_cache(Settings(cache_backend="memory"), default_ttl_seconds=120)
        assert isinstance(cache, InMemoryCache)

    def test_redis_without_url_falls_back(self) -> None:
        """Test redis without a URL falls back to memory."""
        cache = create_cache(Settings(cache_backend="redis", redis_url=None))
        assert isinstance(cache, InMemoryCache)

    def test_redis_backend(self) -> None:
        """Test redis with a URL or a shared client."""
        cache = create_cache(Settings(cache_backend="redis", redis_url="redis://localhost:6379/0"))
        assert isinstance(cache, RedisCache)

        shared = create_cache(Settings(cache_backend="redis"), client=MagicMock())
        assert isinstance(shared, RedisCache)

    def test_unknown_backend(self) -> None:
        """Test an unknown backend name is rejected."""
        with pytest.raises(ValueError, match="Unknown cache backend"):
            create_cache(Settings(cache_backend="memcached"))


class TestProcessLocalCache:
    """Tests for the per-process recently-checked markers."""

    def test_mark_and_fresh(self, clock: FrozenClock) -> None:
        """Test a marked subject is fresh until the TTL passes."""
        local = ProcessLocalCache(ttl_seconds=60, clock=clock)
        local.mark_checked("u1")

        assert local.is_fresh("u1") is True
        assert "u1" in local

        clock.advance(seconds=60)
        assert local.is_fresh("u1") is False
        assert len(local) == 0

    def test_unknown_subject(self, clock: FrozenClock) -> None:
        """Test unknown subjects are not fresh."""
        assert ProcessLocalCache(clock=clock).is_fresh("ghost") is False

    def test_invalidate(self, clock: FrozenClock) -> None:
        """Test invalidate drops the marker."""
        local = ProcessLocalCache(clock=clock)
        local.mark_checked("u1")

        assert local.invalidate("u1") is True
        assert local.invalidate("u1") is False
        assert local.is_fresh("u1") is False

    def test_bounded_evicts_oldest(self, clock: FrozenClock) -> None:
        """Test the least recently marked subject is evicted when full."""
        local = ProcessLocalCache(ttl_seconds=60, max_entries=2, clock=clock)
        local.mark_checked("a")
        local.mark_checked("b")
        local.mark_checked("a")
        local.mark_checked("c")

        assert len(local) == 2
        assert local.is_fresh("a") is True
        assert local.is_fresh("b") is False
        assert local.is_fresh("c") is True

    def test_bounded_evicts_expired_first(self, clock: FrozenClock) -> None:
        """Test expired markers make room before live ones."""
        local = ProcessLocalCache(ttl_seconds=60, max_entries=2, clock=clock)
        local.mark_checked("old")
        clock.advance(seconds=61)
        local.mark_checked("b")
        local.mark_checked("c")

        assert len(local) == 2
        assert local.is_fresh("b") and local.is_fresh("c")

    def test_purge_expired_and_clear(self, clock: FrozenClock) -> None:
        """Test bulk maintenance operations."""
        local = ProcessLocalCache(ttl_seconds=60, clock=clock)
        local.mark_checked("a")
        clock.advance(seconds=30)
        local.mark_checked("b")
        clock.advance(seconds=31)

        assert local.purge_expired() == 1
        assert local.clear() == 1
