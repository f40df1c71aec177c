"""Tests for QuotaEngine enforcement and lifecycle."""

from collections.abc import Callable

import pytest

from quota_engine.config import Settings
from quota_engine.engine import EnforcementResult, QuotaEngine, create_quota_store
from quota_engine.errors import InvalidConfiguration, QuotaExceeded, RateLimited, SubjectRequired
from quota_engine.quota.models import Tier
from quota_engine.quota.sql_store import SqlQuotaStore
from quota_engine.ratelimit.keys import RequestContext

MakeEngine = Callable[..., QuotaEngine]

ALICE = RequestContext(rate_limit_key="203.0.113.7", subject_id="alice", tier=Tier.SILVER)
ANONYMOUS = RequestContext(rate_limit_key="203.0.113.8")


class TestEnforce:
    """Tests for QuotaEngine.enforce."""

    @pytest.mark.asyncio
    async def test_rate_limit_then_consume(self, make_engine: MakeEngine) -> None:
        engine = make_engine()

        result = await engine.enforce("question", ALICE, feature="questions")

        assert result.decision.allowed is True
        assert result.decision.key == "question:user:alice"
        assert result.consumed.usage.used == 1
        assert result.consumed.usage.limit == 200
        assert result.headers()["X-RateLimit-Limit"] == "30"

    @pytest.mark.asyncio
    async def test_rate_limited(self, make_engine: MakeEngine) -> None:
        """Test the fourth OTP request in a window is denied."""
        engine = make_engine()
        for _ in range(3):
            await engine.enforce("otp", ANONYMOUS)

        with pytest.raises(RateLimited) as exc_info:
            await engine.enforce("otp", ANONYMOUS)

        assert exc_info.value.decision.retry_after_seconds == 600
        assert "OTP" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_denied_request_consumes_no_quota(self, make_engine: MakeEngine) -> None:
        """Test quota is untouched when the rate limiter refuses."""
        engine = make_engine()
        for _ in range(30):
            await engine.enforce("question", ALICE, feature="questions")

        with pytest.raises(RateLimited):
            await engine.enforce("question", ALICE, feature="questions")

        assert (await engine.store.find("alice")).used["questions"] == 30

    @pytest.mark.asyncio
    async def test_subject_strategy_shares_bucket_across_addresses(
        self, make_engine: MakeEngine
    ) -> None:
        engine = make_engine()
        other_address = RequestContext(rate_limit_key="198.51.100.1", subject_id="alice", tier=Tier.SILVER)

        await engine.enforce("question", ALICE)
        result = await engine.enforce("question", other_address)

        assert result.decision.count == 2

    @pytest.mark.asyncio
    async def test_exempt_path_skips_limiter(self, make_engine: MakeEngine) -> None:
        engine = make_engine()

        result = await engine.enforce("api", ANONYMOUS, path="/health")

        assert result.decision is None
        assert result.headers() == {}

    @pytest.mark.asyncio
    async def test_feature_requires_subject(self, make_engine: MakeEngine) -> None:
        engine = make_engine()

        with pytest.raises(SubjectRequired):
            await engine.enforce("question", ANONYMOUS, feature="questions")

    @pytest.mark.asyncio
    async def test_quota_exceeded_propagates(self, make_engine: MakeEngine) -> None:
        engine = make_engine()
        free = RequestContext(rate_limit_key="203.0.113.9", subject_id="bob", tier=Tier.FREE)

        with pytest.raises(QuotaExceeded):
            await engine.enforce("question", free, feature="mock_tests")

    @pytest.mark.asyncio
    async def test_unknown_limiter(self, make_engine: MakeEngine) -> None:
        engine = make_engine()

        with pytest.raises(InvalidConfiguration):
            await engine.enforce("downloads", ANONYMOUS)


class TestRelease:
    """Tests for skip-failed-requests compensation."""

    @pytest.mark.asyncio
    async def test_failed_requests_are_refunded(self, make_engine: MakeEngine) -> None:
        """Test failed logins do not use up the auth window."""
        engine = make_engine()
        for _ in range(20):
            result = await engine.enforce("auth", ANONYMOUS)
            assert await engine.release(result, failed=True) is True

        result = await engine.enforce("auth", ANONYMOUS)
        assert result.decision.count == 1
        assert engine.stats.get("rate_limit_compensations") == 20

    @pytest.mark.asyncio
    async def test_successful_requests_are_kept(self, make_engine: MakeEngine) -> None:
        engine = make_engine()
        result = await engine.enforce("auth", ANONYMOUS)

        assert await engine.release(result, failed=False) is False
        assert (await engine.enforce("auth", ANONYMOUS)).decision.count == 2

    @pytest.mark.asyncio
    async def test_limiter_without_skip_failed(self, make_engine: MakeEngine) -> None:
        engine = make_engine()
        result = await engine.enforce("otp", ANONYMOUS)

        assert await engine.release(result, failed=True) is False

    @pytest.mark.asyncio
    async def test_release_without_decision(self, make_engine: MakeEngine) -> None:
        """Test exempt requests have nothing to refund."""
        engine = make_engine()

        assert await engine.release(EnforcementResult(limiter="api"), failed=True) is False

    @pytest.mark.asyncio
    async def test_release_refunds_once(self, make_engine: MakeEngine) -> None:
        """Test releasing the same result twice refunds a single slot."""
        engine = make_engine()
        await engine.enforce("auth", ANONYMOUS)
        result = await engine.enforce("auth", ANONYMOUS)

        assert await engine.release(result, failed=True) is True
        assert await engine.release(result, failed=True) is False
        assert (await engine.enforce("auth", ANONYMOUS)).decision.count == 2

    @pytest.mark.asyncio
    async def test_compensate_with_release_token(self, make_engine: MakeEngine) -> None:
        engine = make_engine()
        result = await engine.enforce("payment", ALICE, issue_release_token=True)

        assert result.release_token is not None
        assert await engine.compensate("payment", ALICE, result.release_token) is True
        assert await engine.compensate("payment", ALICE, result.release_token) is False
        assert await engine.compensate("otp", ALICE, result.release_token) is False

    @pytest.mark.asyncio
    async def test_release_token_bound_to_caller(self, make_engine: MakeEngine) -> None:
        """Test a token cannot refund another caller's window."""
        engine = make_engine()
        result = await engine.enforce("auth", ANONYMOUS, issue_release_token=True)
        other = RequestContext(rate_limit_key="198.51.100.1")
        await engine.enforce("auth", other)

        assert await engine.compensate("auth", other, result.release_token) is False
        assert await engine.compensate("auth", ANONYMOUS, "forged") is False
        assert await engine.compensate("auth", ANONYMOUS, result.release_token) is True

    @pytest.mark.asyncio
    async def test_no_release_token_without_skip_failed(self, make_engine: MakeEngine) -> None:
        engine = make_engine()

        result = await engine.enforce("otp", ANONYMOUS, issue_release_token=True)

        assert result.release_token is None
        assert (await engine.enforce("auth", ANONYMOUS)).release_token is None


class TestLifecycle:
    """Tests for building, starting and stopping the engine."""

    @pytest.mark.asyncio
    async def test_start_and_stop_with_sweeper(self, make_engine: MakeEngine) -> None:
        engine = make_engine()

        await engine.start()
        try:
            assert engine.is_running is True
            assert engine.resets.is_running is True
            health = await engine.health_check()
            assert health["sweeper_running"] is True
            assert health["policy_version"] == "1"
        finally:
            await engine.stop()

        assert engine.is_running is False
        assert engine.resets.is_running is False

    @pytest.mark.asyncio
    async def test_start_without_sweeper(self, make_engine: MakeEngine) -> None:
        engine = make_engine()

        await engine.start(run_sweeper=False)
        await engine.start(run_sweeper=False)

        assert engine.resets.is_running is False
        await engine.stop()
        await engine.stop()

    def test_from_settings_memory(self) -> None:
        engine = QuotaEngine.from_settings(Settings(quota_store_backend="memory"))

        assert engine.counters.name == "memory"
        assert engine.cache.name == "memory"
        assert engine.store.name == "memory"

    @pytest.mark.asyncio
    async def test_from_settings_sql(self, temp_db_path: str) -> None:
        engine = QuotaEngine.from_settings(Settings(database_url=f"sqlite:///{temp_db_path}"))
        assert isinstance(engine.store, SqlQuotaStore)

        await engine.start(run_sweeper=False)
        try:
            result = await engine.enforce("question", ALICE, feature="questions")
            assert result.consumed.usage.used == 1
        finally:
            await engine.stop()

    def test_unknown_store_backend(self) -> None:
        with pytest.raises(ValueError, match="Unknown quota store backend"):
            create_quota_store(Settings(quota_store_backend="mongo"))
