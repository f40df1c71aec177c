"""
Composition root.

``QuotaEngine`` builds the counter store, the distributed cache and the quota
store from settings, wires the rate limiter, quota manager and reset
scheduler over them, and owns their start/stop lifecycle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from quota_engine.cache.base import CacheBackend
from quota_engine.cache.factory import create_cache
from quota_engine.cache.local import ProcessLocalCache
from quota_engine.cache.redis import create_redis_client
from quota_engine.clock import Clock, utc_now
from quota_engine.config import Settings, get_settings
from quota_engine.counters.base import AtomicCounterStore
from quota_engine.counters.factory import create_counter_store
from quota_engine.db.manager import DatabaseManager
from quota_engine.errors import RateLimited, SubjectRequired
from quota_engine.policy import EnforcementPolicy, load_policy
from quota_engine.quota.manager import QuotaManager
from quota_engine.quota.models import ConsumeResult
from quota_engine.quota.sql_store import SqlQuotaStore
from quota_engine.quota.store import InMemoryQuotaStore, QuotaStore
from quota_engine.ratelimit.keys import RequestContext, limiter_key
from quota_engine.ratelimit.limiter import Decision, RateLimiter
from quota_engine.scheduler.reset import ResetScheduler
from quota_engine.scheduler.service import SchedulerService
from quota_engine.stats import EngineStats

logger = logging.getLogger(__name__)


def create_quota_store(settings: Settings) -> QuotaStore:
    """
    Create the quota store named by ``settings.quota_store_backend``.

    Raises:
        ValueError: If the backend type is unknown
    """
    backend_type = settings.quota_store_backend
    if backend_type == "memory":
        logger.warning("Using in-memory quota store; usage is lost on restart")
        return InMemoryQuotaStore()
    if backend_type == "sql":
        return SqlQuotaStore(DatabaseManager(settings.database_url, echo=settings.database_echo))
    raise ValueError(f"Unknown quota store backend: {backend_type}")


@dataclass
class EnforcementResult:
    """
    What ``QuotaEngine.enforce`` let through.

    Attributes:
        limiter: Name of the limiter consulted
        decision: Rate-limit decision (None for exempt paths)
        consumed: Quota consumption (None for operations that are not metered)
        release_token: One-time token for refunding the slot from another call
        released: True once the slot has been refunded
    """

    limiter: str
    decision: Decision | None = None
    consumed: ConsumeResult | None = None
    release_token: str | None = None
    released: bool = False

    def headers(self) -> dict[str, str]:
        return self.decision.headers() if self.decision else {}


class QuotaEngine:
    """
    Decides whether an operation may proceed.

    Usage:
        engine = QuotaEngine.from_settings()
        await engine.start()
        result = await engine.enforce("question", context, feature="questions")
        ...
        await engine.release(result, failed=response_status >= 400)
    """

    def __init__(
        self,
        policy: EnforcementPolicy,
        counters: AtomicCounterStore,
        cache: CacheBackend,
        store: QuotaStore,
        clock: Clock = utc_now,
        stats: EngineStats | None = None,
        store_timeout_seconds: float = 2.0,
        scheduler_service: SchedulerService | None = None,
        redis_client: redis.Redis | None = None,
    ) -> None:
        """
        Wire the engine.

        Args:
            policy: Frozen enforcement policy
            counters: Counter store backing the rate limiter
            cache: Distributed snapshot cache
            store: Quota system of record
            clock: Source of the current time
            stats: Engine counters (a fresh set by default)
            store_timeout_seconds: Bound on every store call
            scheduler_service: APScheduler wrapper for the reset sweep
            redis_client: Shared Redis client to close on stop
        """
        self.policy = policy
        self.counters = counters
        self.cache = cache
        self.store = store
        self.clock = clock
        self.stats = stats or EngineStats()
        self._redis_client = redis_client
        self._started = False

        self.rate_limiter = RateLimiter(
            counters,
            timeout_seconds=store_timeout_seconds,
            stats=self.stats,
        )
        self.local_cache = ProcessLocalCache(
            ttl_seconds=policy.cache.local_ttl_seconds,
            max_entries=policy.cache.local_max_entries,
            clock=clock,
        )
        self.resets = ResetScheduler(
            store,
            cache,
            policy=policy.reset,
            cache_key_prefix=policy.cache.distributed_key_prefix,
            clock=clock,
            stats=self.stats,
            service=scheduler_service,
        )
        self.quotas = QuotaManager(
            store,
            cache,
            policy,
            self.resets,
            local_cache=self.local_cache,
            clock=clock,
            stats=self.stats,
            timeout_seconds=store_timeout_seconds,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        policy: EnforcementPolicy | None = None,
    ) -> QuotaEngine:
        """
        Build an engine from process settings.

        Args:
            settings: Settings (defaults to ``get_settings()``)
            policy: Enforcement policy (defaults to loading ``settings.policy_path``)

        Raises:
            InvalidConfiguration: If the policy file is invalid
            ValueError: If a backend name is unknown
        """
        settings = settings or get_settings()
        policy = policy or load_policy(settings.policy_path)

        client = None
        if settings.redis_url and "redis" in (settings.counter_backend, settings.cache_backend):
            client = create_redis_client(settings.redis_url, settings.redis_max_connections)

        engine = cls(
            policy=policy,
            counters=create_counter_store(settings, client),
            cache=create_cache(settings, policy.cache.distributed_ttl_seconds, client),
            store=create_quota_store(settings),
            store_timeout_seconds=settings.store_timeout_seconds,
            redis_client=client,
        )
        logger.info(
            f"Quota engine configured: counters={engine.counters.name}, "
            f"cache={engine.cache.name}, store={engine.store.name}, policy v{policy.version}"
        )
        return engine

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self, run_sweeper: bool = True) -> None:
        """
        Prepare the backends and, optionally, schedule the reset sweep.

        Must be awaited inside the event loop that will serve requests.
        """
        if self._started:
            return
        await self.store.initialize()
        await self.counters.connect()
        await self.cache.connect()
        if run_sweeper:
            self.resets.start()
        self._started = True
        logger.info("Quota engine started")

    async def stop(self) -> None:
        if not self._started:
            return
        if self.resets.is_running:
            self.resets.stop()
        await self.cache.close()
        await self.counters.close()
        await self.store.close()
        if self._redis_client is not None:
            try:
                await self._redis_client.aclose()
            except (RedisError, OSError) as e:
                logger.error(f"Error closing Redis connection: {e}")
        self._started = False
        logger.info("Quota engine stopped")

    async def enforce(
        self,
        limiter_name: str,
        context: RequestContext,
        feature: str | None = None,
        path: str | None = None,
        issue_release_token: bool = False,
    ) -> EnforcementResult:
        """
        Run the rate limiter, then (for metered operations) the quota.

        Args:
            limiter_name: Configured limiter to consult
            context: Identity of the caller
            feature: Metered feature to consume, if any
            path: Request path, checked against the limiter's exempt paths
            issue_release_token: Return a token that lets another call refund the
                slot through ``compensate`` if the operation fails downstream

        Returns:
            EnforcementResult to pass back to ``release``

        Raises:
            RateLimited: If the limiter denies the request
            SubjectRequired: If a metered operation has no subject
            QuotaExceeded: If the feature's allowance is used up
            QuotaServiceUnavailable: If quota state could not be read or written
        """
        limiter = self.policy.limiter(limiter_name)
        result = EnforcementResult(limiter=limiter_name)

        if path is None or path not in limiter.exempt_paths:
            key = limiter_key(limiter_name, limiter.key_strategy, context)
            decision = await self.rate_limiter.check(
                key, limiter.max, limiter.window_seconds, limiter
            )
            result.decision = decision
            if not decision.allowed:
                raise RateLimited(decision, limiter.message)
            if issue_release_token:
                result.release_token = await self.rate_limiter.issue_release_token(decision)

        if feature is not None:
            if context.subject_id is None:
                raise SubjectRequired(feature)
            result.consumed = await self.quotas.consume(context.subject_id, feature, context.tier)

        return result

    async def release(self, result: EnforcementResult, failed: bool) -> bool:
        """
        Report the downstream outcome of an enforced request.

        A failed outcome refunds the rate-limit slot when the limiter skips
        failed requests. Best-effort, and at most once per result.

        Returns:
            True if a refund was made
        """
        decision = result.decision
        if not failed or decision is None or not decision.compensable or decision.failed_open:
            return False
        if decision.key is None or result.released:
            return False
        result.released = await self.rate_limiter.compensate(decision.key)
        return result.released

    async def compensate(
        self,
        limiter_name: str,
        context: RequestContext,
        release_token: str,
    ) -> bool:
        """
        Refund one request of ``context`` under a limiter that skips failures.

        For callers that enforce in one call and learn the outcome in another.
        The token must come from an ``enforce`` call by the same caller on the
        same limiter; each token refunds at most once.
        """
        limiter = self.policy.limiter(limiter_name)
        if not limiter.skip_failed_requests:
            return False
        key = limiter_key(limiter_name, limiter.key_strategy, context)
        return await self.rate_limiter.redeem(key, release_token)

    async def health_check(self) -> dict[str, Any]:
        return {
            "running": self._started,
            "counters": self.counters.name,
            "cache": await self.cache.health_check(),
            "store": self.store.name,
            "sweeper_running": self.resets.is_running,
            "policy_version": self.policy.version,
        }
