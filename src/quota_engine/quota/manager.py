"""
Quota management service.

Reads, lazily resets and increments each subject's per-feature daily
counters. The quota store is the system of record; a distributed snapshot and
a process-local "recently checked" marker let status reads skip the store.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, TypeVar

from quota_engine.cache.base import CacheBackend
from quota_engine.cache.local import ProcessLocalCache
from quota_engine.clock import Clock, utc_now
from quota_engine.errors import QuotaExceeded, QuotaServiceUnavailable, StoreUnavailable
from quota_engine.policy import EnforcementPolicy
from quota_engine.quota.models import (
    ConsumeResult,
    FeatureUsage,
    QuotaRecord,
    QuotaStatus,
    Tier,
)
from quota_engine.quota.store import QuotaStore
from quota_engine.scheduler.reset import ResetScheduler
from quota_engine.stats import EngineStats

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QuotaManager:
    """
    Per-subject daily allowance tracking.

    Limits always come from the enforcement policy's tier table. The tier a
    caller passes in (the subject's current entitlement) takes precedence over
    the stored one when limits are derived; the stored tier only changes
    through ``change_tier``.

    Failure handling:
    - ``consume`` fails closed with ``QuotaServiceUnavailable``.
    - ``get_status`` serves the last snapshot flagged ``stale`` when the store
      is down, and fails closed only if there is none.
    """

    def __init__(
        self,
        store: QuotaStore,
        cache: CacheBackend,
        policy: EnforcementPolicy,
        resets: ResetScheduler,
        local_cache: ProcessLocalCache | None = None,
        clock: Clock = utc_now,
        stats: EngineStats | None = None,
        timeout_seconds: float = 2.0,
    ) -> None:
        """
        Initialize the quota manager.

        Args:
            store: Quota system of record
            cache: Distributed cache for snapshots
            policy: Tier table, feature set and cache TTLs
            resets: Source of reset instants; its sweep invalidates our local entries
            local_cache: Per-process "recently checked" markers
            clock: Source of the current time
            stats: Engine counters to update
            timeout_seconds: Bound on every store and cache call
        """
        self.store = store
        self.cache = cache
        self.policy = policy
        self.resets = resets
        self.local_cache = local_cache or ProcessLocalCache(
            ttl_seconds=policy.cache.local_ttl_seconds,
            max_entries=policy.cache.local_max_entries,
            clock=clock,
        )
        self.clock = clock
        self.stats = stats or EngineStats()
        self.timeout_seconds = timeout_seconds
        # subject id -> number of consume calls in flight on this instance
        self._pending: dict[str, int] = {}

        resets.add_reset_listener(self.local_cache.invalidate)

    # Helpers

    def _snapshot_key(self, subject_id: str) -> str:
        return f"{self.policy.cache.distributed_key_prefix}{subject_id}"

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise StoreUnavailable("quota store", operation, e) from e

    def _build_status(
        self,
        record: QuotaRecord,
        tier: Tier | None = None,
        source: str = "store",
        stale: bool = False,
    ) -> QuotaStatus:
        effective_tier = tier or record.tier
        limits = self.policy.limits_for(effective_tier)
        return QuotaStatus(
            subject_id=record.subject_id,
            tier=effective_tier,
            features={
                feature: FeatureUsage(used=record.used_for(feature), limit=limits[feature])
                for feature in self.policy.features
            },
            reset_at=record.reset_at,
            stale=stale,
            source=source,
        )

    async def _read_snapshot(self, subject_id: str) -> QuotaRecord | None:
        key = self._snapshot_key(subject_id)
        try:
            data = await asyncio.wait_for(self.cache.get(key), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Cache read timed out for {key}, treating as miss")
            return None
        if data is None:
            return None

        try:
            return QuotaRecord.from_snapshot(data)
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Discarding malformed quota snapshot {key}: {e}")
            await self.cache.delete(key)
            return None

    async def _write_snapshot(self, record: QuotaRecord, now: datetime) -> None:
        key = self._snapshot_key(record.subject_id)
        try:
            await asyncio.wait_for(
                self.cache.set(
                    key,
                    record.to_snapshot(cached_at=now),
                    self.policy.cache.distributed_ttl_seconds,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Cache write timed out for {key}")

    async def _load(self, subject_id: str, tier: Tier | None, now: datetime) -> QuotaRecord:
        """Fetch (or create) the record and apply a lazy reset if it is due."""
        record = await self._call("find", self.store.find(subject_id))
        if record is None:
            fresh = QuotaRecord.new(
                subject_id=subject_id,
                tier=tier or Tier.lowest(),
                features=list(self.policy.features),
                reset_at=self.resets.compute_next_reset(now),
                now=now,
            )
            record = await self._call("insert_if_absent", self.store.insert_if_absent(fresh))
            logger.debug(f"Created quota record for {subject_id} ({record.tier.value})")

        if record.needs_reset(now):
            reset = await self._call(
                "reset_if_due",
                self.store.reset_if_due(subject_id, now, self.resets.compute_next_reset(now)),
            )
            await self.invalidate(subject_id)
            if reset is not None:
                self.stats.increment("quota_lazy_resets")
                logger.info(f"Lazily reset quota for {subject_id}, next reset {reset.reset_at.isoformat()}")
                record = reset
            else:
                # Someone else (the sweep or another instance) reset it first
                record = await self._call("find", self.store.find(subject_id)) or record

        return record

    # Operations

    async def get_status(self, subject_id: str, tier: Tier | None = None) -> QuotaStatus:
        """
        Current usage of every feature for a subject.

        Args:
            subject_id: Subject to report on
            tier: The subject's current entitlement, if known

        Returns:
            QuotaStatus (``stale=True`` when served from cache during a store outage)

        Raises:
            QuotaServiceUnavailable: If the store is down and no snapshot exists
        """
        now = self.clock()
        snapshot: QuotaRecord | None = None

        if self.local_cache.is_fresh(subject_id) and not self._pending.get(subject_id):
            snapshot = await self._read_snapshot(subject_id)
            if snapshot is not None and not snapshot.needs_reset(now):
                status = self._build_status(snapshot, tier, source="cache")
                if not any(u.reached and u.limit > 0 for u in status.features.values()):
                    self.stats.increment("cache_hits")
                    return status
                # A counter that reached its limit blocks the caller, so confirm it with the store

        self.stats.increment("cache_misses")
        try:
            record = await self._load(subject_id, tier, now)
        except StoreUnavailable as e:
            self.stats.increment("quota_store_failures")
            return await self._stale_status(subject_id, tier, now, snapshot, e)

        await self._write_snapshot(record, now)
        self.local_cache.mark_checked(subject_id, now)
        return self._build_status(record, tier)

    async def _stale_status(
        self,
        subject_id: str,
        tier: Tier | None,
        now: datetime,
        snapshot: QuotaRecord | None,
        error: StoreUnavailable,
    ) -> QuotaStatus:
        if snapshot is None:
            snapshot = await self._read_snapshot(subject_id)
        if snapshot is None:
            logger.error(f"Quota status for {subject_id} unavailable: {error}")
            raise QuotaServiceUnavailable(subject_id) from error

        if snapshot.needs_reset(now):
            snapshot.reset(self.resets.compute_next_reset(now), now)
        self.stats.increment("quota_stale_reads")
        logger.warning(f"Serving stale quota snapshot for {subject_id}: {error}")
        return self._build_status(snapshot, tier, source="cache", stale=True)

    async def consume(
        self,
        subject_id: str,
        feature: str,
        tier: Tier | None = None,
    ) -> ConsumeResult:
        """
        Use one unit of a feature's daily allowance.

        Always reads the quota store. Where the store has an atomic
        conditional increment, concurrent callers cannot push ``used`` past
        the limit; otherwise an overshoot is logged and counted, never raised.

        Args:
            subject_id: Subject consuming the feature
            feature: Configured feature name
            tier: The subject's current entitlement, if known

        Returns:
            ConsumeResult with the updated status

        Raises:
            UnknownFeature: If the feature is not configured
            QuotaExceeded: If the allowance is already used up
            QuotaServiceUnavailable: If the store failed or timed out
        """
        self.policy.require_feature(feature)
        now = self.clock()

        self._pending[subject_id] = self._pending.get(subject_id, 0) + 1
        try:
            try:
                record = await self._load(subject_id, tier, now)
                limit = self.policy.limit(tier or record.tier, feature)
                used = record.used_for(feature)

                new_used: int | None = None
                if used < limit:
                    new_used = await self._increment(subject_id, feature, limit, now)
            except StoreUnavailable as e:
                self.stats.increment("quota_store_failures")
                logger.error(f"Cannot consume {feature} for {subject_id}: {e}")
                raise QuotaServiceUnavailable(subject_id) from e

            if new_used is None:
                # Either already at the limit, or a concurrent caller took the last unit
                record.used[feature] = max(used, limit)
                await self._write_snapshot(record, now)
                self.local_cache.mark_checked(subject_id, now)
                self.stats.increment("quota_exceeded")
                usage = FeatureUsage(used=record.used[feature], limit=limit)
                logger.info(f"Quota exceeded: {subject_id} {feature} {usage.used}/{usage.limit}")
                raise QuotaExceeded(subject_id, feature, usage)

            record.used[feature] = new_used
            record.last_updated = now
            await self._write_snapshot(record, now)
            self.local_cache.mark_checked(subject_id, now)
            self.stats.increment("quota_consumed")
            return ConsumeResult(ok=True, feature=feature, status=self._build_status(record, tier))
        finally:
            remaining = self._pending[subject_id] - 1
            if remaining:
                self._pending[subject_id] = remaining
            else:
                del self._pending[subject_id]

    async def _increment(
        self,
        subject_id: str,
        feature: str,
        limit: int,
        now: datetime,
    ) -> int | None:
        if self.store.supports_conditional_increment:
            return await self._call(
                "increment_if_below",
                self.store.increment_if_below(subject_id, feature, limit, now),
            )

        new_used = await self._call("increment", self.store.increment(subject_id, feature, now))
        if new_used > limit:
            self.stats.increment("quota_overcount")
            logger.warning(
                f"Quota overcount for {subject_id} {feature}: {new_used}/{limit} "
                f"after concurrent consumes"
            )
        return new_used

    async def change_tier(
        self,
        subject_id: str,
        tier: Tier,
        reset_usage: bool = False,
    ) -> QuotaStatus:
        """
        Record an entitlement change.

        Args:
            subject_id: Subject whose tier changed
            tier: New tier
            reset_usage: Also zero every counter and start a fresh window

        Returns:
            Status under the new tier

        Raises:
            QuotaServiceUnavailable: If the store failed or timed out
        """
        now = self.clock()
        next_reset_at = self.resets.compute_next_reset(now) if reset_usage else None
        try:
            previous = (await self._load(subject_id, tier, now)).tier
            # Writes the tier only; counters stay as the store has them
            record = await self._call(
                "set_tier", self.store.set_tier(subject_id, tier, now, next_reset_at)
            )
        except StoreUnavailable as e:
            self.stats.increment("quota_store_failures")
            raise QuotaServiceUnavailable(subject_id) from e

        await self.invalidate(subject_id)
        logger.info(
            f"Tier of {subject_id} changed {previous.value} -> {tier.value}"
            f"{' (usage reset)' if reset_usage else ''}"
        )
        return self._build_status(record)

    async def invalidate(self, subject_id: str) -> None:
        """Drop both cache tiers for a subject."""
        self.local_cache.invalidate(subject_id)
        await self.cache.delete(self._snapshot_key(subject_id))

    def next_reset(self) -> datetime:
        return self.resets.compute_next_reset(self.clock())

    def pending_consumes(self, subject_id: str) -> int:
        return self._pending.get(subject_id, 0)

    def describe(self) -> dict[str, Any]:
        return {
            "store": self.store.name,
            "cache": self.cache.name,
            "conditional_increment": self.store.supports_conditional_increment,
            "local_entries": len(self.local_cache),
        }
