"""
Daily quota reset.

Reset instants are computed at a fixed hour in a fixed UTC offset. Records are
reset lazily by the quota manager when it notices they are due, and in bulk by
a periodic sweep; both paths are conditional and idempotent.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from quota_engine.cache.base import CacheBackend
from quota_engine.clock import Clock, ensure_utc, utc_now
from quota_engine.errors import QuotaEngineError, StoreUnavailable
from quota_engine.policy import ResetPolicy
from quota_engine.quota.store import QuotaStore
from quota_engine.scheduler.service import SchedulerService
from quota_engine.stats import EngineStats

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "quota-reset-sweep"

ResetListener = Callable[[str], None]


def compute_next_reset(
    reference: datetime,
    reset_hour: int = 4,
    utc_offset_minutes: int = 330,
) -> datetime:
    """
    Next reset instant strictly after ``reference``.

    Args:
        reference: Any instant; naive values are taken as UTC
        reset_hour: Hour of day the reset fires, in the fixed offset
        utc_offset_minutes: Offset of the reset timezone from UTC

    Returns:
        Aware UTC datetime

    Example:
        With the defaults (04:00 at +05:30), 03:00 local resets at 04:00 the
        same day and 04:30 local resets at 04:00 the next day.
    """
    zone = timezone(timedelta(minutes=utc_offset_minutes))
    local = ensure_utc(reference).astimezone(zone)
    target = local.replace(hour=reset_hour, minute=0, second=0, microsecond=0)
    if target <= local:
        target += timedelta(days=1)
    return target.astimezone(timezone.utc)


def needs_reset(reset_at: datetime, now: datetime) -> bool:
    return ensure_utc(now) >= ensure_utc(reset_at)


@dataclass
class SweepResult:
    """Outcome of one sweep."""

    reset_count: int
    next_reset_at: datetime
    subject_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "reset_count": self.reset_count,
            "next_reset_at": self.next_reset_at.isoformat(),
        }


class ResetScheduler:
    """
    Computes reset times and sweeps the quota store for due records.

    After a sweep the distributed snapshot of every reset subject is deleted
    and registered listeners are told, so process-local entries can be dropped.
    """

    def __init__(
        self,
        store: QuotaStore,
        cache: CacheBackend,
        policy: ResetPolicy | None = None,
        cache_key_prefix: str = "limits:",
        clock: Clock = utc_now,
        stats: EngineStats | None = None,
        timeout_seconds: float = 30.0,
        service: SchedulerService | None = None,
    ) -> None:
        """
        Initialize the reset scheduler.

        Args:
            store: Quota system of record
            cache: Distributed cache holding snapshots
            policy: Reset hour, offset and sweep interval
            cache_key_prefix: Prefix of snapshot keys
            clock: Source of the current time
            stats: Engine counters to update
            timeout_seconds: Bound on the bulk reset
            service: APScheduler wrapper used by ``start``
        """
        self.store = store
        self.cache = cache
        self.policy = policy or ResetPolicy()
        self.cache_key_prefix = cache_key_prefix
        self.clock = clock
        self.stats = stats or EngineStats()
        self.timeout_seconds = timeout_seconds
        self.service = service or SchedulerService()
        self._listeners: list[ResetListener] = []

    def compute_next_reset(self, reference: datetime | None = None) -> datetime:
        return compute_next_reset(
            reference or self.clock(),
            self.policy.reset_hour,
            self.policy.utc_offset_minutes,
        )

    def needs_reset(self, reset_at: datetime, now: datetime | None = None) -> bool:
        return needs_reset(reset_at, now or self.clock())

    def add_reset_listener(self, listener: ResetListener) -> None:
        """Call ``listener(subject_id)`` for every subject a sweep resets."""
        self._listeners.append(listener)

    async def sweep_all(self, now: datetime | None = None) -> SweepResult:
        """
        Reset every due record.

        Args:
            now: Sweep time (defaults to the clock)

        Returns:
            How many records this call reset

        Raises:
            StoreUnavailable: If the quota store failed or timed out
        """
        now = ensure_utc(now or self.clock())
        next_reset_at = self.compute_next_reset(now)

        try:
            subject_ids = await asyncio.wait_for(
                self.store.bulk_reset_due(now, next_reset_at),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise StoreUnavailable("quota store", "bulk_reset_due", e) from e

        for subject_id in subject_ids:
            await self.cache.delete(f"{self.cache_key_prefix}{subject_id}")
            for listener in self._listeners:
                listener(subject_id)

        self.stats.increment("sweep_runs")
        self.stats.increment("quota_swept", len(subject_ids))
        if subject_ids:
            logger.info(
                f"Reset quotas for {len(subject_ids)} subjects, "
                f"next reset at {next_reset_at.isoformat()}"
            )
        else:
            logger.debug("Reset sweep found no due records")

        return SweepResult(
            reset_count=len(subject_ids),
            next_reset_at=next_reset_at,
            subject_ids=subject_ids,
        )

    async def _scheduled_sweep(self) -> None:
        try:
            await self.sweep_all()
        except QuotaEngineError as e:
            self.stats.increment("sweep_failures")
            logger.error(f"Scheduled quota reset sweep failed: {e}")
        except Exception:
            self.stats.increment("sweep_failures")
            logger.exception("Unexpected error in scheduled quota reset sweep")

    def start(self) -> None:
        """Run the sweep every ``sweep_interval_seconds`` on the running loop."""
        self.service.add_job(
            SWEEP_JOB_ID,
            self._scheduled_sweep,
            interval_seconds=self.policy.sweep_interval_seconds,
            run_immediately=True,
        )
        self.service.start()
        logger.info(
            f"Quota reset sweep scheduled every {self.policy.sweep_interval_seconds}s "
            f"(daily reset at {self.policy.reset_hour:02d}:00, "
            f"UTC offset {self.policy.utc_offset_minutes:+d} min)"
        )

    def stop(self) -> None:
        self.service.remove_job(SWEEP_JOB_ID)
        self.service.shutdown()

    @property
    def is_running(self) -> bool:
        return self.service.is_running
