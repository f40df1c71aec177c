"""Quota store contract and the in-memory implementation."""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime

from quota_engine.errors import StoreUnavailable
from quota_engine.quota.models import QuotaRecord, Tier

logger = logging.getLogger(__name__)


def missing_record(subject_id: str, operation: str) -> StoreUnavailable:
    """Error for a write that expected the subject's record to exist."""
    return StoreUnavailable(
        "quota store", operation, LookupError(f"no quota record for subject {subject_id}")
    )


class QuotaStore(ABC):
    """
    Durable system of record for ``QuotaRecord``s.

    Every mutation that races with the reset sweep is conditional, so running
    the sweep on several instances at once is harmless. Implementations raise
    ``StoreUnavailable`` for any backend fault.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    def supports_conditional_increment(self) -> bool:
        """True when ``increment_if_below`` is atomic in this store."""
        return False

    @abstractmethod
    async def find(self, subject_id: str) -> QuotaRecord | None:
        ...

    @abstractmethod
    async def upsert(self, record: QuotaRecord) -> None:
        """Write a record as-is, creating it if needed."""
        ...

    @abstractmethod
    async def insert_if_absent(self, record: QuotaRecord) -> QuotaRecord:
        """
        Create a record unless one exists for the subject.

        Returns:
            The stored record: either ``record`` or the one that already existed
        """
        ...

    @abstractmethod
    async def reset_if_due(
        self,
        subject_id: str,
        now: datetime,
        next_reset_at: datetime,
    ) -> QuotaRecord | None:
        """
        Zero a subject's counters if ``reset_at <= now`` at write time.

        Returns:
            The reset record, or None if it was not due (or does not exist)
        """
        ...

    @abstractmethod
    async def bulk_reset_due(self, now: datetime, next_reset_at: datetime) -> list[str]:
        """
        Reset every record with ``reset_at <= now``.

        Returns:
            Subject ids that were reset by this call
        """
        ...

    @abstractmethod
    async def set_tier(
        self,
        subject_id: str,
        tier: Tier,
        now: datetime,
        next_reset_at: datetime | None = None,
    ) -> QuotaRecord:
        """
        Change a subject's tier in place.

        Counters are left exactly as they are at write time unless
        ``next_reset_at`` is given, in which case they are zeroed and a new
        window starts, in the same atomic step.

        Returns:
            The record after the change

        Raises:
            StoreUnavailable: If the subject has no record
        """
        ...

    @abstractmethod
    async def increment(self, subject_id: str, feature: str, now: datetime) -> int:
        """
        Unconditionally add one to a feature's counter.

        Returns:
            The new used count
        """
        ...

    async def increment_if_below(
        self,
        subject_id: str,
        feature: str,
        limit: int,
        now: datetime,
    ) -> int | None:
        """
        Add one to a feature's counter only while it is below ``limit``.

        Returns:
            The new used count, or None if the counter had already reached ``limit``
        """
        raise NotImplementedError(f"{self.name} store has no conditional increment")

    async def initialize(self) -> None:
        """Prepare the backing storage (create tables, open pools)."""

    async def close(self) -> None:
        """Release backing resources."""


class InMemoryQuotaStore(QuotaStore):
    """
    Quota store kept in a dictionary, for single instances and tests.

    Records are copied on the way in and out so callers never share state with
    the store. Every operation yields to the event loop once, the way a round
    trip to a real store would, so interleavings between concurrent callers
    look like production ones.

    Args:
        conditional_increment: Offer atomic ``increment_if_below``. When False
            the manager falls back to check-then-increment.
    """

    def __init__(self, conditional_increment: bool = True) -> None:
        self._records: dict[str, QuotaRecord] = {}
        self._conditional = conditional_increment
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "memory"

    @property
    def supports_conditional_increment(self) -> bool:
        return self._conditional

    async def find(self, subject_id: str) -> QuotaRecord | None:
        await asyncio.sleep(0)
        record = self._records.get(subject_id)
        return record.copy() if record else None

    async def upsert(self, record: QuotaRecord) -> None:
        await asyncio.sleep(0)
        async with self._lock:
            self._records[record.subject_id] = record.copy()

    async def insert_if_absent(self, record: QuotaRecord) -> QuotaRecord:
        await asyncio.sleep(0)
        async with self._lock:
            existing = self._records.get(record.subject_id)
            if existing is not None:
                return existing.copy()
            self._records[record.subject_id] = record.copy()
            return record.copy()

    async def reset_if_due(
        self,
        subject_id: str,
        now: datetime,
        next_reset_at: datetime,
    ) -> QuotaRecord | None:
        await asyncio.sleep(0)
        async with self._lock:
            record = self._records.get(subject_id)
            if record is None or not record.needs_reset(now):
                return None
            record.reset(next_reset_at, now)
            return record.copy()

    async def bulk_reset_due(self, now: datetime, next_reset_at: datetime) -> list[str]:
        await asyncio.sleep(0)
        async with self._lock:
            reset_ids = []
            for subject_id, record in self._records.items():
                if record.needs_reset(now):
                    record.reset(next_reset_at, now)
                    reset_ids.append(subject_id)
            return reset_ids

    async def set_tier(
        self,
        subject_id: str,
        tier: Tier,
        now: datetime,
        next_reset_at: datetime | None = None,
    ) -> QuotaRecord:
        await asyncio.sleep(0)
        async with self._lock:
            record = self._require(subject_id, "set_tier")
            record.tier = tier
            if next_reset_at is not None:
                record.reset(next_reset_at, now)
            else:
                record.last_updated = now
            return record.copy()

    async def increment(self, subject_id: str, feature: str, now: datetime) -> int:
        await asyncio.sleep(0)
        async with self._lock:
            record = self._require(subject_id, "increment")
            record.used[feature] = record.used_for(feature) + 1
            record.last_updated = now
            return record.used[feature]

    async def increment_if_below(
        self,
        subject_id: str,
        feature: str,
        limit: int,
        now: datetime,
    ) -> int | None:
        if not self._conditional:
            return await super().increment_if_below(subject_id, feature, limit, now)

        await asyncio.sleep(0)
        async with self._lock:
            record = self._require(subject_id, "increment_if_below")
            used = record.used_for(feature)
            if used >= limit:
                return None
            record.used[feature] = used + 1
            record.last_updated = now
            return used + 1

    def _require(self, subject_id: str, operation: str) -> QuotaRecord:
        record = self._records.get(subject_id)
        if record is None:
            raise missing_record(subject_id, operation)
        return record

    def __len__(self) -> int:
        return len(self._records)
