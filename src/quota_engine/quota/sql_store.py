"""SQLAlchemy-backed quota store."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from quota_engine.clock import ensure_utc
from quota_engine.db.manager import DatabaseManager
from quota_engine.db.models import QuotaRecordRow, QuotaUsageRow
from quota_engine.errors import StoreUnavailable
from quota_engine.quota.models import QuotaRecord, Tier
from quota_engine.quota.store import QuotaStore, missing_record

logger = logging.getLogger(__name__)

T = TypeVar("T")

_NO_SYNC = {"synchronize_session": False}


def _to_db(value: datetime) -> datetime:
    """Columns hold naive UTC."""
    return ensure_utc(value).replace(tzinfo=None)


def _to_record(row: QuotaRecordRow) -> QuotaRecord:
    return QuotaRecord(
        subject_id=row.subject_id,
        tier=Tier(row.tier),
        reset_at=row.reset_at,
        last_updated=row.last_updated,
        used={usage.feature: usage.used for usage in row.usage},
    )


class SqlQuotaStore(QuotaStore):
    """
    Quota records in two tables: ``quota_records`` and ``quota_usage``.

    Counters are changed with single conditional UPDATE statements, so
    ``increment_if_below`` never lets ``used`` pass the limit and a reset only
    applies while the record is still due. Blocking database work runs in a
    worker thread.
    """

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    @property
    def name(self) -> str:
        return "sql"

    @property
    def supports_conditional_increment(self) -> bool:
        return True

    async def _run(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except SQLAlchemyError as e:
            logger.error(f"Quota store {operation} failed: {e}")
            raise StoreUnavailable("quota store", operation, e) from e
        except OSError as e:
            raise StoreUnavailable("quota store", operation, e) from e

    async def initialize(self) -> None:
        await self._run("initialize", self.db.init_db)

    async def close(self) -> None:
        self.db.close()

    # Reads

    @staticmethod
    def _load(session: Session, subject_id: str) -> QuotaRecordRow | None:
        return session.execute(
            select(QuotaRecordRow).where(QuotaRecordRow.subject_id == subject_id)
        ).scalar_one_or_none()

    def _find_sync(self, subject_id: str) -> QuotaRecord | None:
        with self.db.get_session() as session:
            row = self._load(session, subject_id)
            return _to_record(row) if row else None

    async def find(self, subject_id: str) -> QuotaRecord | None:
        return await self._run("find", self._find_sync, subject_id)

    # Writes

    def _upsert_sync(self, record: QuotaRecord) -> None:
        with self.db.get_session() as session:
            row = self._load(session, record.subject_id)
            if row is None:
                session.add(self._new_row(record))
                return

            row.tier = record.tier.value
            row.reset_at = _to_db(record.reset_at)
            row.last_updated = _to_db(record.last_updated)
            existing = {usage.feature: usage for usage in row.usage}
            for feature, used in record.used.items():
                if feature in existing:
                    existing[feature].used = used
                else:
                    row.usage.append(QuotaUsageRow(feature=feature, used=used))

    async def upsert(self, record: QuotaRecord) -> None:
        await self._run("upsert", self._upsert_sync, record)

    @staticmethod
    def _new_row(record: QuotaRecord) -> QuotaRecordRow:
        return QuotaRecordRow(
            subject_id=record.subject_id,
            tier=record.tier.value,
            reset_at=_to_db(record.reset_at),
            last_updated=_to_db(record.last_updated),
            usage=[QuotaUsageRow(feature=f, used=used) for f, used in record.used.items()],
        )

    def _insert_if_absent_sync(self, record: QuotaRecord) -> QuotaRecord:
        try:
            with self.db.get_session() as session:
                row = self._load(session, record.subject_id)
                if row is not None:
                    return _to_record(row)
                session.add(self._new_row(record))
        except IntegrityError:
            # Another instance created it between our SELECT and INSERT
            existing = self._find_sync(record.subject_id)
            if existing is None:
                raise
            return existing
        return record.copy()

    async def insert_if_absent(self, record: QuotaRecord) -> QuotaRecord:
        return await self._run("insert_if_absent", self._insert_if_absent_sync, record)

    @staticmethod
    def _reset_in_session(
        session: Session,
        subject_id: str,
        now: datetime,
        next_reset_at: datetime,
    ) -> bool:
        result = session.execute(
            update(QuotaRecordRow)
            .where(QuotaRecordRow.subject_id == subject_id)
            .where(QuotaRecordRow.reset_at <= _to_db(now))
            .values(reset_at=_to_db(next_reset_at), last_updated=_to_db(now))
            .execution_options(**_NO_SYNC)
        )
        if result.rowcount == 0:
            return False
        session.execute(
            update(QuotaUsageRow)
            .where(QuotaUsageRow.subject_id == subject_id)
            .values(used=0)
            .execution_options(**_NO_SYNC)
        )
        return True

    def _reset_if_due_sync(
        self,
        subject_id: str,
        now: datetime,
        next_reset_at: datetime,
    ) -> QuotaRecord | None:
        with self.db.get_session() as session:
            if not self._reset_in_session(session, subject_id, now, next_reset_at):
                return None
            row = self._load(session, subject_id)
            return _to_record(row) if row else None

    async def reset_if_due(
        self,
        subject_id: str,
        now: datetime,
        next_reset_at: datetime,
    ) -> QuotaRecord | None:
        return await self._run(
            "reset_if_due", self._reset_if_due_sync, subject_id, now, next_reset_at
        )

    def _bulk_reset_due_sync(self, now: datetime, next_reset_at: datetime) -> list[str]:
        with self.db.get_session() as session:
            due = session.execute(
                select(QuotaRecordRow.subject_id).where(QuotaRecordRow.reset_at <= _to_db(now))
            ).scalars().all()
            return [
                subject_id
                for subject_id in due
                if self._reset_in_session(session, subject_id, now, next_reset_at)
            ]

    async def bulk_reset_due(self, now: datetime, next_reset_at: datetime) -> list[str]:
        return await self._run("bulk_reset_due", self._bulk_reset_due_sync, now, next_reset_at)

    def _set_tier_sync(
        self,
        subject_id: str,
        tier: Tier,
        now: datetime,
        next_reset_at: datetime | None,
    ) -> QuotaRecord:
        with self.db.get_session() as session:
            values: dict[str, Any] = {"tier": tier.value, "last_updated": _to_db(now)}
            if next_reset_at is not None:
                values["reset_at"] = _to_db(next_reset_at)
            result = session.execute(
                update(QuotaRecordRow)
                .where(QuotaRecordRow.subject_id == subject_id)
                .values(**values)
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount == 0:
                raise missing_record(subject_id, "set_tier")
            if next_reset_at is not None:
                session.execute(
                    update(QuotaUsageRow)
                    .where(QuotaUsageRow.subject_id == subject_id)
                    .values(used=0)
                    .execution_options(**_NO_SYNC)
                )
            return _to_record(self._load(session, subject_id))

    async def set_tier(
        self,
        subject_id: str,
        tier: Tier,
        now: datetime,
        next_reset_at: datetime | None = None,
    ) -> QuotaRecord:
        return await self._run(
            "set_tier", self._set_tier_sync, subject_id, tier, now, next_reset_at
        )

    def _increment_sync(
        self,
        subject_id: str,
        feature: str,
        limit: int | None,
        now: datetime,
    ) -> int | None:
        with self.db.get_session() as session:
            stmt = (
                update(QuotaUsageRow)
                .where(QuotaUsageRow.subject_id == subject_id)
                .where(QuotaUsageRow.feature == feature)
                .values(used=QuotaUsageRow.used + 1)
                .execution_options(**_NO_SYNC)
            )
            if limit is not None:
                stmt = stmt.where(QuotaUsageRow.used < limit)

            if session.execute(stmt).rowcount == 0:
                usage_exists = session.execute(
                    select(QuotaUsageRow.id)
                    .where(QuotaUsageRow.subject_id == subject_id)
                    .where(QuotaUsageRow.feature == feature)
                ).first()
                if usage_exists:
                    return None
                if self._load(session, subject_id) is None:
                    raise missing_record(subject_id, "increment")
                if limit is not None and limit <= 0:
                    return None
                # Feature added to the policy after this record was created
                session.add(QuotaUsageRow(subject_id=subject_id, feature=feature, used=1))

            session.execute(
                update(QuotaRecordRow)
                .where(QuotaRecordRow.subject_id == subject_id)
                .values(last_updated=_to_db(now))
                .execution_options(**_NO_SYNC)
            )
            session.flush()
            return session.execute(
                select(QuotaUsageRow.used)
                .where(QuotaUsageRow.subject_id == subject_id)
                .where(QuotaUsageRow.feature == feature)
            ).scalar_one()

    async def increment(self, subject_id: str, feature: str, now: datetime) -> int:
        used = await self._run("increment", self._increment_sync, subject_id, feature, None, now)
        if used is None:
            raise StoreUnavailable(
                "quota store", "increment", RuntimeError(f"no counter updated for {subject_id} {feature}")
            )
        return used

    async def increment_if_below(
        self,
        subject_id: str,
        feature: str,
        limit: int,
        now: datetime,
    ) -> int | None:
        return await self._run(
            "increment_if_below", self._increment_sync, subject_id, feature, limit, now
        )
