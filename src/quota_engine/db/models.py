"""SQLAlchemy models for the quota store."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from quota_engine.db.base import Base


class QuotaRecordRow(Base):
    """One subject's daily quota window. Limits are never stored."""

    __tablename__ = "quota_records"

    subject_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    tier: Mapped[str] = mapped_column(String(20), nullable=False)
    reset_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    last_updated: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    usage: Mapped[list["QuotaUsageRow"]] = relationship(
        "QuotaUsageRow",
        back_populates="record",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class QuotaUsageRow(Base):
    """Used count of one feature within a subject's current window."""

    __tablename__ = "quota_usage"

    subject_id: Mapped[str] = mapped_column(
        ForeignKey("quota_records.subject_id", ondelete="CASCADE"), nullable=False
    )
    feature: Mapped[str] = mapped_column(String(100), nullable=False)
    used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    record: Mapped["QuotaRecordRow"] = relationship("QuotaRecordRow", back_populates="usage")

    __table_args__ = (
        UniqueConstraint("subject_id", "feature", name="uq_quota_usage_subject_feature"),
        Index("ix_quota_usage_subject", "subject_id"),
    )
