"""SQLAlchemy declarative base."""

from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_naive_now() -> datetime:
    """Current UTC time without tzinfo, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models: integer primary key plus audit timestamps."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_naive_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_naive_now, onupdate=utc_naive_now, nullable=False
    )
