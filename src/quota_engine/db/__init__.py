"""Relational persistence for quota records."""

from quota_engine.db.base import Base
from quota_engine.db.manager import DatabaseManager
from quota_engine.db.models import QuotaRecordRow, QuotaUsageRow

__all__ = ["Base", "DatabaseManager", "QuotaRecordRow", "QuotaUsageRow"]
