"""
Tiered daily quotas: data model and stores.

``QuotaManager`` lives in ``quota_engine.quota.manager``; it depends on the
policy module, which itself imports the models here.
"""

from quota_engine.quota.models import ConsumeResult, FeatureUsage, QuotaRecord, QuotaStatus, Tier
from quota_engine.quota.store import InMemoryQuotaStore, QuotaStore

__all__ = [
    "ConsumeResult",
    "FeatureUsage",
    "InMemoryQuotaStore",
    "QuotaRecord",
    "QuotaStatus",
    "QuotaStore",
    "Tier",
]
