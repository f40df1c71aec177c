"""Quota data model: tiers, per-feature usage and the per-subject record."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from quota_engine.clock import ensure_utc


class Tier(str, Enum):
    """Entitlement level, ordered free < silver < gold."""

    FREE = "free"
    SILVER = "silver"
    GOLD = "gold"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def lowest(cls) -> Tier:
        return _TIER_ORDER[0]


_TIER_ORDER = [Tier.FREE, Tier.SILVER, Tier.GOLD]


@dataclass(frozen=True)
class FeatureUsage:
    """Usage of one feature against its tier limit."""

    used: int
    limit: int

    @property
    def reached(self) -> bool:
        return self.used >= self.limit

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def to_dict(self) -> dict[str, Any]:
        return {
            "used": self.used,
            "limit": self.limit,
            "reached": self.reached,
        }


@dataclass
class QuotaRecord:
    """
    Daily usage of one subject.

    Only ``used`` counters are stored. Limits and ``reached`` flags are derived
    from the tier table each time a status is built, so they cannot drift.
    """

    subject_id: str
    tier: Tier
    reset_at: datetime
    last_updated: datetime
    used: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.reset_at = ensure_utc(self.reset_at)
        self.last_updated = ensure_utc(self.last_updated)

    @classmethod
    def new(
        cls,
        subject_id: str,
        tier: Tier,
        features: list[str],
        reset_at: datetime,
        now: datetime,
    ) -> QuotaRecord:
        return cls(
            subject_id=subject_id,
            tier=tier,
            reset_at=reset_at,
            last_updated=now,
            used={feature: 0 for feature in features},
        )

    def used_for(self, feature: str) -> int:
        return self.used.get(feature, 0)

    def needs_reset(self, now: datetime) -> bool:
        return now >= self.reset_at

    def reset(self, next_reset_at: datetime, now: datetime) -> None:
        """Zero every counter and move the reset time forward."""
        self.used = {feature: 0 for feature in self.used}
        self.reset_at = ensure_utc(next_reset_at)
        self.last_updated = now

    def copy(self) -> QuotaRecord:
        return QuotaRecord(
            subject_id=self.subject_id,
            tier=self.tier,
            reset_at=self.reset_at,
            last_updated=self.last_updated,
            used=dict(self.used),
        )

    def to_snapshot(self, cached_at: datetime) -> dict[str, Any]:
        """JSON-serializable form kept in the distributed cache."""
        return {
            "subject_id": self.subject_id,
            "tier": self.tier.value,
            "used": dict(self.used),
            "reset_at": self.reset_at.isoformat(),
            "last_updated": self.last_updated.isoformat(),
            "cached_at": cached_at.isoformat(),
        }

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> QuotaRecord:
        return cls(
            subject_id=data["subject_id"],
            tier=Tier(data["tier"]),
            reset_at=datetime.fromisoformat(data["reset_at"]),
            last_updated=datetime.fromisoformat(data["last_updated"]),
            used={k: int(v) for k, v in data.get("used", {}).items()},
        )


@dataclass
class QuotaStatus:
    """Per-feature usage for a subject, as reported to callers."""

    subject_id: str
    tier: Tier
    features: dict[str, FeatureUsage]
    reset_at: datetime
    stale: bool = False
    """True when served from a cached snapshot because the store was unreachable."""

    source: str = "store"
    """Where the counters came from: 'store' or 'cache'."""

    def __getitem__(self, feature: str) -> FeatureUsage:
        return self.features[feature]

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "tier": self.tier.value,
            "limits": {name: usage.to_dict() for name, usage in self.features.items()},
            "reset_at": self.reset_at.isoformat(),
            "stale": self.stale,
            "source": self.source,
        }


@dataclass
class ConsumeResult:
    """Result of a successful ``QuotaManager.consume``."""

    ok: bool
    feature: str
    status: QuotaStatus

    @property
    def usage(self) -> FeatureUsage:
        return self.status[self.feature]

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "feature": self.feature,
            "status": self.status.to_dict(),
        }
