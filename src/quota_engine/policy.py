"""
Enforcement policy: the versioned, immutable configuration value.

Holds the tier -> feature -> limit table, the named rate limiters, the daily
reset time and the cache TTLs. Loaded once at process start; any problem is
reported as ``InvalidConfiguration``.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from quota_engine.errors import InvalidConfiguration, UnknownFeature
from quota_engine.quota.models import Tier

logger = logging.getLogger(__name__)


class KeyStrategy(str, Enum):
    """How a limiter buckets requests."""

    ADDRESS = "address"  # network address from the identity supplier
    SUBJECT = "subject"  # authenticated subject id


class LimiterPolicy(BaseModel):
    """Fixed-window limit for one class of operations."""

    model_config = ConfigDict(frozen=True)

    window_seconds: int = Field(gt=0)
    max: int = Field(ge=0)
    key_strategy: KeyStrategy = KeyStrategy.ADDRESS
    skip_failed_requests: bool = False
    message: str = "Too many requests, please try again later"
    exempt_paths: tuple[str, ...] = ()


class ResetPolicy(BaseModel):
    """Wall-clock time of the daily quota reset."""

    model_config = ConfigDict(frozen=True)

    reset_hour: int = Field(default=4, ge=0, le=23)
    utc_offset_minutes: int = Field(default=330, ge=-720, le=840)
    sweep_interval_seconds: int = Field(default=60, gt=0)


class CachePolicy(BaseModel):
    """TTLs for the process-local and distributed cache layers."""

    model_config = ConfigDict(frozen=True)

    local_ttl_seconds: int = Field(default=60, gt=0)
    local_max_entries: int = Field(default=10_000, gt=0)
    distributed_ttl_seconds: int = Field(default=3600, gt=0)
    distributed_key_prefix: str = "limits:"


DEFAULT_FEATURES = ("questions", "chapter_tests", "mock_tests", "tickets")

DEFAULT_TIERS: dict[Tier, dict[str, int]] = {
    Tier.FREE: {"questions": 50, "chapter_tests": 0, "mock_tests": 0, "tickets": 0},
    Tier.SILVER: {"questions": 200, "chapter_tests": 10, "mock_tests": 0, "tickets": 1},
    Tier.GOLD: {"questions": 5000, "chapter_tests": 50, "mock_tests": 8, "tickets": 1},
}

DEFAULT_LIMITERS: dict[str, LimiterPolicy] = {
    "api": LimiterPolicy(
        window_seconds=15 * 60,
        max=100,
        skip_failed_requests=True,
        message="Too many requests from this IP, please try again later",
        exempt_paths=("/health",),
    ),
    "auth": LimiterPolicy(
        window_seconds=15 * 60,
        max=10,
        skip_failed_requests=True,
        message="Too many login attempts, please try again after 15 minutes",
    ),
    "otp": LimiterPolicy(
        window_seconds=10 * 60,
        max=3,
        message="Too many OTP requests. Please try again after 10 minutes",
    ),
    "payment": LimiterPolicy(
        window_seconds=60 * 60,
        max=5,
        skip_failed_requests=True,
        message="Too many payment requests. Please try again later",
    ),
    "question": LimiterPolicy(
        window_seconds=60,
        max=30,
        key_strategy=KeyStrategy.SUBJECT,
        skip_failed_requests=True,
        message="You are accessing questions too quickly. Please slow down",
    ),
}


class EnforcementPolicy(BaseModel):
    """Complete engine configuration. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    version: str = "1"
    features: tuple[str, ...] = DEFAULT_FEATURES
    tiers: dict[Tier, dict[str, int]] = Field(default_factory=lambda: dict(DEFAULT_TIERS))
    limiters: dict[str, LimiterPolicy] = Field(default_factory=lambda: dict(DEFAULT_LIMITERS))
    reset: ResetPolicy = Field(default_factory=ResetPolicy)
    cache: CachePolicy = Field(default_factory=CachePolicy)

    @model_validator(mode="after")
    def _check_tier_table(self) -> EnforcementPolicy:
        if not self.features:
            raise ValueError("at least one metered feature must be configured")
        if len(set(self.features)) != len(self.features):
            raise ValueError("feature names must be unique")

        missing_tiers = [tier.value for tier in Tier if tier not in self.tiers]
        if missing_tiers:
            raise ValueError(f"tier table is missing tiers: {', '.join(missing_tiers)}")

        known = set(self.features)
        for tier, limits in self.tiers.items():
            unknown = sorted(set(limits) - known)
            if unknown:
                raise ValueError(f"tier '{tier.value}' sets unknown features: {', '.join(unknown)}")
            missing = [f for f in self.features if f not in limits]
            if missing:
                raise ValueError(f"tier '{tier.value}' has no limit for: {', '.join(missing)}")
            negative = [f for f, limit in limits.items() if limit < 0]
            if negative:
                raise ValueError(f"tier '{tier.value}' has negative limits for: {', '.join(negative)}")
        return self

    def limits_for(self, tier: Tier) -> dict[str, int]:
        """Per-feature limits of a tier."""
        return dict(self.tiers[tier])

    def limit(self, tier: Tier, feature: str) -> int:
        self.require_feature(feature)
        return self.tiers[tier][feature]

    def require_feature(self, feature: str) -> None:
        if feature not in self.features:
            raise UnknownFeature(feature, list(self.features))

    def limiter(self, name: str) -> LimiterPolicy:
        try:
            return self.limiters[name]
        except KeyError:
            raise InvalidConfiguration(f"Unknown rate limiter '{name}'") from None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EnforcementPolicy:
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidConfiguration(f"Invalid enforcement policy: {e}") from e


def load_policy(path: str | Path | None = None) -> EnforcementPolicy:
    """
    Load the enforcement policy.

    Args:
        path: JSON policy file. Built-in defaults are used when None.

    Returns:
        Validated, frozen EnforcementPolicy

    Raises:
        InvalidConfiguration: If the file is missing, unreadable or invalid
    """
    if path is None:
        logger.info("No policy file configured, using built-in enforcement policy")
        return EnforcementPolicy()

    policy_path = Path(path)
    try:
        with open(policy_path) as f:
            data = json.load(f)
    except FileNotFoundError:
        raise InvalidConfiguration(f"Policy file not found: {policy_path}") from None
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidConfiguration(f"Cannot read policy file {policy_path}: {e}") from e

    if not isinstance(data, dict):
        raise InvalidConfiguration(f"Policy file {policy_path} must contain a JSON object")

    policy = EnforcementPolicy.from_dict(data)
    logger.info(
        f"Loaded enforcement policy v{policy.version} from {policy_path}: "
        f"{len(policy.features)} features, {len(policy.limiters)} limiters"
    )
    return policy
