"""Tests for process settings and the enforcement policy."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from quota_engine.config import Settings, get_settings
from quota_engine.errors import InvalidConfiguration, UnknownFeature
from quota_engine.policy import (
    DEFAULT_FEATURES,
    EnforcementPolicy,
    KeyStrategy,
    LimiterPolicy,
    load_policy,
)
from quota_engine.quota.models import Tier


def three_tier_table(free: int, silver: int, gold: int) -> dict:
    return {
        "free": {"questions": free},
        "silver": {"questions": silver},
        "gold": {"questions": gold},
    }


class TestSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self) -> None:
        """Test default backends and timeout."""
        settings = Settings()
        assert settings.counter_backend == "memory"
        assert settings.cache_backend == "memory"
        assert settings.quota_store_backend == "sql"
        assert settings.store_timeout_seconds == 2.0
        assert settings.http_limiter == "api"

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test settings are read from QUOTA_ENGINE_* variables."""
        monkeypatch.setenv("QUOTA_ENGINE_COUNTER_BACKEND", "redis")
        monkeypatch.setenv("quota_engine_store_timeout_seconds", "0.5")

        settings = Settings()

        assert settings.counter_backend == "redis"
        assert settings.store_timeout_seconds == 0.5

    def test_get_settings_is_cached(self) -> None:
        """Test get_settings returns the same instance."""
        assert get_settings() is get_settings()


class TestTier:
    """Tests for tier ordering."""

    def test_ordering(self) -> None:
        """Test free < silver < gold."""
        assert Tier.FREE < Tier.SILVER < Tier.GOLD
        assert Tier.GOLD >= Tier.SILVER
        assert sorted([Tier.GOLD, Tier.FREE, Tier.SILVER]) == [Tier.FREE, Tier.SILVER, Tier.GOLD]

    def test_lowest(self) -> None:
        """Test the lowest tier is free."""
        assert Tier.lowest() is Tier.FREE


class TestEnforcementPolicy:
    """Tests for the built-in policy and its validation."""

    def test_default_tier_table(self, policy: EnforcementPolicy) -> None:
        """Test the default limits per tier."""
        assert policy.features == DEFAULT_FEATURES
        assert policy.limits_for(Tier.FREE) == {
            "questions": 50,
            "chapter_tests": 0,
            "mock_tests": 0,
            "tickets": 0,
        }
        assert policy.limit(Tier.SILVER, "chapter_tests") == 10
        assert policy.limit(Tier.GOLD, "mock_tests") == 8

    def test_default_limiters(self, policy: EnforcementPolicy) -> None:
        """Test the default limiter table."""
        api = policy.limiter("api")
        assert (api.window_seconds, api.max) == (900, 100)
        assert "/health" in api.exempt_paths

        otp = policy.limiter("otp")
        assert (otp.window_seconds, otp.max) == (600, 3)
        assert otp.skip_failed_requests is False

        question = policy.limiter("question")
        assert question.key_strategy is KeyStrategy.SUBJECT

    def test_default_reset_time(self, policy: EnforcementPolicy) -> None:
        """Test the reset fires at 04:00 in +05:30."""
        assert policy.reset.reset_hour == 4
        assert policy.reset.utc_offset_minutes == 330

    def test_limits_for_returns_copy(self, policy: EnforcementPolicy) -> None:
        """Test callers cannot mutate the tier table."""
        limits = policy.limits_for(Tier.FREE)
        limits["questions"] = 9999
        assert policy.limit(Tier.FREE, "questions") == 50

    def test_frozen(self, policy: EnforcementPolicy) -> None:
        """Test the policy cannot be reassigned."""
        with pytest.raises(ValidationError):
            policy.version = "2"  # type: ignore[misc]

    def test_unknown_feature(self, policy: EnforcementPolicy) -> None:
        """Test an unconfigured feature name is rejected."""
        with pytest.raises(UnknownFeature) as exc_info:
            policy.require_feature("essays")

        assert exc_info.value.feature == "essays"
        assert "questions" in exc_info.value.known
        assert isinstance(exc_info.value, InvalidConfiguration)

    def test_unknown_limiter(self, policy: EnforcementPolicy) -> None:
        """Test an unconfigured limiter name is rejected."""
        with pytest.raises(InvalidConfiguration):
            policy.limiter("downloads")

    def test_custom_policy(self) -> None:
        """Test a custom feature set and limiter."""
        policy = EnforcementPolicy.from_dict(
            {
                "version": "7",
                "features": ["questions"],
                "tiers": three_tier_table(5, 10, 20),
                "limiters": {"search": {"window_seconds": 30, "max": 2, "key_strategy": "subject"}},
            }
        )

        assert policy.version == "7"
        assert policy.limit(Tier.GOLD, "questions") == 20
        assert policy.limiter("search") == LimiterPolicy(
            window_seconds=30, max=2, key_strategy=KeyStrategy.SUBJECT
        )

    @pytest.mark.parametrize(
        "data",
        [
            {"features": ["questions"], "tiers": {"free": {"questions": 1}, "silver": {"questions": 1}}},
            {"features": ["questions"], "tiers": {**three_tier_table(1, 2, 3), "gold": {"questions": 3, "essays": 1}}},
            {"features": ["questions", "essays"], "tiers": three_tier_table(1, 2, 3)},
            {"features": ["questions"], "tiers": three_tier_table(-1, 2, 3)},
            {"features": ["questions", "questions"], "tiers": three_tier_table(1, 2, 3)},
            {"features": [], "tiers": {"free": {}, "silver": {}, "gold": {}}},
            {"reset": {"reset_hour": 24}},
            {"reset": {"utc_offset_minutes": 900}},
            {"limiters": {"api": {"window_seconds": 0, "max": 10}}},
            {"tiers": {"platinum": {}}},
        ],
        ids=[
            "missing-tier",
            "unknown-feature-in-tier",
            "missing-feature-in-tier",
            "negative-limit",
            "duplicate-feature",
            "no-features",
            "bad-reset-hour",
            "bad-offset",
            "zero-window",
            "unknown-tier",
        ],
    )
    def test_invalid_policy(self, data: dict) -> None:
        """Test every validation failure surfaces as InvalidConfiguration."""
        with pytest.raises(InvalidConfiguration):
            EnforcementPolicy.from_dict(data)


class TestLoadPolicy:
    """Tests for loading the policy file."""

    def test_defaults_without_path(self) -> None:
        """Test the built-in policy is used when no file is configured."""
        assert load_policy(None) == EnforcementPolicy()

    def test_load_from_file(self, tmp_path: Path) -> None:
        """Test a JSON policy file is loaded."""
        path = tmp_path / "policy.json"
        path.write_text(json.dumps({
            "version": "3",
            "features": ["questions"],
            "tiers": three_tier_table(1, 2, 3),
            "reset": {"reset_hour": 0, "utc_offset_minutes": 0},
        }))

        policy = load_policy(path)

        assert policy.version == "3"
        assert policy.reset.reset_hour == 0
        assert policy.limit(Tier.SILVER, "questions") == 2

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test a missing file is a configuration error."""
        with pytest.raises(InvalidConfiguration, match="not found"):
            load_policy(tmp_path / "absent.json")

    def test_malformed_json(self, tmp_path: Path) -> None:
        """Test unparsable JSON is a configuration error."""
        path = tmp_path / "policy.json"
        path.write_text("{not json")

        with pytest.raises(InvalidConfiguration):
            load_policy(path)

    def test_not_an_object(self, tmp_path: Path) -> None:
        """Test a JSON array is rejected."""
        path = tmp_path / "policy.json"
        path.write_text("[]")

        with pytest.raises(InvalidConfiguration, match="JSON object"):
            load_policy(path)
