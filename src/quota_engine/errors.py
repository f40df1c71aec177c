"""Exception hierarchy for the enforcement engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from quota_engine.quota.models import FeatureUsage
    from quota_engine.ratelimit.limiter import Decision


class QuotaEngineError(Exception):
    """Base class for every error raised by the engine."""


class InvalidConfiguration(QuotaEngineError):
    """The enforcement policy is malformed. Fatal at process start."""


class UnknownFeature(InvalidConfiguration):
    """A metered feature name that is not part of the configured set."""

    def __init__(self, feature: str, known: list[str] | None = None) -> None:
        self.feature = feature
        self.known = known or []
        message = f"Unknown feature '{feature}'"
        if self.known:
            message += f" (configured: {', '.join(self.known)})"
        super().__init__(message)


class StoreUnavailable(QuotaEngineError):
    """A backing store timed out or failed."""

    def __init__(
        self,
        store: str,
        operation: str,
        cause: BaseException | None = None,
    ) -> None:
        self.store = store
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"{store} unavailable during {operation}{detail}")


class QuotaServiceUnavailable(QuotaEngineError):
    """Quota state could not be read or written. Retryable."""

    def __init__(self, subject_id: str, retry_after_seconds: int = 5) -> None:
        self.subject_id = subject_id
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Quota service unavailable for subject {subject_id}")


class QuotaExceeded(QuotaEngineError):
    """
    The subject has no allowance left for a feature.

    This is an expected outcome of ``QuotaManager.consume``, not a fault.
    """

    def __init__(self, subject_id: str, feature: str, usage: FeatureUsage) -> None:
        self.subject_id = subject_id
        self.feature = feature
        self.usage = usage
        super().__init__(
            f"Daily {feature} limit reached for {subject_id} "
            f"({usage.used}/{usage.limit})"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature": self.feature,
            "limit": self.usage.to_dict(),
        }


class RateLimited(QuotaEngineError):
    """A rate limiter denied the request."""

    def __init__(self, decision: Decision, message: str) -> None:
        self.decision = decision
        self.message = message
        super().__init__(message)


class SubjectRequired(QuotaEngineError):
    """A quota-metered operation was attempted without an authenticated subject."""

    def __init__(self, feature: str) -> None:
        self.feature = feature
        super().__init__(f"Authentication required to use {feature}")
