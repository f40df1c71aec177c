"""
Fixed-window rate limiter.

Each call increments the counter for its key; the first increment of a window
sets the window's TTL. The limiter itself holds no state, so any number of
instances can share one counter store.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from typing import Any

from quota_engine.counters.base import AtomicCounterStore
from quota_engine.errors import StoreUnavailable
from quota_engine.policy import LimiterPolicy
from quota_engine.stats import EngineStats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    """
    Outcome of one rate-limit check.

    Attributes:
        allowed: Whether the request may proceed
        limit: Maximum requests in the window
        remaining: Requests left in the window (never negative)
        retry_after_seconds: Seconds until the window resets
        count: Counter value observed after the increment (None when failed open)
        key: Bucket key the decision was made on (without prefix)
        failed_open: True when the counter store was unreachable
        compensable: True when a failed downstream outcome should be refunded
    """

    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int
    count: int | None = None
    key: str | None = None
    failed_open: bool = False
    compensable: bool = False

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.retry_after_seconds),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "limit": self.limit,
            "remaining": self.remaining,
            "retry_after_seconds": self.retry_after_seconds,
        }


class RateLimiter:
    """
    Turns key + limit + window into an allow/deny ``Decision``.

    Denied requests still count against the window. Any counter store error or
    timeout fails open: the request is allowed and the fault is logged.
    """

    def __init__(
        self,
        store: AtomicCounterStore,
        key_prefix: str = "ratelimit:",
        release_prefix: str = "release:",
        timeout_seconds: float = 2.0,
        stats: EngineStats | None = None,
    ) -> None:
        """
        Initialize the rate limiter.

        Args:
            store: Counter store shared by all instances
            key_prefix: Namespace for every counter key
            release_prefix: Namespace, under key_prefix, for one-time refund tokens
            timeout_seconds: Bound on each store call
            stats: Engine counters to update
        """
        self.store = store
        self.key_prefix = key_prefix
        self.release_prefix = release_prefix
        self.timeout_seconds = timeout_seconds
        self.stats = stats or EngineStats()

    def _full_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _release_key(self, key: str, token: str) -> str:
        return self._full_key(f"{self.release_prefix}{key}:{token}")

    async def check(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        policy: LimiterPolicy | None = None,
    ) -> Decision:
        """
        Count one request against ``key``.

        Args:
            key: Bucket key (already derived by the caller)
            limit: Maximum requests per window
            window_seconds: Window length
            policy: Limiter policy; only ``skip_failed_requests`` is read

        Returns:
            Decision for this request
        """
        full_key = self._full_key(key)
        try:
            state = await asyncio.wait_for(
                self.store.increment_and_maybe_expire(full_key, window_seconds),
                timeout=self.timeout_seconds,
            )
        except (StoreUnavailable, asyncio.TimeoutError) as e:
            logger.warning(f"Rate limiter failing open for {full_key}: {e!r}")
            self.stats.increment("rate_limit_fail_open")
            return Decision(
                allowed=True,
                limit=limit,
                remaining=limit,
                retry_after_seconds=window_seconds,
                key=key,
                failed_open=True,
            )

        allowed = state.count <= limit
        retry_after = state.ttl_seconds if state.ttl_seconds is not None else window_seconds
        self.stats.increment("rate_limit_allowed" if allowed else "rate_limit_denied")
        if not allowed:
            logger.info(f"Rate limit exceeded for {full_key} ({state.count}/{limit})")

        return Decision(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - state.count),
            retry_after_seconds=retry_after,
            count=state.count,
            key=key,
            compensable=bool(policy and policy.skip_failed_requests),
        )

    async def compensate(self, key: str) -> bool:
        """
        Refund one request in ``key``'s current window.

        Best-effort and non-atomic with the original increment: the window may
        have rolled over in the meantime, the counter never goes below zero,
        and errors are logged, never raised.

        Returns:
            True if a counter was decremented
        """
        full_key = self._full_key(key)
        try:
            result = await asyncio.wait_for(
                self.store.decrement(full_key),
                timeout=self.timeout_seconds,
            )
        except (StoreUnavailable, asyncio.TimeoutError) as e:
            logger.warning(f"Could not compensate {full_key}: {e!r}")
            return False

        if result is None:
            return False
        self.stats.increment("rate_limit_compensations")
        return True

    async def reset(self, key: str) -> bool:
        """Delete one window."""
        return await self.store.delete(self._full_key(key))

    async def reset_all(self) -> int:
        """Delete every window under this limiter's prefix."""
        count = await self.store.delete_by_prefix(self.key_prefix)
        logger.info(f"Cleared {count} rate-limit windows under {self.key_prefix!r}")
        return count

    async def issue_release_token(self, decision: Decision) -> str | None:
        """
        Grant a one-time right to refund ``decision``'s slot.

        Only counted, allowed decisions of a limiter that skips failed requests
        get a token. The token lives as long as the decision's window.

        Returns:
            Token to hand to ``redeem``, or None if the decision cannot be refunded
        """
        if not decision.allowed or decision.failed_open or not decision.compensable:
            return None
        if decision.key is None:
            return None

        token = secrets.token_urlsafe(32)
        try:
            await asyncio.wait_for(
                self.store.increment_and_maybe_expire(
                    self._release_key(decision.key, token),
                    max(1, decision.retry_after_seconds),
                ),
                timeout=self.timeout_seconds,
            )
        except (StoreUnavailable, asyncio.TimeoutError) as e:
            logger.warning(f"Could not issue release token for {decision.key}: {e!r}")
            return None
        return token

    async def redeem(self, key: str, token: str) -> bool:
        """
        Refund one request in ``key``'s window against a token from ``issue_release_token``.

        Deleting the token is what claims it, so each token refunds at most
        once even when redeemed concurrently. Unknown, expired and reused
        tokens refund nothing.

        Returns:
            True if a counter was decremented
        """
        release_key = self._release_key(key, token)
        try:
            claimed = await asyncio.wait_for(self.store.delete(release_key), timeout=self.timeout_seconds)
        except (StoreUnavailable, asyncio.TimeoutError) as e:
            logger.warning(f"Could not redeem release token for {key}: {e!r}")
            return False

        if not claimed:
            logger.info(f"Ignoring unknown or spent release token for {key}")
            self.stats.increment("rate_limit_rejected_releases")
            return False
        return await self.compensate(key)
