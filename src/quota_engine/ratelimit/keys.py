"""Request identity and rate-limit key derivation."""

from dataclasses import dataclass

from quota_engine.policy import KeyStrategy
from quota_engine.quota.models import Tier

ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class RequestContext:
    """
    What the identity supplier knows about an inbound request.

    Attributes:
        rate_limit_key: Network key (client address) for address-keyed limiters
        subject_id: Authenticated subject, if any
        tier: The subject's current entitlement, if known
    """

    rate_limit_key: str
    subject_id: str | None = None
    tier: Tier | None = None

    @property
    def authenticated(self) -> bool:
        return self.subject_id is not None


def client_address(
    real_ip: str | None,
    forwarded_for: str | None,
    peer: str | None,
) -> str:
    """
    Pick the client address behind a proxy.

    ``X-Real-IP`` wins, then the first ``X-Forwarded-For`` hop, then the
    socket peer.
    """
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    return peer or "unknown"


def limiter_key(limiter_name: str, strategy: KeyStrategy, context: RequestContext) -> str:
    """Counter key for a request under one limiter."""
    if strategy is KeyStrategy.SUBJECT:
        return f"{limiter_name}:user:{context.subject_id or ANONYMOUS}"
    return f"{limiter_name}:{context.rate_limit_key}"
