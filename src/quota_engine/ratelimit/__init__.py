"""Fixed-window rate limiting."""

from quota_engine.ratelimit.keys import RequestContext, client_address, limiter_key
from quota_engine.ratelimit.limiter import Decision, RateLimiter

__all__ = [
    "Decision",
    "RateLimiter",
    "RequestContext",
    "client_address",
    "limiter_key",
]
