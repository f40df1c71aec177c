"""API routes for quota status, consumption, enforcement and administration."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field

from quota_engine.api.dependencies import get_context, get_engine, require_admin, require_subject
from quota_engine.engine import QuotaEngine
from quota_engine.quota.models import Tier
from quota_engine.ratelimit.keys import RequestContext

logger = logging.getLogger(__name__)
router = APIRouter()
admin_router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


# --- Request/Response Models ---


class EnforceRequest(BaseModel):
    """Ask whether an operation may proceed."""

    limiter: str = Field(..., description="Configured rate limiter name")
    feature: str | None = Field(default=None, description="Metered feature to consume, if any")
    path: str | None = Field(default=None, description="Operation path, checked against exemptions")


class ReleaseRequest(BaseModel):
    """Report the outcome of an enforced operation."""

    limiter: str
    failed: bool = Field(..., description="True if the operation failed downstream")
    release_token: str | None = Field(
        default=None,
        description="Token returned by /enforce; required for a refund",
    )


class TierChangeRequest(BaseModel):
    """Record an entitlement change."""

    tier: Tier
    reset_usage: bool = Field(default=False, description="Zero counters and start a new window")


class RateLimitResetRequest(BaseModel):
    """Clear rate-limit windows."""

    key: str | None = Field(
        default=None,
        description="Bucket key such as 'otp:203.0.113.7'; None clears every window",
    )


# --- Quota ---


@router.get("/quota/status")
async def quota_status(
    context: RequestContext = Depends(require_subject),
    engine: QuotaEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Current usage of every metered feature for the caller."""
    status = await engine.quotas.get_status(context.subject_id, context.tier)
    return status.to_dict()


@router.post("/quota/{feature}/consume")
async def consume_feature(
    feature: str,
    context: RequestContext = Depends(require_subject),
    engine: QuotaEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Use one unit of the caller's daily allowance for ``feature``."""
    result = await engine.quotas.consume(context.subject_id, feature, context.tier)
    return result.to_dict()


@router.get("/quota/next-reset")
async def next_reset(engine: QuotaEngine = Depends(get_engine)) -> dict[str, Any]:
    reset = engine.policy.reset
    return {
        "next_reset_at": engine.quotas.next_reset().isoformat(),
        "reset_hour": reset.reset_hour,
        "utc_offset_minutes": reset.utc_offset_minutes,
    }


# --- Enforcement for collaborating services ---


@router.post("/enforce")
async def enforce(
    body: EnforceRequest,
    response: Response,
    context: RequestContext = Depends(get_context),
    engine: QuotaEngine = Depends(get_engine),
) -> dict[str, Any]:
    """
    Run a named limiter and, optionally, consume a feature for the caller.

    Denials surface as 429 / 401 / 403 / 503 through the app's exception handlers.
    """
    result = await engine.enforce(
        body.limiter,
        context,
        feature=body.feature,
        path=body.path,
        issue_release_token=True,
    )
    for name, value in result.headers().items():
        response.headers[name] = value
    return {
        "allowed": True,
        "limiter": body.limiter,
        "rate_limit": result.decision.to_dict() if result.decision else None,
        "quota": result.consumed.to_dict() if result.consumed else None,
        "release_token": result.release_token,
    }


@router.post("/enforce/release")
async def release(
    body: ReleaseRequest,
    context: RequestContext = Depends(get_context),
    engine: QuotaEngine = Depends(get_engine),
) -> dict[str, Any]:
    """
    Refund the slot of a failed operation.

    Only a token from an allowed, counted /enforce call on a limiter that
    skips failed requests refunds anything, and only once.
    """
    refunded = False
    if body.failed and body.release_token:
        refunded = await engine.compensate(body.limiter, context, body.release_token)
    return {"refunded": refunded}


# --- Admin ---


@admin_router.put("/quota/{subject_id}/tier")
async def change_tier(
    subject_id: str,
    body: TierChangeRequest,
    engine: QuotaEngine = Depends(get_engine),
) -> dict[str, Any]:
    status = await engine.quotas.change_tier(subject_id, body.tier, reset_usage=body.reset_usage)
    return status.to_dict()


@admin_router.get("/quota/{subject_id}")
async def subject_status(
    subject_id: str,
    engine: QuotaEngine = Depends(get_engine),
) -> dict[str, Any]:
    status = await engine.quotas.get_status(subject_id)
    return status.to_dict()


@admin_router.delete("/quota/{subject_id}/cache")
async def invalidate_subject(
    subject_id: str,
    engine: QuotaEngine = Depends(get_engine),
) -> dict[str, Any]:
    await engine.quotas.invalidate(subject_id)
    return {"invalidated": subject_id}


@admin_router.post("/quota/sweep")
async def sweep(engine: QuotaEngine = Depends(get_engine)) -> dict[str, Any]:
    """Reset every due quota record now."""
    result = await engine.resets.sweep_all()
    return result.to_dict()


@admin_router.post("/ratelimit/reset")
async def reset_rate_limits(
    body: RateLimitResetRequest,
    engine: QuotaEngine = Depends(get_engine),
) -> dict[str, Any]:
    if body.key:
        return {"cleared": 1 if await engine.rate_limiter.reset(body.key) else 0}
    return {"cleared": await engine.rate_limiter.reset_all()}


@admin_router.get("/stats")
async def stats(engine: QuotaEngine = Depends(get_engine)) -> dict[str, Any]:
    return {
        "counters": engine.stats.snapshot(),
        "quota": engine.quotas.describe(),
    }
