"""Request-scoped dependencies: the engine, caller identity and admin access."""

import logging
import secrets

from fastapi import Depends, HTTPException, Request, status

from quota_engine.config import Settings
from quota_engine.engine import QuotaEngine
from quota_engine.quota.models import Tier
from quota_engine.ratelimit.keys import RequestContext, client_address

logger = logging.getLogger(__name__)

SUBJECT_HEADER = "X-Subject-Id"
TIER_HEADER = "X-Subject-Tier"


def get_engine(request: Request) -> QuotaEngine:
    return request.app.state.engine


def get_settings_from_app(request: Request) -> Settings:
    return request.app.state.settings


def parse_tier(value: str | None) -> Tier | None:
    """Tier header value, falling back to the lowest tier when unrecognised."""
    if value is None or not value.strip():
        return None
    try:
        return Tier(value.strip().lower())
    except ValueError:
        logger.warning(f"Unknown tier {value!r} in {TIER_HEADER}, using {Tier.lowest().value}")
        return Tier.lowest()


def context_from_request(request: Request) -> RequestContext:
    """
    Identity of the caller as set by the upstream authenticating proxy.

    The proxy is trusted to strip client-supplied identity headers.
    """
    headers = request.headers
    subject_id = headers.get(SUBJECT_HEADER) or None
    return RequestContext(
        rate_limit_key=client_address(
            headers.get("X-Real-IP"),
            headers.get("X-Forwarded-For"),
            request.client.host if request.client else None,
        ),
        subject_id=subject_id.strip() if subject_id else None,
        tier=parse_tier(headers.get(TIER_HEADER)),
    )


def get_context(request: Request) -> RequestContext:
    return context_from_request(request)


def require_subject(context: RequestContext = Depends(get_context)) -> RequestContext:
    if context.subject_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {SUBJECT_HEADER} header",
        )
    return context


def require_admin(
    request: Request,
    settings: Settings = Depends(get_settings_from_app),
) -> None:
    """Bearer-token check for admin routes. Open when no admin key is configured."""
    if not settings.admin_api_key:
        return

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or malformed Authorization header. Use: Bearer <token>",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = auth_header[len("Bearer "):]
    if not secrets.compare_digest(token, settings.admin_api_key):
        logger.warning(f"Rejected admin request to {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key",
        )
