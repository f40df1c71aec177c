"""FastAPI application for the quota engine."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from quota_engine import __version__
from quota_engine.api.dependencies import context_from_request
from quota_engine.api.routes import admin_router, router as api_router
from quota_engine.config import Settings, get_settings
from quota_engine.engine import QuotaEngine
from quota_engine.errors import (
    InvalidConfiguration,
    QuotaExceeded,
    QuotaServiceUnavailable,
    RateLimited,
    StoreUnavailable,
    SubjectRequired,
    UnknownFeature,
)

logger = logging.getLogger(__name__)


def rate_limited_response(exc: RateLimited) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": "rate_limited",
            "message": exc.message,
            "retry_after_seconds": exc.decision.retry_after_seconds,
        },
        headers=exc.decision.headers(),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map engine outcomes onto HTTP responses."""

    @app.exception_handler(RateLimited)
    async def handle_rate_limited(request: Request, exc: RateLimited) -> JSONResponse:
        return rate_limited_response(exc)

    @app.exception_handler(QuotaExceeded)
    async def handle_quota_exceeded(request: Request, exc: QuotaExceeded) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={
                "error": "quota_exceeded",
                "message": f"Daily {exc.feature} limit reached. Upgrade your plan for more access.",
                **exc.to_dict(),
            },
        )

    @app.exception_handler(QuotaServiceUnavailable)
    async def handle_quota_unavailable(
        request: Request, exc: QuotaServiceUnavailable
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error": "quota_unavailable", "message": "Quota service temporarily unavailable"},
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable) -> JSONResponse:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error": "store_unavailable", "message": str(exc)},
            headers={"Retry-After": "5"},
        )

    @app.exception_handler(SubjectRequired)
    async def handle_subject_required(request: Request, exc: SubjectRequired) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"error": "subject_required", "message": str(exc)},
        )

    @app.exception_handler(UnknownFeature)
    async def handle_unknown_feature(request: Request, exc: UnknownFeature) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"error": "unknown_feature", "message": str(exc), "known": exc.known},
        )

    @app.exception_handler(InvalidConfiguration)
    async def handle_invalid_configuration(
        request: Request, exc: InvalidConfiguration
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "invalid_request", "message": str(exc)},
        )


def create_app(
    engine: QuotaEngine | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        engine: Pre-built engine (built from settings when None)
        settings: Process settings (defaults to ``get_settings()``)
    """
    settings = settings or get_settings()
    engine = engine or QuotaEngine.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Starting quota engine API...")
        await engine.start(run_sweeper=settings.sweeper_enabled)
        yield
        logger.info("Shutting down quota engine API...")
        await engine.stop()

    app = FastAPI(
        title="Quota Engine",
        description="Rate limiting and tiered daily quota enforcement",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.settings = settings

    register_exception_handlers(app)

    http_limiter = settings.http_limiter
    if http_limiter and http_limiter not in engine.policy.limiters:
        logger.warning(f"HTTP limiter '{http_limiter}' is not configured, requests are not rate limited")
        http_limiter = None

    if http_limiter:

        @app.middleware("http")
        async def enforce_rate_limit(request: Request, call_next):
            # Exception handlers do not cover middleware, so answer 429 here
            try:
                result = await engine.enforce(
                    http_limiter,
                    context_from_request(request),
                    path=request.url.path,
                )
            except RateLimited as exc:
                return rate_limited_response(exc)

            response = await call_next(request)
            await engine.release(result, failed=response.status_code >= 400)
            for name, value in result.headers().items():
                response.headers.setdefault(name, value)
            return response

    app.include_router(api_router, prefix="/v1")
    app.include_router(admin_router, prefix="/v1")

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "version": __version__, **(await engine.health_check())}

    return app
