"""FastAPI application entry-point for the billing service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from billing_core.errors import BillingError, CardDeclinedError, ErrorKind
from billing_core.state.database import create_tables
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from billing_api import __version__
from billing_api.config import PlatformEnv, load_settings
from billing_api.dependencies import (
    dispose_engine,
    dispose_services,
    get_session_factory,
    init_engine,
    init_services,
)
from billing_api.middleware.json_formatter import configure_logging
from billing_api.middleware.logging import RequestLoggingMiddleware
from billing_api.routers import billing, health, leads, webhooks

logger = logging.getLogger(__name__)

# HTTP status returned for each billing error kind.
_ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.NEEDS_PAYMENT_METHOD: 402,
    ErrorKind.CARD_DECLINED: 402,
    ErrorKind.TRANSIENT_PROVIDER: 503,
    ErrorKind.CONCURRENT_UPDATE: 503,
    ErrorKind.INVALID_SIGNATURE: 400,
    ErrorKind.UNATTRIBUTED_EVENT: 422,
    ErrorKind.CONFIGURATION: 500,
}


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown lifecycle for shared resources."""
    settings = load_settings()
    configure_logging(settings.log_level, structured=settings.structured_logging)
    if settings.structured_logging:
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    logger.info("Database engine initialised (env=%s)", settings.platform_env.value)

    # Local and dev databases are created from the ORM metadata; other
    # environments are migrated with Alembic.
    if settings.platform_env is PlatformEnv.DEV or settings.database_url.startswith("sqlite"):
        await create_tables(engine)

    services = init_services(settings, get_session_factory())
    logger.info(
        "Billing services initialised (dunning max_attempts=%d grace_days=%d)",
        services.dunning.policy.max_attempts,
        services.dunning.policy.grace_period_days,
    )

    yield

    # Shutdown.
    await dispose_services()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    app = FastAPI(
        title="Provider Billing API",
        description="Lead charges, subscription dunning, disputes and payment webhooks.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware ----------------------------------------------------------

    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(leads.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        status_code = _ERROR_STATUS.get(exc.kind, 500)
        if status_code >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        else:
            logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)

        content: dict[str, object] = {
            "detail": exc.message,
            "error": exc.kind.value,
            "retryable": exc.retryable,
        }
        if isinstance(exc, CardDeclinedError):
            content["decline_reason"] = exc.decline_reason
        headers = {"Retry-After": "30"} if exc.retryable else None
        return JSONResponse(status_code=status_code, content=content, headers=headers)

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error"},
        )

    return app


# Module-level application instance used by ``uvicorn billing_api.main:app``.
app = create_app()
