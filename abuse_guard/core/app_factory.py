"""Application factory for the FastAPI app.

Centralizes app construction (engine, middleware, handlers, routers) so
tests can build isolated apps with their own engine and clock.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator

from fastapi import FastAPI

from abuse_guard.api.routes import admin_router, health_router, rate_limits_router
from abuse_guard.core.config import settings
from abuse_guard.core.exception_handlers import setup_exception_handlers
from abuse_guard.core.logging import configure_logging
from abuse_guard.core.middleware import request_id_middleware
from abuse_guard.core.openapi import apply_openapi_customizations
from abuse_guard.core.rate_limit import RateLimitEngine, build_engine

logger = logging.getLogger(__name__)


def create_app(engine: RateLimitEngine | None = None, *, configure_logs: bool = True) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        engine: Prebuilt rate limit engine; a default in-memory engine is
            built when omitted.
        configure_logs: Configure root logging from settings.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    if configure_logs:
        configure_logging(settings.log)

    if engine is None:
        engine = build_engine(settings.limiter)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        interval = engine.limiter_settings.purge_interval_seconds
        purge_task = asyncio.create_task(engine.run_periodic_purge(interval)) if interval else None
        yield
        if purge_task is not None:
            purge_task.cancel()
            with suppress(asyncio.CancelledError):
                await purge_task
        # Let in-flight violation recordings finish before shutdown
        await engine.evaluator.wait_for_pending()
        logger.info("app.shutdown")

    app = FastAPI(
        title="Abuse Guard",
        description=(
            "Fixed-window rate limiting and abuse mitigation: per-user and "
            "per-identifier quotas with fail-open enforcement, violation "
            "auditing and admin reporting."
        ),
        version="0.1.0",
        debug=settings.app.debug,
        lifespan=lifespan,
    )
    app.state.rate_limit_engine = engine

    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(rate_limits_router, prefix="/v1")
    app.include_router(admin_router, prefix="/v1")
    app.include_router(health_router)

    apply_openapi_customizations(app)

    return app
