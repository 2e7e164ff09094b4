"""Application factory for the FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers) and
wires the rate limiter's window store explicitly so tests can inject fakes.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from bandcrawl.adapters.rate_limit import AbstractWindowStore, create_window_store
from bandcrawl.api.routes import admin_router, health_router, metrics_router
from bandcrawl.core.admin_lockout import AdminLockout
from bandcrawl.core.config import settings
from bandcrawl.core.exception_handlers import setup_exception_handlers
from bandcrawl.core.logging import configure_logging
from bandcrawl.core.middleware import (
    cors_middleware,
    rate_limit_middleware,
    request_id_middleware,
)
from bandcrawl.core.openapi import apply_openapi_customizations
from bandcrawl.core.rate_limit import RateLimiter, RateLimitPolicy
from bandcrawl.services.metrics_service import ArtistStatsRecorder, MetricsService


def create_app(
    *,
    store: AbstractWindowStore | None = None,
    limiter: RateLimiter | None = None,
    admin_lockout: AdminLockout | None = None,
    metrics_service: MetricsService | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        store: Window store for the default limiter (built from settings
            when omitted). Ignored when ``limiter`` is given.
        limiter: Fully configured rate limiter to install.
        admin_lockout: Failed admin key tracker (shares the limiter's store
            and clock when omitted).
        metrics_service: Beacon ingestion service to install.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    if limiter is None:
        limiter = RateLimiter(
            store or create_window_store(settings.app),
            policy=RateLimitPolicy(),
            store_timeout_seconds=settings.app.rate_limit_store_timeout_seconds,
        )

    if admin_lockout is None:
        admin_lockout = AdminLockout(
            limiter.store,
            threshold=settings.app.admin_lockout_threshold,
            window_seconds=settings.app.admin_lockout_window_seconds,
            duration_seconds=settings.app.admin_lockout_duration_seconds,
            clock=limiter.now,
            store_timeout_seconds=settings.app.rate_limit_store_timeout_seconds,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await limiter.store.close()

    app = FastAPI(
        title="Bandcrawl API",
        description=(
            "Public JSON API for the concert schedule: analytics beacons and "
            "operator endpoints, fronted by per-client, per-endpoint rate limits."
        ),
        version="0.1.0",
        license_info={
            "name": "MIT License",
            "url": "https://opensource.org/licenses/MIT",
        },
        lifespan=lifespan,
    )

    app.state.rate_limiter = limiter
    app.state.admin_lockout = admin_lockout
    app.state.metrics_service = metrics_service or MetricsService(ArtistStatsRecorder())

    # Middleware: the last registered runs first (cors -> rate limit -> request id)
    app.middleware("http")(request_id_middleware)
    app.middleware("http")(rate_limit_middleware)
    app.middleware("http")(cors_middleware)

    setup_exception_handlers(app)

    app.include_router(metrics_router, prefix="/api")
    app.include_router(admin_router, prefix="/api/admin")
    app.include_router(health_router)

    apply_openapi_customizations(app, limiter.policy)

    return app
