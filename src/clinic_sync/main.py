"""FastAPI application factory.

Creates the app with logging middleware, the v1 API router, a Prometheus
/metrics route, and a lifespan that builds and initializes the SyncService.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.clinic_sync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.clinic_sync.api.v1.router import router as v1_router
from src.clinic_sync.config import StorageBackend, get_settings
from src.clinic_sync.core.monitoring import get_metrics_response
from src.clinic_sync.core.redis import close_redis, get_redis_pool
from src.clinic_sync.sync.service import SyncService, build_sync_service


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the sync service on startup; stop timers and close Redis on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    service: SyncService | None = getattr(app.state, "sync_service", None)
    if service is None:
        redis = get_redis_pool() if settings.SYNC_STORAGE_BACKEND == StorageBackend.redis else None
        service = build_sync_service(settings, redis=redis)
        app.state.sync_service = service

    await service.initialize()
    log.info(
        "app.started",
        environment=settings.ENVIRONMENT.value,
        storage_backend=settings.SYNC_STORAGE_BACKEND.value,
    )

    yield

    service.scheduler.stop()
    await close_redis()
    log.info("app.stopped")


def create_app(service: SyncService | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Pre-built service (tests inject one wired to fakes).
    """
    app = FastAPI(
        title="Clinic Sync API",
        version="0.1.0",
        description="External calendar and clinical-data synchronization engine",
        lifespan=lifespan,
    )
    if service is not None:
        app.state.sync_service = service

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
