"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Readiness
checks Redis only when the shared storage backend is in use.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from src.clinic_sync.config import StorageBackend, get_settings
from src.clinic_sync.core.redis import ping_redis

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request):
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    service = getattr(request.app.state, "sync_service", None)
    return {
        "status": "ok",
        "environment": settings.ENVIRONMENT.value,
        "sync_service": "ready" if service is not None else "unavailable",
    }


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: sync service initialized and Redis reachable if configured."""
    settings = get_settings()
    checks: dict = {
        "sync_service": "ok" if getattr(request.app.state, "sync_service", None) is not None else "error",
        "redis": "not_used",
    }

    if settings.SYNC_STORAGE_BACKEND == StorageBackend.redis:
        reachable, error = await ping_redis()
        checks["redis"] = "ok" if reachable else "error"
        if error:
            checks["redis_error"] = error

    all_healthy = checks["sync_service"] == "ok" and checks["redis"] in ("ok", "not_used")
    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if all_healthy else "degraded", "checks": checks},
    )
