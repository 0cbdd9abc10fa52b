"""FastAPI dependency injection for the sync service and error mapping."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.clinic_sync.sync.errors import (
    ConflictNotFound,
    ProviderNotEnabled,
    ProviderNotFound,
    SyncError,
    SyncInProgress,
    UnsupportedDataType,
    UnsupportedProviderType,
    ValidationFailed,
)
from src.clinic_sync.sync.service import SyncService

_STATUS_BY_ERROR: dict[type[SyncError], int] = {
    ProviderNotFound: status.HTTP_404_NOT_FOUND,
    ConflictNotFound: status.HTTP_404_NOT_FOUND,
    ValidationFailed: status.HTTP_422_UNPROCESSABLE_ENTITY,
    UnsupportedProviderType: status.HTTP_422_UNPROCESSABLE_ENTITY,
    UnsupportedDataType: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ProviderNotEnabled: status.HTTP_409_CONFLICT,
    SyncInProgress: status.HTTP_409_CONFLICT,
}


async def get_sync_service(request: Request) -> SyncService:
    """Retrieve the SyncService from app.state, 503 if not initialized."""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync service not initialized",
        )
    return service


def http_error(exc: SyncError) -> HTTPException:
    """Map a sync error onto an HTTPException."""
    code = _STATUS_BY_ERROR.get(type(exc), status.HTTP_400_BAD_REQUEST)
    detail: str | dict = str(exc)
    if isinstance(exc, ValidationFailed):
        detail = {
            "message": str(exc),
            "failure": exc.outcome.failure.value if exc.outcome.failure else None,
            "reason": exc.outcome.message,
        }
    return HTTPException(status_code=code, detail=detail)
