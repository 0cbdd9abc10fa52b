"""Conflict review endpoints and integration error stats."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from src.clinic_sync.api.deps import get_sync_service, http_error
from src.clinic_sync.sync.errors import SyncError
from src.clinic_sync.sync.schemas import Resolution
from src.clinic_sync.sync.service import SyncService

router = APIRouter(tags=["conflicts"])


class ResolveConflictRequest(BaseModel):
    resolution: Resolution


@router.get("/conflicts")
async def list_conflicts(
    provider_id: str | None = Query(default=None),
    service: SyncService = Depends(get_sync_service),
) -> list[dict[str, Any]]:
    """Pending (manual-policy) conflicts, oldest first."""
    return [c.model_dump(mode="json") for c in service.list_pending_conflicts(provider_id)]


@router.post("/conflicts/{conflict_id}/resolve")
async def resolve_conflict(
    conflict_id: str,
    body: ResolveConflictRequest,
    service: SyncService = Depends(get_sync_service),
) -> dict[str, Any]:
    try:
        conflict = await service.resolve_conflict(conflict_id, body.resolution)
    except SyncError as exc:
        raise http_error(exc) from exc
    return conflict.model_dump(mode="json")


@router.get("/errors/stats")
async def error_stats(service: SyncService = Depends(get_sync_service)) -> dict[str, Any]:
    """Classified error totals by kind and service, plus pending retries."""
    return service.error_stats()
