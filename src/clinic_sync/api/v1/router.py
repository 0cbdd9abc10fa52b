"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.clinic_sync.api.v1 import conflicts, health, providers

router = APIRouter(prefix="/api/v1")

router.include_router(health.router)
router.include_router(providers.router)
router.include_router(conflicts.router)
