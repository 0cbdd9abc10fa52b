"""Provider configuration and sync endpoints.

Credentials are accepted on configure and never returned: every provider
response is built from the credential-free snapshot.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from src.clinic_sync.api.deps import get_sync_service, http_error
from src.clinic_sync.sync.errors import SyncError
from src.clinic_sync.sync.schemas import SyncReport
from src.clinic_sync.sync.service import SyncService

router = APIRouter(tags=["providers"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class ProviderResponse(BaseModel):
    """Provider configuration without credentials."""

    id: str
    name: str
    type: str
    enabled: bool
    settings: dict[str, Any]
    endpoints: dict[str, Any] | None = None
    status: str
    last_sync_at: datetime | None = None


class SyncResultResponse(BaseModel):
    data_type: str
    success: bool
    records_processed: int
    records_created: int
    records_updated: int
    records_skipped: int
    errors: list[str]
    conflicts: list[dict[str, Any]]
    duration_ms: int
    timestamp: datetime


class SyncReportResponse(BaseModel):
    """One provider pass: per-data-type results plus totals."""

    provider_id: str
    success: bool
    records_processed: int
    records_created: int
    records_updated: int
    records_skipped: int
    errors: list[str]
    conflicts: int
    duration_ms: int
    timestamp: datetime
    results: list[SyncResultResponse] = Field(default_factory=list)


class ConnectionTestResponse(BaseModel):
    provider_id: str
    ok: bool


# ── Request Schemas ──────────────────────────────────────────────────────────


class ConfigureProviderRequest(BaseModel):
    """Credentials for the provider's type plus an optional settings patch."""

    credentials: dict[str, Any]
    settings: dict[str, Any] | None = None


class ToggleProviderRequest(BaseModel):
    enabled: bool


class TriggerSyncRequest(BaseModel):
    provider_id: str | None = None


# ── Helpers ──────────────────────────────────────────────────────────────────


def _report_to_response(report: SyncReport) -> SyncReportResponse:
    summary = report.summary()
    return SyncReportResponse(
        **summary,
        results=[
            SyncResultResponse(
                **r.model_dump(mode="json", exclude={"provider_id", "conflicts"}),
                conflicts=[c.model_dump(mode="json") for c in r.conflicts],
            )
            for r in report.results
        ],
    )


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/providers", response_model=list[ProviderResponse])
async def list_providers(service: SyncService = Depends(get_sync_service)) -> list[ProviderResponse]:
    """List every registered provider."""
    return [ProviderResponse(**p.snapshot()) for p in service.list_providers()]


@router.get("/providers/{provider_id}", response_model=ProviderResponse)
async def get_provider(provider_id: str, service: SyncService = Depends(get_sync_service)) -> ProviderResponse:
    try:
        provider = service.get_provider(provider_id)
    except SyncError as exc:
        raise http_error(exc) from exc
    return ProviderResponse(**provider.snapshot())


@router.post("/providers/{provider_id}/configure", response_model=ProviderResponse)
async def configure_provider(
    provider_id: str,
    body: ConfigureProviderRequest,
    service: SyncService = Depends(get_sync_service),
) -> ProviderResponse:
    """Validate credentials, apply settings and enable the provider."""
    try:
        provider = await service.configure_provider(provider_id, body.credentials, body.settings)
    except SyncError as exc:
        raise http_error(exc) from exc
    return ProviderResponse(**provider.snapshot())


@router.post("/providers/{provider_id}/toggle", response_model=ProviderResponse)
async def toggle_provider(
    provider_id: str,
    body: ToggleProviderRequest,
    service: SyncService = Depends(get_sync_service),
) -> ProviderResponse:
    try:
        provider = await service.toggle_provider(provider_id, body.enabled)
    except SyncError as exc:
        raise http_error(exc) from exc
    return ProviderResponse(**provider.snapshot())


@router.post("/providers/{provider_id}/sync", response_model=SyncReportResponse)
async def sync_provider(provider_id: str, service: SyncService = Depends(get_sync_service)) -> SyncReportResponse:
    """Run one pass now and return its report."""
    try:
        report = await service.sync_provider(provider_id)
    except SyncError as exc:
        raise http_error(exc) from exc
    return _report_to_response(report)


@router.post("/providers/{provider_id}/test", response_model=ConnectionTestResponse)
async def test_connection(
    provider_id: str,
    service: SyncService = Depends(get_sync_service),
) -> ConnectionTestResponse:
    """Re-probe the stored credentials."""
    try:
        ok = await service.test_connection(provider_id)
    except SyncError as exc:
        raise http_error(exc) from exc
    return ConnectionTestResponse(provider_id=provider_id, ok=ok)


@router.post("/sync", response_model=list[SyncReportResponse])
async def trigger_sync(
    body: TriggerSyncRequest | None = None,
    service: SyncService = Depends(get_sync_service),
) -> list[SyncReportResponse]:
    """Sync one provider, or every enabled provider when no id is given."""
    try:
        reports = await service.trigger_sync(body.provider_id if body else None)
    except SyncError as exc:
        raise http_error(exc) from exc
    return [_report_to_response(r) for r in reports]
