"""External-system synchronization engine.

Reconciles clinic records (appointments, patients) with calendar and
clinical-data providers: provider registry and credential validation,
record matching, field-level conflict resolution, sync passes and their
scheduling.

Exports:
    SyncService: Facade wiring registry, engine, scheduler and resilience.
    build_sync_service: Factory reading Settings.
    SyncEngine: Runs one pass per provider.
    ProviderRegistry: Provider configuration and enable state.
"""

from __future__ import annotations

from src.clinic_sync.sync.schemas import (
    Conflict,
    ConflictPolicy,
    DataType,
    Provider,
    ProviderStatus,
    ProviderType,
    Resolution,
    SyncableEntity,
    SyncDirection,
    SyncReport,
    SyncResult,
)

__all__ = [
    "Conflict",
    "ConflictPolicy",
    "DataType",
    "Provider",
    "ProviderRegistry",
    "ProviderStatus",
    "ProviderType",
    "Resolution",
    "SyncDirection",
    "SyncEngine",
    "SyncReport",
    "SyncResult",
    "SyncService",
    "SyncableEntity",
    "build_sync_service",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load the heavier components to keep schema imports cheap."""
    if name in ("SyncService", "build_sync_service"):
        from src.clinic_sync.sync import service

        return getattr(service, name)
    if name == "SyncEngine":
        from src.clinic_sync.sync.engine import SyncEngine

        return SyncEngine
    if name == "ProviderRegistry":
        from src.clinic_sync.sync.registry import ProviderRegistry

        return ProviderRegistry
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
