"""Sync engine exceptions.

Configuration-time errors (ProviderNotFound, ValidationFailed) propagate to
the caller. Pass- and record-level failures are collected into SyncResult
and never raised through these types.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.clinic_sync.sync.validator import ValidationOutcome


class SyncError(Exception):
    """Base class for sync engine errors."""


class ProviderNotFound(SyncError):
    def __init__(self, provider_id: str) -> None:
        self.provider_id = provider_id
        super().__init__(f"Provider {provider_id} not found")


class ValidationFailed(SyncError):
    """Credential probe rejected the supplied credentials."""

    def __init__(self, provider_id: str, outcome: ValidationOutcome) -> None:
        self.provider_id = provider_id
        self.outcome = outcome
        super().__init__(
            f"Credential validation failed for {provider_id}: "
            f"{outcome.failure.value if outcome.failure else 'unknown'} ({outcome.message})"
        )


class ProviderNotEnabled(SyncError):
    def __init__(self, provider_id: str) -> None:
        self.provider_id = provider_id
        super().__init__(f"Provider {provider_id} is not enabled")


class SyncInProgress(SyncError):
    def __init__(self, provider_id: str) -> None:
        self.provider_id = provider_id
        super().__init__(f"A sync pass for provider {provider_id} is already running")


class UnsupportedProviderType(SyncError):
    def __init__(self, provider_type: str) -> None:
        self.provider_type = provider_type
        super().__init__(f"Unsupported provider type: {provider_type}")


class UnsupportedDataType(SyncError):
    def __init__(self, provider_type: str, data_type: str) -> None:
        self.provider_type = provider_type
        self.data_type = data_type
        super().__init__(f"Unsupported data type for {provider_type}: {data_type}")


class ConflictNotFound(SyncError):
    def __init__(self, conflict_id: str) -> None:
        self.conflict_id = conflict_id
        super().__init__(f"Conflict {conflict_id} not found")
