"""Provider registry: configuration, enable state and schedule hooks.

Holds the authoritative map of provider id to Provider. Every mutation
is persisted through a ProviderConfigStore as a credential-free snapshot.
Mutations of the map go through one asyncio.Lock; sync passes on
different providers only touch their own entries.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Protocol

import structlog

from src.clinic_sync.sync.config_store import ProviderConfigStore
from src.clinic_sync.sync.errors import ProviderNotFound, ValidationFailed
from src.clinic_sync.sync.schemas import (
    ConflictPolicy,
    DataType,
    Provider,
    ProviderEndpoints,
    ProviderSettings,
    ProviderStatus,
    ProviderType,
    SyncDirection,
)
from src.clinic_sync.sync.validator import CredentialValidator, ValidationFailure, ValidationOutcome

logger = structlog.get_logger(__name__)


class ScheduleHook(Protocol):
    def schedule(self, provider: Provider) -> None: ...

    def unschedule(self, provider_id: str) -> None: ...


def _calendar(provider_id: str, name: str, provider_type: ProviderType, minutes: int) -> Provider:
    return Provider(
        id=provider_id,
        name=name,
        type=provider_type,
        settings=ProviderSettings(
            sync_direction=SyncDirection.BIDIRECTIONAL,
            sync_frequency_minutes=minutes,
            conflict_resolution_policy=ConflictPolicy.MANUAL,
            data_types=[DataType.APPOINTMENTS],
        ),
    )


def _clinical(
    provider_id: str,
    name: str,
    provider_type: ProviderType,
    minutes: int,
    endpoints: ProviderEndpoints,
    data_types: list[DataType] | None = None,
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
    policy: ConflictPolicy = ConflictPolicy.MANUAL,
) -> Provider:
    return Provider(
        id=provider_id,
        name=name,
        type=provider_type,
        endpoints=endpoints,
        settings=ProviderSettings(
            sync_direction=direction,
            sync_frequency_minutes=minutes,
            conflict_resolution_policy=policy,
            data_types=data_types or [DataType.PATIENTS, DataType.APPOINTMENTS],
        ),
    )


def default_providers() -> list[Provider]:
    """Built-in catalogue; every entry starts disabled and disconnected."""
    return [
        _calendar("google-calendar", "Google Calendar", ProviderType.GOOGLE, 15),
        _calendar("outlook-calendar", "Microsoft Outlook", ProviderType.OUTLOOK, 15),
        _calendar("icloud-calendar", "Apple iCloud Calendar", ProviderType.ICLOUD, 30),
        _clinical(
            "epic-mychart", "Epic MyChart", ProviderType.EPIC, 60,
            ProviderEndpoints(base_url="https://fhir.epic.com/interconnect-fhir-oauth/api/FHIR/R4"),
        ),
        _clinical(
            "cerner-powerchart", "Cerner PowerChart", ProviderType.CERNER, 60,
            ProviderEndpoints(base_url="https://fhir-open.cerner.com/r4"),
        ),
        _clinical(
            "athenahealth", "athenahealth", ProviderType.ATHENA, 30,
            ProviderEndpoints(
                base_url="https://api.athenahealth.com/preview1",
                patient_path="/patients",
                appointment_path="/appointments",
            ),
        ),
        _clinical(
            "allscripts", "Allscripts", ProviderType.ALLSCRIPTS, 120,
            ProviderEndpoints(base_url="https://api.allscripts.com/fhir/r4"),
            data_types=[DataType.PATIENTS],
            direction=SyncDirection.INBOUND_ONLY,
            policy=ConflictPolicy.EXTERNAL_WINS,
        ),
        _clinical(
            "eclinicalworks", "eClinicalWorks", ProviderType.ECLINICALWORKS, 90,
            ProviderEndpoints(base_url="https://api.eclinicalworks.com/fhir/r4"),
        ),
    ]


class ProviderRegistry:
    """Authoritative provider map.

    Args:
        store: Persistence for credential-free snapshots.
        validator: Credential check run by ``configure`` and ``toggle``.
    """

    def __init__(self, store: ProviderConfigStore, validator: CredentialValidator) -> None:
        self._store = store
        self._validator = validator
        self._providers: dict[str, Provider] = {}
        self._lock = asyncio.Lock()
        self._scheduler: ScheduleHook | None = None

    def attach_scheduler(self, scheduler: ScheduleHook) -> None:
        self._scheduler = scheduler

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def load(self) -> None:
        """Register defaults, then overlay persisted snapshots.

        Credentials are never persisted, so a provider restored as enabled
        comes back disabled until it is configured again.
        """
        async with self._lock:
            self._providers = {p.id: p for p in default_providers()}
            snapshots = await self._store.load_all()
            for provider_id, snapshot in snapshots.items():
                current = self._providers.get(provider_id)
                if current is None:
                    logger.debug("registry.unknown_snapshot_ignored", provider_id=provider_id)
                    continue
                restored = Provider.model_validate({**current.model_dump(), **snapshot, "credentials": None})
                if restored.enabled or restored.status == ProviderStatus.SYNCING:
                    if restored.enabled:
                        logger.warning("registry.credentials_required", provider_id=provider_id)
                    restored.enabled = False
                    restored.status = ProviderStatus.DISCONNECTED
                self._providers[provider_id] = restored
        logger.info("registry.loaded", providers=len(self._providers), restored=len(snapshots))

    async def destroy(self) -> None:
        """Stop every schedule and forget all provider state."""
        async with self._lock:
            if self._scheduler is not None:
                for provider_id in self._providers:
                    self._scheduler.unschedule(provider_id)
            self._providers.clear()
            await self._store.clear()
        logger.info("registry.destroyed")

    # ── Queries ───────────────────────────────────────────────────────────

    def get(self, provider_id: str) -> Provider:
        try:
            return self._providers[provider_id]
        except KeyError:
            raise ProviderNotFound(provider_id) from None

    def list(self) -> list[Provider]:
        return list(self._providers.values())

    def enabled(self) -> list[Provider]:
        return [p for p in self._providers.values() if p.enabled]

    # ── Mutations ─────────────────────────────────────────────────────────

    async def register(self, provider: Provider) -> Provider:
        """Add or replace a provider definition (e.g. a custom CalDAV or FHIR server)."""
        async with self._lock:
            self._providers[provider.id] = provider
            await self._persist(provider)
        logger.info("registry.provider_registered", provider_id=provider.id, provider_type=provider.type.value)
        return provider

    async def configure(
        self,
        provider_id: str,
        credentials: dict[str, Any],
        settings_patch: dict[str, Any] | None = None,
    ) -> Provider:
        """Validate credentials, apply settings, enable and schedule.

        Raises:
            ProviderNotFound: Unknown provider id.
            ValidationFailed: Missing fields or a failed probe. The provider
                is left disabled with status=error.
        """
        provider = self.get(provider_id)
        parsed, outcome = await self._validator.validate(provider, credentials)

        async with self._lock:
            if not outcome.ok:
                provider.status = ProviderStatus.ERROR
                provider.enabled = False
                await self._persist(provider)
                logger.warning(
                    "registry.configure_rejected",
                    provider_id=provider_id,
                    failure=outcome.failure.value if outcome.failure else None,
                    message=outcome.message,
                )
                if self._scheduler is not None:
                    self._scheduler.unschedule(provider_id)
                raise ValidationFailed(provider_id, outcome)

            if settings_patch:
                merged = {**provider.settings.model_dump(), **settings_patch}
                provider.settings = ProviderSettings.model_validate(merged)
            provider.credentials = parsed
            provider.enabled = True
            provider.status = ProviderStatus.CONNECTED
            await self._persist(provider)

        logger.info(
            "registry.provider_configured",
            provider_id=provider_id,
            provider_type=provider.type.value,
            sync_direction=provider.settings.sync_direction.value,
            frequency_minutes=provider.settings.sync_frequency_minutes,
        )
        if self._scheduler is not None:
            self._scheduler.schedule(provider)
        return provider

    async def toggle(self, provider_id: str, enabled: bool) -> Provider:
        """Enable or disable a provider and start/stop its schedule.

        Disabling never aborts an in-flight pass; the pass reconciles its
        final status against the disabled state when it completes.

        Raises:
            ProviderNotFound: Unknown provider id.
            ValidationFailed: Enabling a provider that has no credentials.
        """
        provider = self.get(provider_id)
        if enabled and provider.credentials is None:
            raise ValidationFailed(
                provider_id,
                ValidationOutcome.failed(ValidationFailure.MISSING_FIELD, "Provider has no credentials configured"),
            )

        async with self._lock:
            provider.enabled = enabled
            if provider.status != ProviderStatus.SYNCING:
                provider.status = ProviderStatus.CONNECTED if enabled else ProviderStatus.DISCONNECTED
            await self._persist(provider)

        if self._scheduler is not None:
            if enabled:
                self._scheduler.schedule(provider)
            else:
                self._scheduler.unschedule(provider_id)
        logger.info("registry.provider_toggled", provider_id=provider_id, enabled=enabled)
        return provider

    async def set_status(
        self,
        provider_id: str,
        status: ProviderStatus,
        last_sync_at: datetime | None = None,
    ) -> Provider:
        """Record a pass status transition.

        A provider disabled while syncing settles on ``disconnected``
        instead of the requested post-pass status.
        """
        provider = self.get(provider_id)
        async with self._lock:
            if status != ProviderStatus.SYNCING and not provider.enabled:
                status = ProviderStatus.DISCONNECTED
            provider.status = status
            if last_sync_at is not None:
                provider.last_sync_at = last_sync_at
            await self._persist(provider)
        return provider

    async def _persist(self, provider: Provider) -> None:
        await self._store.save(provider.snapshot())
