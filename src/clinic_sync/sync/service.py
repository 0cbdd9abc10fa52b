"""SyncService facade and its factory.

One explicit object wires the registry, engine, scheduler, conflict
resolver and resilience layer together; there is no module-level state.
``build_sync_service`` is the only place that reads Settings.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import httpx
import redis.asyncio as aioredis
import structlog

from src.clinic_sync.config import Settings, StorageBackend
from src.clinic_sync.resilience.classifier import ErrorClassifier
from src.clinic_sync.resilience.handler import IntegrationErrorHandler
from src.clinic_sync.resilience.rate_limiter import (
    MemoryRateLimitStorage,
    RateLimiter,
    RateLimitStorage,
    RedisRateLimitStorage,
)
from src.clinic_sync.resilience.retry import RetryCoordinator
from src.clinic_sync.resilience.signals import (
    InMemoryRetrySignalQueue,
    RedisStreamRetrySignalQueue,
    RetrySignalQueue,
)
from src.clinic_sync.sync.adapters import AdapterRegistry, default_adapters
from src.clinic_sync.sync.config_store import (
    InMemoryProviderConfigStore,
    ProviderConfigStore,
    RedisProviderConfigStore,
)
from src.clinic_sync.sync.conflicts import ConflictResolver
from src.clinic_sync.sync.datastore import Datastore, InMemoryDatastore
from src.clinic_sync.sync.engine import SyncEngine
from src.clinic_sync.sync.registry import ProviderRegistry
from src.clinic_sync.sync.scheduler import APSchedulerTimer, IntervalTimer, SyncScheduler
from src.clinic_sync.sync.schemas import Conflict, Provider, Resolution, SyncReport
from src.clinic_sync.sync.validator import CredentialValidator

logger = structlog.get_logger(__name__)


class SyncService:
    def __init__(
        self,
        registry: ProviderRegistry,
        engine: SyncEngine,
        scheduler: SyncScheduler,
        resolver: ConflictResolver,
        errors: IntegrationErrorHandler,
        validator: CredentialValidator,
        adapters: AdapterRegistry,
        limiter: RateLimiter,
    ) -> None:
        self.registry = registry
        self.engine = engine
        self.scheduler = scheduler
        self.resolver = resolver
        self.errors = errors
        self.validator = validator
        self.adapters = adapters
        self.limiter = limiter
        self._initialized = False

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self.registry.load()
        self.scheduler.start()
        self._initialized = True
        logger.info("sync_service.initialized", providers=len(self.registry.list()))

    async def destroy(self) -> None:
        """Stop timers and drop all provider, conflict and retry state."""
        self.scheduler.stop()
        await self.registry.destroy()
        self.resolver.clear()
        self.errors.coordinator.clear()
        self.errors.clear_history()
        self._initialized = False
        logger.info("sync_service.destroyed")

    # ── Providers ─────────────────────────────────────────────────────────

    def list_providers(self) -> list[Provider]:
        return self.registry.list()

    def get_provider(self, provider_id: str) -> Provider:
        return self.registry.get(provider_id)

    async def register_provider(self, provider: Provider) -> Provider:
        return await self.registry.register(provider)

    async def configure_provider(
        self,
        provider_id: str,
        credentials: dict[str, Any],
        settings: dict[str, Any] | None = None,
    ) -> Provider:
        return await self.registry.configure(provider_id, credentials, settings)

    async def toggle_provider(self, provider_id: str, enabled: bool) -> Provider:
        return await self.registry.toggle(provider_id, enabled)

    async def test_connection(self, provider_id: str) -> bool:
        """Re-probe stored credentials. False when none are stored or the probe fails."""
        provider = self.registry.get(provider_id)
        if provider.credentials is None:
            return False
        outcome = await self.validator.probe(provider, provider.credentials)
        return outcome.ok

    # ── Sync ──────────────────────────────────────────────────────────────

    async def sync_provider(self, provider_id: str) -> SyncReport:
        return await self.scheduler.trigger(provider_id)

    async def trigger_sync(self, provider_id: str | None = None) -> list[SyncReport]:
        """Sync one provider, or every enabled provider in turn.

        With an explicit id, SyncError subclasses propagate. For the
        all-providers sweep they are logged and the sweep moves on.
        """
        if provider_id is not None:
            return [await self.sync_provider(provider_id)]

        reports: list[SyncReport] = []
        for provider in self.registry.enabled():
            try:
                reports.append(await self.sync_provider(provider.id))
            except Exception as exc:
                logger.warning("sync_service.provider_sync_failed", provider_id=provider.id, error=str(exc))
        return reports

    # ── Conflicts ─────────────────────────────────────────────────────────

    def list_pending_conflicts(self, provider_id: str | None = None) -> list[Conflict]:
        return self.resolver.pending(provider_id)

    async def resolve_conflict(self, conflict_id: str, resolution: Resolution) -> Conflict:
        """Apply an operator decision to a pending conflict.

        Raises:
            ConflictNotFound: Unknown conflict id.
            ProviderNotFound: The conflict's provider no longer exists.
        """
        outcome = self.resolver.resolve(conflict_id, resolution)
        provider = self.registry.get(outcome.conflict.provider_id)
        adapter = self.adapters.get(provider.type)
        await self.engine.apply_outcome(provider, adapter, outcome)
        self.resolver.mark_applied(conflict_id)
        logger.info(
            "sync_service.conflict_resolved",
            conflict_id=conflict_id,
            provider_id=provider.id,
            resolution=resolution.value,
        )
        return outcome.conflict

    # ── Diagnostics ───────────────────────────────────────────────────────

    def error_stats(self) -> dict[str, Any]:
        return self.errors.stats()


def build_sync_service(
    settings: Settings,
    datastore: Datastore | None = None,
    redis: aioredis.Redis | None = None,
    timer: IntervalTimer | None = None,
    adapters: AdapterRegistry | None = None,
    client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
    clock: Callable[[], float] = time.time,
) -> SyncService:
    """Wire a SyncService from settings.

    With ``SYNC_STORAGE_BACKEND=redis`` the rate-limit counters, provider
    snapshots and retry signals live in Redis (``redis`` is required);
    otherwise everything stays in process.
    """
    storage: RateLimitStorage
    store: ProviderConfigStore
    signals: RetrySignalQueue
    if settings.SYNC_STORAGE_BACKEND == StorageBackend.redis:
        if redis is None:
            msg = "SYNC_STORAGE_BACKEND=redis requires a Redis client"
            raise ValueError(msg)
        storage = RedisRateLimitStorage(redis)
        store = RedisProviderConfigStore(redis, settings.PROVIDER_CONFIG_KEY)
        signals = RedisStreamRetrySignalQueue(redis, settings.RETRY_STREAM_KEY, settings.RETRY_QUEUE_MAX_ENTRIES)
    else:
        storage = MemoryRateLimitStorage(clock=clock)
        store = InMemoryProviderConfigStore()
        signals = InMemoryRetrySignalQueue(settings.RETRY_QUEUE_MAX_ENTRIES)

    limiter = RateLimiter(
        storage,
        max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        key_prefix=settings.RATE_LIMIT_KEY_PREFIX,
        clock=clock,
    )
    coordinator = RetryCoordinator(
        signals,
        limiter=limiter,
        max_attempts=settings.RETRY_MAX_ATTEMPTS,
        base_delay=settings.RETRY_BASE_DELAY_SECONDS,
        max_entries=settings.RETRY_QUEUE_MAX_ENTRIES,
        clock=clock,
    )
    errors = IntegrationErrorHandler(coordinator, ErrorClassifier(), history_size=settings.ERROR_HISTORY_SIZE)

    adapters = adapters or default_adapters(client_factory, settings.HTTP_TIMEOUT_SECONDS)
    validator = CredentialValidator(adapters, timeout=settings.HTTP_TIMEOUT_SECONDS)
    registry = ProviderRegistry(store, validator)
    resolver = ConflictResolver()
    engine = SyncEngine(
        registry,
        adapters,
        datastore or InMemoryDatastore(),
        resolver,
        errors,
        limiter=limiter,
        call_timeout=settings.HTTP_TIMEOUT_SECONDS,
        match_tolerance_seconds=settings.SYNC_MATCH_TOLERANCE_SECONDS,
        lookback_days=settings.SYNC_LOOKBACK_DAYS,
        lookahead_days=settings.SYNC_LOOKAHEAD_DAYS,
    )
    scheduler = SyncScheduler(
        engine,
        registry,
        timer or APSchedulerTimer(),
        errors,
        signals,
        sweep_interval_seconds=settings.RETRY_SWEEP_INTERVAL_SECONDS,
    )
    registry.attach_scheduler(scheduler)
    return SyncService(registry, engine, scheduler, resolver, errors, validator, adapters, limiter)
