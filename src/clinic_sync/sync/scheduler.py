"""Timer-driven and on-demand sync triggers.

SyncScheduler keeps one interval job per enabled provider (interval = the
provider's sync frequency) and one retry-sweep job. Timer fires and
operator triggers share the same SyncEngine entry point.

Timers sit behind the IntervalTimer interface: APSchedulerTimer in
production, a manually fired timer in tests.

Retry path: the sweep job runs RetryCoordinator.sweep(), then drains the
RetrySignalQueue and starts an on-demand pass for every signal whose
context names a provider.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.clinic_sync.resilience.handler import IntegrationErrorHandler
from src.clinic_sync.resilience.retry import RetryCoordinator
from src.clinic_sync.resilience.signals import RetrySignalQueue
from src.clinic_sync.sync.engine import SyncEngine
from src.clinic_sync.sync.errors import ProviderNotEnabled, ProviderNotFound, SyncError, SyncInProgress
from src.clinic_sync.sync.registry import ProviderRegistry
from src.clinic_sync.sync.schemas import Provider, SyncReport

logger = structlog.get_logger(__name__)

JobFn = Callable[[], Awaitable[None]]

RETRY_SWEEP_JOB = "retry-sweep"


def provider_job_key(provider_id: str) -> str:
    return f"sync:{provider_id}"


class IntervalTimer(ABC):
    @abstractmethod
    def start(self, key: str, interval_seconds: float, fn: JobFn) -> None:
        """Run ``fn`` every ``interval_seconds``; replaces an existing ``key``."""

    @abstractmethod
    def stop(self, key: str) -> None:
        """Cancel future firings of ``key``. Unknown keys are ignored."""

    @abstractmethod
    def stop_all(self) -> None: ...


class APSchedulerTimer(IntervalTimer):
    """IntervalTimer on an AsyncIOScheduler, started lazily on first job."""

    def __init__(self, scheduler: AsyncIOScheduler | None = None) -> None:
        self._scheduler = scheduler or AsyncIOScheduler()

    def start(self, key: str, interval_seconds: float, fn: JobFn) -> None:
        self._scheduler.add_job(
            fn,
            trigger=IntervalTrigger(seconds=interval_seconds),
            id=key,
            name=key,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=max(1, int(interval_seconds)),
        )
        if not self._scheduler.running:
            self._scheduler.start()

    def stop(self, key: str) -> None:
        try:
            self._scheduler.remove_job(key)
        except JobLookupError:
            pass

    def stop_all(self) -> None:
        if self._scheduler.running:
            self._scheduler.remove_all_jobs()
            self._scheduler.shutdown(wait=False)


class SyncScheduler:
    """Owns provider timers and the retry sweep.

    Args:
        engine: Runs passes.
        registry: Source of enabled providers.
        timer: Interval timer implementation.
        errors: Error handler whose coordinator is swept.
        signals: Queue the coordinator publishes to.
        sweep_interval_seconds: Retry sweep period.
    """

    def __init__(
        self,
        engine: SyncEngine,
        registry: ProviderRegistry,
        timer: IntervalTimer,
        errors: IntegrationErrorHandler,
        signals: RetrySignalQueue,
        sweep_interval_seconds: float = 30,
    ) -> None:
        self._engine = engine
        self._registry = registry
        self._timer = timer
        self._errors = errors
        self._signals = signals
        self._sweep_interval = sweep_interval_seconds
        self._scheduled: set[str] = set()

    @property
    def coordinator(self) -> RetryCoordinator:
        return self._errors.coordinator

    @property
    def scheduled(self) -> frozenset[str]:
        return frozenset(self._scheduled)

    def start(self) -> None:
        self._timer.start(RETRY_SWEEP_JOB, self._sweep_interval, self.sweep_retries)
        for provider in self._registry.enabled():
            self.schedule(provider)
        logger.info("scheduler.started", providers=sorted(self._scheduled), sweep_seconds=self._sweep_interval)

    def stop(self) -> None:
        self._timer.stop_all()
        self._scheduled.clear()
        logger.info("scheduler.stopped")

    def schedule(self, provider: Provider) -> None:
        minutes = provider.settings.sync_frequency_minutes
        if not provider.enabled or minutes <= 0:
            self.unschedule(provider.id)
            return

        provider_id = provider.id

        async def _fire() -> None:
            await self._run_scheduled(provider_id)

        self._timer.start(provider_job_key(provider_id), minutes * 60, _fire)
        self._scheduled.add(provider_id)
        logger.info("scheduler.provider_scheduled", provider_id=provider_id, interval_minutes=minutes)

    def unschedule(self, provider_id: str) -> None:
        self._timer.stop(provider_job_key(provider_id))
        if provider_id in self._scheduled:
            self._scheduled.discard(provider_id)
            logger.info("scheduler.provider_unscheduled", provider_id=provider_id)

    async def trigger(self, provider_id: str) -> SyncReport:
        """On-demand pass. Propagates SyncError subclasses to the caller."""
        return await self._engine.sync_provider(provider_id)

    async def _run_scheduled(self, provider_id: str) -> None:
        try:
            await self._engine.sync_provider(provider_id)
        except SyncInProgress:
            logger.info("scheduler.tick_skipped", provider_id=provider_id, reason="pass in flight")
        except SyncError as exc:
            logger.warning("scheduler.tick_rejected", provider_id=provider_id, error=str(exc))
        except Exception:
            logger.exception("scheduler.tick_failed", provider_id=provider_id)

    # ── Retry path ────────────────────────────────────────────────────────

    async def sweep_retries(self) -> None:
        try:
            await self.coordinator.sweep()
            await self.drain_retry_signals()
        except Exception:
            logger.exception("scheduler.retry_sweep_failed")

    async def drain_retry_signals(self, batch_size: int = 50) -> int:
        """Consume queued retry signals; returns how many passes ran."""
        ran = 0
        for signal in await self._signals.pop(batch_size):
            provider_id = signal.context.get("provider_id")
            if not provider_id:
                logger.debug("scheduler.retry_signal_ignored", retry_key=signal.retry_key, service=signal.service)
                continue
            try:
                await self._engine.sync_provider(provider_id, retry=signal)
                ran += 1
            except (ProviderNotFound, ProviderNotEnabled) as exc:
                logger.info("scheduler.retry_dropped", retry_key=signal.retry_key, reason=str(exc))
            except SyncInProgress as exc:
                self._errors.handle_retry_failure(signal, exc)
        return ran
