"""Sync engine: one fetch-match-resolve-write pass per provider.

For each configured data type the engine:
1. Fetches external records through the provider's adapter and internal
   records through the Datastore, both inside the sync window.
2. Pairs them (externalId first, then the heuristic rule).
3. Processes matches before creates, each batch in time order:
   - identical pairs count as skipped
   - differing pairs go through the ConflictResolver; non-manual
     resolutions are written immediately
   - unmatched external records are created internally (inbound)
   - unmatched, unlinked internal records are created externally (outbound)
4. Collects record-level failures into SyncResult.errors and carries on.

A fetch failure fails only that data type's step and leaves the provider
in ``error``. Every failure is classified and recorded as it happens; when
the pass ends, one retry is opened per error kind, however many records
failed with it.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

import structlog

from src.clinic_sync.core.monitoring import (
    sync_conflicts_total,
    sync_pass_duration_seconds,
    sync_passes_total,
    sync_records_total,
)
from src.clinic_sync.resilience.classifier import ClassifiedError, ErrorKind
from src.clinic_sync.resilience.handler import IntegrationErrorHandler
from src.clinic_sync.resilience.rate_limiter import RateLimiter, RateLimitExceeded, operation_key
from src.clinic_sync.resilience.signals import RetrySignal
from src.clinic_sync.sync.adapters.base import AdapterRegistry, ProviderAdapter
from src.clinic_sync.sync.conflicts import ConflictOutcome, ConflictResolver
from src.clinic_sync.sync.datastore import Datastore
from src.clinic_sync.sync.errors import ProviderNotEnabled, SyncInProgress, UnsupportedDataType
from src.clinic_sync.sync.matching import Match, MatchKind, build_match_plan
from src.clinic_sync.sync.registry import ProviderRegistry
from src.clinic_sync.sync.schemas import (
    DataType,
    Provider,
    ProviderStatus,
    SyncableEntity,
    SyncReport,
    SyncResult,
    SyncWindow,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def default_window(now: datetime, lookback_days: int = 30, lookahead_days: int = 90) -> SyncWindow:
    return SyncWindow(start=now - timedelta(days=lookback_days), end=now + timedelta(days=lookahead_days))


@dataclass
class _PassFailures:
    """First classified failure per error kind within one pass."""

    retry: RetrySignal | None = None
    by_kind: dict[ErrorKind, ClassifiedError] = field(default_factory=dict)


class SyncEngine:
    """Runs sync passes. At most one pass per provider is in flight.

    Args:
        registry: Provider configuration and status.
        adapters: Adapter lookup by provider type.
        datastore: Internal record store.
        resolver: Conflict policy application and pending list.
        errors: Failure classification and retry hand-off.
        limiter: Optional outbound throttle keyed ``{provider_id}:{operation}``.
        call_timeout: Deadline for each adapter or datastore call, seconds.
        match_tolerance_seconds: Heuristic match time tolerance.
        lookback_days / lookahead_days: Default window around now.
        now: UTC clock.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        adapters: AdapterRegistry,
        datastore: Datastore,
        resolver: ConflictResolver,
        errors: IntegrationErrorHandler,
        limiter: RateLimiter | None = None,
        call_timeout: float = 30.0,
        match_tolerance_seconds: float = 60,
        lookback_days: int = 30,
        lookahead_days: int = 90,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._registry = registry
        self._adapters = adapters
        self._datastore = datastore
        self._resolver = resolver
        self._errors = errors
        self._limiter = limiter
        self._call_timeout = call_timeout
        self._tolerance = match_tolerance_seconds
        self._lookback_days = lookback_days
        self._lookahead_days = lookahead_days
        self._now = now
        self._locks: dict[str, asyncio.Lock] = {}

    def is_running(self, provider_id: str) -> bool:
        lock = self._locks.get(provider_id)
        return lock is not None and lock.locked()

    async def sync_provider(
        self,
        provider_id: str,
        window: SyncWindow | None = None,
        retry: RetrySignal | None = None,
    ) -> SyncReport:
        """Run one pass.

        Args:
            provider_id: Provider to sync.
            window: Override for the default lookback/lookahead window.
            retry: Signal that authorized this pass; failures are then
                reported against it instead of opening a new retry.

        Raises:
            ProviderNotFound: Unknown provider id.
            ProviderNotEnabled: Provider is disabled; no I/O is performed.
            SyncInProgress: A pass for this provider is already running.
        """
        provider = self._registry.get(provider_id)
        if not provider.enabled:
            raise ProviderNotEnabled(provider_id)

        lock = self._locks.setdefault(provider_id, asyncio.Lock())
        if lock.locked():
            raise SyncInProgress(provider_id)

        async with lock:
            return await self._run_pass(provider, window, retry)

    async def _run_pass(
        self,
        provider: Provider,
        window: SyncWindow | None,
        retry: RetrySignal | None,
    ) -> SyncReport:
        started = time.monotonic()
        now = self._now()
        window = window or default_window(now, self._lookback_days, self._lookahead_days)
        await self._registry.set_status(provider.id, ProviderStatus.SYNCING)
        logger.info(
            "sync.pass_started",
            provider_id=provider.id,
            data_types=[d.value for d in provider.settings.data_types],
            retry_attempt=retry.attempt if retry else None,
        )

        results: list[SyncResult] = []
        failures = _PassFailures(retry)
        try:
            for data_type in provider.settings.data_types:
                results.append(await self._sync_data_type(provider, data_type, window, failures))
        finally:
            self._flush_failures(provider, failures)
            fetch_failed = any(not r.success for r in results) or len(results) < len(provider.settings.data_types)
            await self._registry.set_status(
                provider.id,
                ProviderStatus.ERROR if fetch_failed else ProviderStatus.CONNECTED,
                last_sync_at=None if fetch_failed else self._now(),
            )

        elapsed = time.monotonic() - started
        report = SyncReport(provider_id=provider.id, results=results, duration_ms=int(elapsed * 1000))
        sync_passes_total.labels(provider=provider.id, status="success" if report.success else "failed").inc()
        sync_pass_duration_seconds.labels(provider=provider.id).observe(elapsed)
        logger.info("sync.pass_complete", **report.summary())
        return report

    async def _call(self, provider: Provider, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        if self._limiter is not None:
            gate = await self._limiter.check_limit(operation_key(provider.id, operation))
            if not gate.allowed:
                msg = f"Outbound rate limit reached for {provider.id}:{operation}"
                raise RateLimitExceeded(msg, retry_after=gate.retry_after)
        return await asyncio.wait_for(factory(), timeout=self._call_timeout)

    def _report_failure(
        self,
        exc: BaseException,
        provider: Provider,
        failures: _PassFailures,
        **context: Any,
    ) -> None:
        classified = self._errors.record(exc, service=provider.id, context={"provider_id": provider.id, **context})
        failures.by_kind.setdefault(classified.kind, classified)

    def _flush_failures(self, provider: Provider, failures: _PassFailures) -> None:
        """Open at most one retry per error kind for the whole pass.

        A retry pass instead reports back against its signal once, with the
        first retryable failure if there was one.
        """
        if not failures.by_kind:
            return
        classified = list(failures.by_kind.values())
        if failures.retry is not None:
            chosen = next((c for c in classified if c.retryable), classified[0])
            self._errors.route_retry_failure(failures.retry, chosen)
            return
        for item in classified:
            self._errors.route(item)
        logger.debug("sync.failures_flushed", provider_id=provider.id, kinds=[k.value for k in failures.by_kind])

    async def _sync_data_type(
        self,
        provider: Provider,
        data_type: DataType,
        window: SyncWindow,
        failures: _PassFailures,
    ) -> SyncResult:
        started = time.monotonic()
        result = SyncResult(provider_id=provider.id, data_type=data_type)

        try:
            adapter = self._adapters.get(provider.type)
            if not adapter.supports(data_type):
                raise UnsupportedDataType(provider.type.value, data_type.value)
            external = await self._call(
                provider, "fetch", lambda: adapter.fetch_records(provider, data_type, window),
            )
            internal = await asyncio.wait_for(
                self._datastore.query_by_window(data_type, window, provider_id=provider.id),
                timeout=self._call_timeout,
            )
        except Exception as exc:
            result.errors.append(f"Failed to fetch {data_type.value}: {str(exc) or type(exc).__name__}")
            result.duration_ms = int((time.monotonic() - started) * 1000)
            logger.error(
                "sync.fetch_failed",
                provider_id=provider.id,
                data_type=data_type.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if not isinstance(exc, UnsupportedDataType):
                self._report_failure(exc, provider, failures, data_type=data_type.value, operation="fetch")
            return result

        plan = build_match_plan(internal, external, self._tolerance)
        direction = provider.settings.sync_direction

        for match in plan.matches:
            await self._process_match(provider, adapter, match, result, failures)

        if direction.allows_inbound:
            for record in plan.external_only:
                await self._create_internal(provider, record, result, failures)

        if direction.allows_outbound:
            for record in plan.internal_only:
                if record.external_id:
                    continue
                await self._create_external(provider, adapter, record, result, failures)

        result.success = True
        result.duration_ms = int((time.monotonic() - started) * 1000)
        for outcome in ("created", "updated", "skipped"):
            count = getattr(result, f"records_{outcome}")
            if count:
                sync_records_total.labels(provider=provider.id, data_type=data_type.value, outcome=outcome).inc(count)
        if result.errors:
            sync_records_total.labels(
                provider=provider.id, data_type=data_type.value, outcome="failed",
            ).inc(len(result.errors))
        return result

    # ── Record processing ─────────────────────────────────────────────────

    async def _process_match(
        self,
        provider: Provider,
        adapter: ProviderAdapter,
        match: Match,
        result: SyncResult,
        failures: _PassFailures,
    ) -> None:
        internal, external = match.internal, match.external
        result.records_processed += 1
        try:
            if match.kind == MatchKind.HEURISTIC:
                await asyncio.wait_for(
                    self._datastore.update_by_id(
                        internal.entity_type,
                        internal.internal_id,
                        {},
                        external_id=external.external_id,
                        provider_id=provider.id,
                    ),
                    timeout=self._call_timeout,
                )
                internal.external_id = external.external_id
                logger.debug(
                    "sync.record_linked",
                    provider_id=provider.id,
                    internal_id=internal.internal_id,
                    external_id=external.external_id,
                )

            outcome = self._resolver.process(
                provider.id, provider.settings.conflict_resolution_policy, internal, external,
            )
            if outcome is None:
                result.records_skipped += 1
                return

            result.conflicts.append(outcome.conflict)
            sync_conflicts_total.labels(
                provider=provider.id, policy=provider.settings.conflict_resolution_policy.value,
            ).inc()
            if outcome.pending:
                return

            if await self.apply_outcome(provider, adapter, outcome):
                result.records_updated += 1
            else:
                result.records_skipped += 1
        except Exception as exc:
            self._record_error(result, provider, internal.internal_id or external.external_id, "update", exc, failures)

    async def apply_outcome(
        self,
        provider: Provider,
        adapter: ProviderAdapter,
        outcome: ConflictOutcome,
    ) -> bool:
        """Write a resolved conflict's patches, honoring sync direction.

        Returns True when at least one side was written.
        """
        conflict = outcome.conflict
        direction = provider.settings.sync_direction
        wrote = False

        if outcome.internal_patch and direction.allows_inbound:
            await asyncio.wait_for(
                self._datastore.update_by_id(
                    conflict.entity_type, conflict.internal_record.internal_id, outcome.internal_patch,
                ),
                timeout=self._call_timeout,
            )
            conflict.internal_record.fields.update(outcome.internal_patch)
            wrote = True

        if outcome.external_patch and direction.allows_outbound:
            external = conflict.external_record
            updated = external.model_copy(update={"fields": {**external.fields, **outcome.external_patch}})
            await self._call(
                provider, "update", lambda: adapter.update_record(provider, external.external_id, updated),
            )
            external.fields.update(outcome.external_patch)
            wrote = True

        return wrote

    async def _create_internal(
        self,
        provider: Provider,
        record: SyncableEntity,
        result: SyncResult,
        failures: _PassFailures,
    ) -> None:
        result.records_processed += 1
        try:
            internal_id = await asyncio.wait_for(
                self._datastore.insert(
                    record.entity_type,
                    record.fields,
                    external_id=record.external_id,
                    last_modified=record.last_modified,
                    provider_id=provider.id,
                ),
                timeout=self._call_timeout,
            )
            result.records_created += 1
            logger.debug(
                "sync.internal_created",
                provider_id=provider.id,
                internal_id=internal_id,
                external_id=record.external_id,
            )
        except Exception as exc:
            self._record_error(result, provider, record.external_id, "create", exc, failures)

    async def _create_external(
        self,
        provider: Provider,
        adapter: ProviderAdapter,
        record: SyncableEntity,
        result: SyncResult,
        failures: _PassFailures,
    ) -> None:
        result.records_processed += 1
        try:
            external_id = await self._call(provider, "create", lambda: adapter.create_record(provider, record))
            await asyncio.wait_for(
                self._datastore.update_by_id(
                    record.entity_type, record.internal_id, {}, external_id=external_id, provider_id=provider.id,
                ),
                timeout=self._call_timeout,
            )
            result.records_created += 1
            logger.debug(
                "sync.external_created",
                provider_id=provider.id,
                internal_id=record.internal_id,
                external_id=external_id,
            )
        except Exception as exc:
            self._record_error(result, provider, record.internal_id, "create", exc, failures)

    def _record_error(
        self,
        result: SyncResult,
        provider: Provider,
        record_id: str | None,
        operation: str,
        exc: Exception,
        failures: _PassFailures,
    ) -> None:
        reason = str(exc) or type(exc).__name__
        message = f"Failed to {operation} {result.data_type.value} record {record_id}: {reason}"
        result.errors.append(message)
        logger.error(
            "sync.record_failed",
            provider_id=provider.id,
            data_type=result.data_type.value,
            record_id=record_id,
            operation=operation,
            error=str(exc),
        )
        self._report_failure(
            exc, provider, failures, data_type=result.data_type.value, operation=operation, record_id=record_id,
        )
