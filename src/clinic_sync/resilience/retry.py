"""Backoff-governed retry scheduling.

The coordinator tracks retryable failures keyed by
``{service}:{kind}:{enqueued_at_ms}`` and, when swept, publishes a
RetrySignal for each item that has fallen due. It never re-invokes the
failed operation: the signal's consumer does that, and reports a repeat
failure back through ``reschedule``.

Delay for attempt ``n``: the server-provided retry-after when present,
else ``base_delay * 2 ** (n - 1)``. Attempts past ``max_attempts`` are
dropped with a warning.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from src.clinic_sync.core.monitoring import retry_events_total
from src.clinic_sync.resilience.classifier import ClassifiedError, ErrorKind
from src.clinic_sync.resilience.rate_limiter import RateLimiter
from src.clinic_sync.resilience.signals import RetrySignal, RetrySignalQueue

logger = structlog.get_logger(__name__)


@dataclass
class RetryEntry:
    key: str
    service: str
    kind: ErrorKind
    message: str
    attempts: int
    next_retry_at: float
    enqueued_at: float
    context: dict[str, Any] = field(default_factory=dict)


class RetryCoordinator:
    """Bounded retry queue with exponential backoff.

    Args:
        signals: Queue that receives a RetrySignal per due item.
        limiter: Optional limiter gating emission per service
            (key ``retry:{service}``). Denied items are deferred.
        max_attempts: Attempts allowed per item before it is dropped.
        base_delay: Seconds before attempt 1; doubles per attempt.
        max_entries: Upper bound on tracked items; the oldest is evicted.
        clock: Epoch-seconds clock.
    """

    def __init__(
        self,
        signals: RetrySignalQueue,
        limiter: RateLimiter | None = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._signals = signals
        self._limiter = limiter
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, RetryEntry] = {}

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        if retry_after is not None:
            return retry_after
        return self.base_delay * (2 ** (attempt - 1))

    def schedule(
        self,
        error: ClassifiedError,
        context: dict[str, Any] | None = None,
    ) -> RetryEntry | None:
        """Track a fresh retryable failure as attempt 1.

        Returns the queued entry, or None when the error is not retryable.
        """
        if not error.retryable:
            logger.debug("retry.not_retryable", service=error.service, kind=error.kind.value)
            return None
        now = self._clock()
        key = f"{error.service}:{error.kind.value}:{int(now * 1000)}"
        merged = {**error.context, **(context or {})}
        return self._enqueue(key, error, merged, attempts=1, enqueued_at=now)

    def reschedule(self, signal: RetrySignal, error: ClassifiedError) -> RetryEntry | None:
        """Record that the retry authorized by ``signal`` failed again."""
        if not error.retryable:
            logger.warning(
                "retry.became_permanent",
                retry_key=signal.retry_key,
                service=signal.service,
                kind=error.kind.value,
            )
            retry_events_total.labels(service=signal.service, outcome="dropped").inc()
            return None
        return self._enqueue(
            signal.retry_key,
            error,
            dict(signal.context),
            attempts=signal.attempt + 1,
            enqueued_at=self._clock(),
        )

    def _enqueue(
        self,
        key: str,
        error: ClassifiedError,
        context: dict[str, Any],
        attempts: int,
        enqueued_at: float,
    ) -> RetryEntry | None:
        if attempts > self.max_attempts:
            self._entries.pop(key, None)
            logger.warning(
                "retry.max_attempts_exceeded",
                retry_key=key,
                service=error.service,
                kind=error.kind.value,
                attempts=attempts - 1,
                error=error.message,
            )
            retry_events_total.labels(service=error.service, outcome="dropped").inc()
            return None

        if key not in self._entries and len(self._entries) >= self._max_entries:
            self._evict_oldest()

        delay = self.delay_for(attempts, error.retry_after)
        entry = RetryEntry(
            key=key,
            service=error.service,
            kind=error.kind,
            message=error.message,
            attempts=attempts,
            next_retry_at=self._clock() + delay,
            enqueued_at=enqueued_at,
            context=context,
        )
        self._entries[key] = entry
        retry_events_total.labels(service=error.service, outcome="scheduled").inc()
        logger.info(
            "retry.scheduled",
            retry_key=key,
            service=error.service,
            kind=error.kind.value,
            attempt=attempts,
            delay_seconds=delay,
        )
        return entry

    def _evict_oldest(self) -> None:
        oldest = min(self._entries.values(), key=lambda e: e.enqueued_at)
        del self._entries[oldest.key]
        logger.warning("retry.queue_full_evicted", retry_key=oldest.key, service=oldest.service)
        retry_events_total.labels(service=oldest.service, outcome="dropped").inc()

    async def sweep(self) -> list[RetrySignal]:
        """Emit a signal for every due item. Returns the emitted signals."""
        now = self._clock()
        due = sorted(
            (e for e in self._entries.values() if e.next_retry_at <= now),
            key=lambda e: e.next_retry_at,
        )
        emitted: list[RetrySignal] = []
        for entry in due:
            if self._limiter is not None:
                gate = await self._limiter.check_limit(f"retry:{entry.service}")
                if not gate.allowed:
                    entry.next_retry_at = now + (gate.retry_after or 1)
                    retry_events_total.labels(service=entry.service, outcome="deferred").inc()
                    logger.info(
                        "retry.deferred",
                        retry_key=entry.key,
                        service=entry.service,
                        retry_after=gate.retry_after,
                    )
                    continue

            signal = RetrySignal(
                retry_key=entry.key,
                service=entry.service,
                kind=entry.kind,
                attempt=entry.attempts,
                message=entry.message,
                context=entry.context,
            )
            await self._signals.publish(signal)
            del self._entries[entry.key]
            emitted.append(signal)
            retry_events_total.labels(service=entry.service, outcome="emitted").inc()

        if emitted:
            logger.info("retry.sweep_complete", emitted=len(emitted), pending=len(self._entries))
        return emitted

    def prune(self) -> int:
        """Drop entries over the attempt cap and enforce the size bound."""
        stale = [k for k, e in self._entries.items() if e.attempts > self.max_attempts]
        for key in stale:
            del self._entries[key]
        removed = len(stale)
        while len(self._entries) > self._max_entries:
            self._evict_oldest()
            removed += 1
        return removed

    def cancel(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def pending(self) -> list[RetryEntry]:
        return sorted(self._entries.values(), key=lambda e: e.next_retry_at)

    def __len__(self) -> int:
        return len(self._entries)
