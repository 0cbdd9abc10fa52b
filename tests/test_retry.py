"""Tests for retry scheduling, the error handler and retry signal queues."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.clinic_sync.resilience.classifier import ClassifiedError, ErrorKind
from src.clinic_sync.resilience.handler import IntegrationErrorHandler
from src.clinic_sync.resilience.rate_limiter import MemoryRateLimitStorage, RateLimiter
from src.clinic_sync.resilience.retry import RetryCoordinator
from src.clinic_sync.resilience.signals import (
    InMemoryRetrySignalQueue,
    RedisStreamRetrySignalQueue,
    RetrySignal,
)


def _make_error(
    service: str = "google-calendar",
    retryable: bool = True,
    retry_after: float | None = None,
    kind: ErrorKind = ErrorKind.SERVICE_UNAVAILABLE,
) -> ClassifiedError:
    return ClassifiedError(
        kind=kind,
        service=service,
        message="boom",
        retryable=retryable,
        retry_after=retry_after,
        context={"provider_id": service},
    )


def _make_coordinator(clock, **kwargs) -> tuple[RetryCoordinator, InMemoryRetrySignalQueue]:
    queue = InMemoryRetrySignalQueue()
    return RetryCoordinator(queue, clock=clock, **kwargs), queue


# ── RetryCoordinator ─────────────────────────────────────────────────────────


class TestBackoff:
    def test_delays_double_per_attempt(self, clock):
        coordinator, _ = _make_coordinator(clock)
        assert [coordinator.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_server_hint_overrides_backoff(self, clock):
        coordinator, _ = _make_coordinator(clock)
        assert coordinator.delay_for(3, retry_after=30) == 30

    @pytest.mark.asyncio
    async def test_attempts_capped_at_max(self, clock):
        """A failure that keeps failing is retried at 1s, 2s, 4s, then dropped."""
        coordinator, queue = _make_coordinator(clock, max_attempts=3)
        entry = coordinator.schedule(_make_error())
        assert entry.attempts == 1
        assert entry.next_retry_at == clock() + 1.0

        delays = []
        for _ in range(3):
            pending = coordinator.pending()
            if not pending:
                break
            delays.append(pending[0].next_retry_at - clock())
            clock.advance(pending[0].next_retry_at - clock())
            [signal] = await coordinator.sweep()
            coordinator.reschedule(signal, _make_error())

        assert delays == [1.0, 2.0, 4.0]
        assert len(coordinator) == 0
        assert len(queue) == 3

    def test_non_retryable_is_not_scheduled(self, clock):
        coordinator, _ = _make_coordinator(clock)
        assert coordinator.schedule(_make_error(retryable=False)) is None
        assert len(coordinator) == 0

    def test_reschedule_drops_when_error_became_permanent(self, clock):
        coordinator, _ = _make_coordinator(clock)
        signal = RetrySignal(retry_key="k", service="svc", kind=ErrorKind.SERVICE_UNAVAILABLE, attempt=1)
        assert coordinator.reschedule(signal, _make_error(retryable=False)) is None
        assert len(coordinator) == 0


class TestSweep:
    @pytest.mark.asyncio
    async def test_only_due_entries_are_emitted(self, clock):
        coordinator, queue = _make_coordinator(clock)
        coordinator.schedule(_make_error())
        clock.advance(0.5)
        assert await coordinator.sweep() == []

        clock.advance(0.5)
        [signal] = await coordinator.sweep()
        assert signal.attempt == 1
        assert signal.service == "google-calendar"
        assert signal.context["provider_id"] == "google-calendar"
        assert signal.retry_key.startswith("google-calendar:ServiceUnavailable:")
        assert len(queue) == 1
        assert len(coordinator) == 0

    @pytest.mark.asyncio
    async def test_limiter_defers_emission(self, clock):
        limiter = RateLimiter(MemoryRateLimitStorage(clock=clock), max_requests=1, window_seconds=60, clock=clock)
        coordinator, queue = _make_coordinator(clock, limiter=limiter)
        coordinator.schedule(_make_error())
        clock.advance(1)
        coordinator.schedule(_make_error())
        clock.advance(5)

        emitted = await coordinator.sweep()
        assert len(emitted) == 1
        [deferred] = coordinator.pending()
        assert deferred.next_retry_at > clock()

    def test_full_queue_evicts_oldest(self, clock):
        coordinator, _ = _make_coordinator(clock, max_entries=2)
        first = coordinator.schedule(_make_error(service="a"))
        clock.advance(1)
        coordinator.schedule(_make_error(service="b"))
        clock.advance(1)
        coordinator.schedule(_make_error(service="c"))

        keys = {e.key for e in coordinator.pending()}
        assert len(keys) == 2
        assert first.key not in keys

    def test_cancel_and_clear(self, clock):
        coordinator, _ = _make_coordinator(clock)
        entry = coordinator.schedule(_make_error())
        assert coordinator.cancel(entry.key) is True
        assert coordinator.cancel(entry.key) is False
        coordinator.schedule(_make_error())
        coordinator.clear()
        assert len(coordinator) == 0


# ── IntegrationErrorHandler ──────────────────────────────────────────────────


class TestErrorHandler:
    def test_retryable_error_is_scheduled(self, clock):
        coordinator, _ = _make_coordinator(clock)
        handler = IntegrationErrorHandler(coordinator)

        classified = handler.handle(TimeoutError("timed out"), "google-calendar", context={"provider_id": "g"})

        assert classified.kind == ErrorKind.NETWORK_TIMEOUT
        [entry] = coordinator.pending()
        assert entry.context == {"provider_id": "g"}
        assert entry.next_retry_at == clock() + 1.0

    def test_auth_failure_goes_to_manual_remediation(self, clock):
        coordinator, _ = _make_coordinator(clock)
        handler = IntegrationErrorHandler(coordinator)

        classified = handler.handle("401 Unauthorized", "google-calendar")

        assert classified.retryable is False
        assert len(coordinator) == 0

    def test_stats_aggregate_history(self, clock):
        coordinator, _ = _make_coordinator(clock)
        handler = IntegrationErrorHandler(coordinator, history_size=3)
        handler.handle("401 Unauthorized", "a")
        handler.handle("timed out", "a")
        handler.handle("timed out", "b")
        clock.advance(1)
        handler.handle("timed out", "b")

        stats = handler.stats()
        assert stats["total_errors"] == 3
        assert stats["by_kind"] == {"NetworkTimeout": 3}
        assert stats["by_service"] == {"a": 1, "b": 2}
        assert stats["pending_retries"] == 3
        assert len(stats["recent"]) == 3

        handler.clear_history()
        assert handler.stats()["total_errors"] == 0

    def test_retry_failure_reschedules_next_attempt(self, clock):
        coordinator, _ = _make_coordinator(clock)
        handler = IntegrationErrorHandler(coordinator)
        signal = RetrySignal(
            retry_key="svc:ServiceUnavailable:1",
            service="svc",
            kind=ErrorKind.SERVICE_UNAVAILABLE,
            attempt=2,
            context={"provider_id": "svc"},
        )

        handler.handle_retry_failure(signal, "upstream 500")

        [entry] = coordinator.pending()
        assert entry.key == signal.retry_key
        assert entry.attempts == 3
        assert entry.next_retry_at == clock() + 4.0

    @pytest.mark.asyncio
    async def test_repeated_timeouts_follow_exponential_backoff(self, clock):
        """Timeouts carry no server hint, so the 1s base delay doubles per attempt."""
        coordinator, queue = _make_coordinator(clock, base_delay=1.0, max_attempts=3)
        handler = IntegrationErrorHandler(coordinator)
        handler.handle(asyncio.TimeoutError(), "google-calendar", context={"provider_id": "google-calendar"})

        delays = []
        while coordinator.pending():
            [entry] = coordinator.pending()
            delays.append(entry.next_retry_at - clock())
            clock.advance(entry.next_retry_at - clock())
            [signal] = await coordinator.sweep()
            handler.handle_retry_failure(signal, asyncio.TimeoutError())

        assert delays == [1.0, 2.0, 4.0]
        assert len(queue) == 3

    def test_timeout_hint_is_advisory(self, clock):
        coordinator, _ = _make_coordinator(clock)
        handler = IntegrationErrorHandler(coordinator)

        classified = handler.handle(asyncio.TimeoutError(), "google-calendar")

        assert classified.retry_after is None
        assert classified.default_delay == 5.0
        [entry] = coordinator.pending()
        assert entry.next_retry_at == clock() + coordinator.base_delay


# ── Signal queues ────────────────────────────────────────────────────────────


class TestSignalQueues:
    @pytest.mark.asyncio
    async def test_in_memory_queue_is_fifo(self):
        queue = InMemoryRetrySignalQueue()
        for n in range(3):
            await queue.publish(RetrySignal(retry_key=f"k{n}", service="s", kind=ErrorKind.RATE_LIMITED, attempt=1))

        assert [s.retry_key for s in await queue.peek(2)] == ["k0", "k1"]
        assert [s.retry_key for s in await queue.pop(2)] == ["k0", "k1"]
        assert len(queue) == 1

    def test_stream_dict_round_trip_keeps_context(self):
        signal = RetrySignal(
            retry_key="k", service="s", kind=ErrorKind.NETWORK_TIMEOUT, attempt=2, context={"provider_id": "p"},
        )
        restored = RetrySignal.from_stream_dict(signal.to_stream_dict())
        assert restored == signal

    @pytest.mark.asyncio
    async def test_redis_stream_publish_and_pop(self):
        signal = RetrySignal(retry_key="k", service="s", kind=ErrorKind.NETWORK_TIMEOUT, attempt=1)
        redis = MagicMock()
        redis.xadd = AsyncMock(return_value="1-0")
        redis.xrange = AsyncMock(return_value=[("1-0", signal.to_stream_dict())])
        redis.xdel = AsyncMock()
        queue = RedisStreamRetrySignalQueue(redis, stream_key="sync:retries", maxlen=10)

        assert await queue.publish(signal) == "1-0"
        redis.xadd.assert_awaited_once_with("sync:retries", signal.to_stream_dict(), maxlen=10, approximate=True)

        [popped] = await queue.pop()
        assert popped.retry_key == "k"
        redis.xdel.assert_awaited_once_with("sync:retries", "1-0")
