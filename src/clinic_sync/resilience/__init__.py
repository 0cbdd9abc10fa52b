"""Resilience layer shared by every outbound integration.

Exports:
    RateLimiter: Windowed hit counter over pluggable storage (fails open).
    ErrorClassifier: Maps raw failures to ErrorKind with retryability.
    RetryCoordinator: Backoff scheduling that emits RetrySignal messages.
    IntegrationErrorHandler: Classify, log, record and route a failure.
"""

from __future__ import annotations

from src.clinic_sync.resilience.classifier import ClassifiedError, ErrorClassifier, ErrorKind
from src.clinic_sync.resilience.handler import IntegrationErrorHandler
from src.clinic_sync.resilience.rate_limiter import (
    MemoryRateLimitStorage,
    RateLimiter,
    RateLimitExceeded,
    RateLimitResult,
    RedisRateLimitStorage,
)
from src.clinic_sync.resilience.retry import RetryCoordinator, RetryEntry
from src.clinic_sync.resilience.signals import (
    InMemoryRetrySignalQueue,
    RedisStreamRetrySignalQueue,
    RetrySignal,
)

__all__ = [
    "ClassifiedError",
    "ErrorClassifier",
    "ErrorKind",
    "InMemoryRetrySignalQueue",
    "IntegrationErrorHandler",
    "MemoryRateLimitStorage",
    "RateLimitExceeded",
    "RateLimitResult",
    "RateLimiter",
    "RedisRateLimitStorage",
    "RedisStreamRetrySignalQueue",
    "RetryCoordinator",
    "RetryEntry",
    "RetrySignal",
]
