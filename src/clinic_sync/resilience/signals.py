"""Retry-ready signals and the queues that carry them.

The RetryCoordinator publishes a RetrySignal when a scheduled retry falls
due; whoever owns the failed operation consumes the signal and re-runs it.
Scheduling and execution never share a call stack.

Stream key for the Redis backend: ``{stream_key}`` (default ``sync:retries``).
"""

from __future__ import annotations

import json
import uuid
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, Field

from src.clinic_sync.resilience.classifier import ErrorKind

logger = structlog.get_logger(__name__)


class RetrySignal(BaseModel):
    """A due retry for a previously failed operation.

    Attributes:
        signal_id: Unique identifier (auto-generated UUID4).
        retry_key: Coordinator key, ``{service}:{kind}:{enqueued_at}``.
        service: Service tag the failure came from (provider id for sync).
        kind: Classified error kind.
        attempt: Which attempt this signal authorizes (1-based).
        message: Original failure message.
        context: Caller context captured at failure time.
        emitted_at: UTC time the signal was published.
    """

    signal_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    retry_key: str
    service: str
    kind: ErrorKind
    attempt: int
    message: str = ""
    context: dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_stream_dict(self) -> dict[str, str]:
        """Flat string dict for XADD."""
        return {
            "signal_id": self.signal_id,
            "retry_key": self.retry_key,
            "service": self.service,
            "kind": self.kind.value,
            "attempt": str(self.attempt),
            "message": self.message,
            "context": json.dumps(self.context, default=str),
            "emitted_at": self.emitted_at.isoformat(),
        }

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> RetrySignal:
        return cls(
            signal_id=raw["signal_id"],
            retry_key=raw["retry_key"],
            service=raw["service"],
            kind=ErrorKind(raw["kind"]),
            attempt=int(raw["attempt"]),
            message=raw.get("message", ""),
            context=json.loads(raw["context"]) if raw.get("context") else {},
            emitted_at=datetime.fromisoformat(raw["emitted_at"]),
        )


class RetrySignalQueue(ABC):
    """Ordered queue of retry signals."""

    @abstractmethod
    async def publish(self, signal: RetrySignal) -> str:
        """Append a signal. Returns a queue-assigned message id."""

    @abstractmethod
    async def peek(self, count: int = 50) -> list[RetrySignal]:
        """Return up to ``count`` oldest signals without removing them."""

    @abstractmethod
    async def pop(self, count: int = 50) -> list[RetrySignal]:
        """Remove and return up to ``count`` oldest signals."""


class InMemoryRetrySignalQueue(RetrySignalQueue):
    """Process-local queue; contents are inspectable in tests."""

    def __init__(self, maxlen: int = 1000) -> None:
        self._items: deque[RetrySignal] = deque(maxlen=maxlen)

    async def publish(self, signal: RetrySignal) -> str:
        self._items.append(signal)
        return signal.signal_id

    async def peek(self, count: int = 50) -> list[RetrySignal]:
        return list(self._items)[:count]

    async def pop(self, count: int = 50) -> list[RetrySignal]:
        popped: list[RetrySignal] = []
        while self._items and len(popped) < count:
            popped.append(self._items.popleft())
        return popped

    def __len__(self) -> int:
        return len(self._items)


class RedisStreamRetrySignalQueue(RetrySignalQueue):
    """Queue backed by a Redis Stream shared across instances.

    Args:
        redis: Raw async Redis client.
        stream_key: Stream holding the signals.
        maxlen: Approximate trim length applied on every XADD.
    """

    def __init__(self, redis: aioredis.Redis, stream_key: str = "sync:retries", maxlen: int = 1000) -> None:
        self._redis = redis
        self._stream_key = stream_key
        self._maxlen = maxlen

    async def publish(self, signal: RetrySignal) -> str:
        message_id = await self._redis.xadd(
            self._stream_key,
            signal.to_stream_dict(),
            maxlen=self._maxlen,
            approximate=True,
        )
        logger.debug(
            "retry.signal_published",
            stream=self._stream_key,
            service=signal.service,
            kind=signal.kind.value,
            message_id=message_id,
        )
        return message_id

    async def peek(self, count: int = 50) -> list[RetrySignal]:
        entries = await self._redis.xrange(self._stream_key, count=count)
        return [RetrySignal.from_stream_dict(data) for _id, data in entries]

    async def pop(self, count: int = 50) -> list[RetrySignal]:
        entries = await self._redis.xrange(self._stream_key, count=count)
        if not entries:
            return []
        await self._redis.xdel(self._stream_key, *[message_id for message_id, _ in entries])
        return [RetrySignal.from_stream_dict(data) for _id, data in entries]
