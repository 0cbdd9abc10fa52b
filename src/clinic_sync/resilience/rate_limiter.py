"""Windowed rate limiter with pluggable storage.

Counts hits per key inside a window anchored at the key's first hit, using
INCR + EXPIRE so the same algorithm works against the in-process store and
a shared Redis for multi-instance deployments. Keys are composite strings:
caller identity (ip + session + user agent) or (service, operation).

Storage faults fail open: the request is allowed and the fault is logged.

Usage:
    limiter = RateLimiter(RedisRateLimitStorage(redis), max_requests=60, window_seconds=60)
    result = await limiter.check_limit(operation_key("google-calendar", "fetch"))
    if not result.allowed:
        ...  # back off for result.retry_after seconds
"""

from __future__ import annotations

import base64
import math
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

import redis.asyncio as aioredis
import structlog

from src.clinic_sync.core.monitoring import rate_limit_decisions_total

logger = structlog.get_logger(__name__)


class RateLimitExceeded(Exception):
    """Raised by callers that turn a denied check into a failure."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


@dataclass
class RateLimitResult:
    """Result of a rate limit check. ``reset_time`` is epoch seconds."""

    allowed: bool
    remaining: int
    reset_time: float
    total_hits: int
    retry_after: int | None = None


@dataclass(frozen=True)
class RateLimitPreset:
    max_requests: int
    window_seconds: int


PRESETS: dict[str, RateLimitPreset] = {
    "strict": RateLimitPreset(max_requests=50, window_seconds=15 * 60),
    "moderate": RateLimitPreset(max_requests=100, window_seconds=15 * 60),
    "lenient": RateLimitPreset(max_requests=200, window_seconds=15 * 60),
    "api": RateLimitPreset(max_requests=60, window_seconds=60),
    "login": RateLimitPreset(max_requests=5, window_seconds=15 * 60),
    "webhook": RateLimitPreset(max_requests=1000, window_seconds=60),
    "upload": RateLimitPreset(max_requests=10, window_seconds=60),
}


def client_key(ip: str | None, session_id: str | None = None, user_agent: str | None = None) -> str:
    """Composite key for a caller: ip, session and a short user-agent fingerprint."""
    agent = base64.b64encode((user_agent or "").encode()).decode()[:10]
    return f"{ip or 'unknown'}:{session_id or ''}:{agent}"


def operation_key(service: str, operation: str) -> str:
    """Composite key for an outbound call to ``service``."""
    return f"{service}:{operation}"


# ── Storage backends ────────────────────────────────────────────────────────


class RateLimitStorage(ABC):
    """Key/value operations the limiter needs. TTLs are in seconds."""

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None: ...

    @abstractmethod
    async def increment(self, key: str) -> int: ...

    @abstractmethod
    async def expire(self, key: str, ttl_seconds: float) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...


class MemoryRateLimitStorage(RateLimitStorage):
    """In-process storage. Single instance only.

    Expired entries are dropped lazily on read and by ``prune()``, which
    runs automatically every ``prune_interval`` seconds of clock time.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        prune_interval: float = 60.0,
    ) -> None:
        self._clock = clock
        self._store: dict[str, tuple[str, float | None]] = {}
        self._prune_interval = prune_interval
        self._last_prune = clock()

    def _maybe_prune(self) -> None:
        if self._clock() - self._last_prune >= self._prune_interval:
            self.prune()

    def prune(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, (_, exp) in self._store.items() if exp is not None and now >= exp]
        for key in expired:
            del self._store[key]
        self._last_prune = now
        return len(expired)

    async def get(self, key: str) -> str | None:
        self._maybe_prune()
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expiry = entry
        if expiry is not None and self._clock() >= expiry:
            del self._store[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        expiry = self._clock() + ttl_seconds if ttl_seconds else None
        self._store[key] = (value, expiry)

    async def increment(self, key: str) -> int:
        current = await self.get(key)
        new_value = int(current) + 1 if current else 1
        expiry = self._store[key][1] if current else None
        self._store[key] = (str(new_value), expiry)
        return new_value

    async def expire(self, key: str, ttl_seconds: float) -> None:
        entry = self._store.get(key)
        if entry is not None:
            self._store[key] = (entry[0], self._clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def __len__(self) -> int:
        return len(self._store)


class RedisRateLimitStorage(RateLimitStorage):
    """Shared storage on Redis. Errors are logged and re-raised for the limiter."""

    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    async def get(self, key: str) -> str | None:
        try:
            return await self._redis.get(key)
        except aioredis.RedisError as exc:
            logger.error("rate_limiter.redis_get_failed", key=key, error=str(exc))
            raise

    async def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        try:
            if ttl_seconds:
                await self._redis.set(key, value, px=int(ttl_seconds * 1000))
            else:
                await self._redis.set(key, value)
        except aioredis.RedisError as exc:
            logger.error("rate_limiter.redis_set_failed", key=key, error=str(exc))
            raise

    async def increment(self, key: str) -> int:
        try:
            return int(await self._redis.incr(key))
        except aioredis.RedisError as exc:
            logger.error("rate_limiter.redis_incr_failed", key=key, error=str(exc))
            raise

    async def expire(self, key: str, ttl_seconds: float) -> None:
        try:
            await self._redis.pexpire(key, int(ttl_seconds * 1000))
        except aioredis.RedisError as exc:
            logger.error("rate_limiter.redis_expire_failed", key=key, error=str(exc))
            raise

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except aioredis.RedisError as exc:
            logger.error("rate_limiter.redis_delete_failed", key=key, error=str(exc))
            raise


# ── Limiter ─────────────────────────────────────────────────────────────────


class RateLimiter:
    """Per-key hit counter over a fixed-length window.

    Args:
        storage: Backend holding counters and window reset times.
        max_requests: Hits allowed per window.
        window_seconds: Window length.
        key_prefix: Namespace prepended to every key.
        clock: Epoch-seconds clock; injected for deterministic tests.
    """

    def __init__(
        self,
        storage: RateLimitStorage,
        max_requests: int,
        window_seconds: float,
        key_prefix: str = "rate_limit:",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._prefix = key_prefix
        self._clock = clock

    @classmethod
    def from_preset(
        cls,
        preset: str,
        storage: RateLimitStorage,
        **kwargs,
    ) -> RateLimiter:
        cfg = PRESETS[preset]
        return cls(storage, cfg.max_requests, cfg.window_seconds, **kwargs)

    def _keys(self, key: str) -> tuple[str, str]:
        full = self._prefix + key
        return full, f"{full}:reset"

    async def check_limit(self, key: str) -> RateLimitResult:
        """Record one hit for ``key`` and report whether it is allowed."""
        count_key, reset_key = self._keys(key)
        now = self._clock()
        try:
            count = await self._storage.increment(count_key)
            if count == 1:
                reset_time = now + self.window_seconds
                await self._storage.expire(count_key, self.window_seconds)
                await self._storage.set(reset_key, repr(reset_time), self.window_seconds)
            else:
                stored = await self._storage.get(reset_key)
                if stored is None:
                    # Counter outlived its reset marker; re-anchor the window.
                    reset_time = now + self.window_seconds
                    await self._storage.expire(count_key, self.window_seconds)
                    await self._storage.set(reset_key, repr(reset_time), self.window_seconds)
                else:
                    reset_time = float(stored)
        except Exception as exc:
            logger.error("rate_limiter.check_failed", key=key, error=str(exc))
            rate_limit_decisions_total.labels(allowed="fail_open").inc()
            return RateLimitResult(
                allowed=True,
                remaining=self.max_requests,
                reset_time=now + self.window_seconds,
                total_hits=0,
            )

        allowed = count <= self.max_requests
        remaining = max(0, self.max_requests - count)
        retry_after = None
        if not allowed:
            retry_after = max(1, math.ceil(reset_time - now))
            logger.warning(
                "rate_limiter.limit_exceeded",
                key=key,
                count=count,
                limit=self.max_requests,
                window_seconds=self.window_seconds,
            )
        rate_limit_decisions_total.labels(allowed=str(allowed).lower()).inc()

        return RateLimitResult(
            allowed=allowed,
            remaining=remaining,
            reset_time=reset_time,
            total_hits=count,
            retry_after=retry_after,
        )

    async def get_status(self, key: str) -> RateLimitResult | None:
        """Current state for ``key`` without recording a hit. None on storage fault."""
        count_key, reset_key = self._keys(key)
        now = self._clock()
        try:
            raw_count = await self._storage.get(count_key)
            raw_reset = await self._storage.get(reset_key)
        except Exception as exc:
            logger.error("rate_limiter.status_failed", key=key, error=str(exc))
            return None

        if raw_count is None or raw_reset is None or float(raw_reset) <= now:
            return RateLimitResult(
                allowed=True,
                remaining=self.max_requests,
                reset_time=now + self.window_seconds,
                total_hits=0,
            )

        count = int(raw_count)
        reset_time = float(raw_reset)
        allowed = count < self.max_requests
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, self.max_requests - count),
            reset_time=reset_time,
            total_hits=count,
            retry_after=None if allowed else max(1, math.ceil(reset_time - now)),
        )

    async def reset(self, key: str) -> None:
        """Forget all hits for ``key``."""
        count_key, reset_key = self._keys(key)
        await self._storage.delete(count_key)
        await self._storage.delete(reset_key)
        logger.info("rate_limiter.reset", key=key)
