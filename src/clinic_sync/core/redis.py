"""Shared Redis connection pool.

Used by the multi-instance backends: rate-limit counters, the provider
configuration snapshot and the retry signal stream. Only opened when
``SYNC_STORAGE_BACKEND=redis``.
"""

from __future__ import annotations

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from src.clinic_sync.config import get_settings

logger = structlog.get_logger(__name__)

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Lazily create the process-wide client (string responses, bounded timeouts)."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=settings.HTTP_TIMEOUT_SECONDS,
            socket_connect_timeout=settings.HTTP_TIMEOUT_SECONDS,
        )
    return _redis_pool


async def ping_redis() -> tuple[bool, str | None]:
    """Readiness probe: (reachable, error message)."""
    try:
        return bool(await get_redis_pool().ping()), None
    except (RedisError, OSError) as exc:
        logger.warning("redis.ping_failed", error=str(exc))
        return False, str(exc)


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None
