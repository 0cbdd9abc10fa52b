"""Provider configuration persistence.

Stores one JSON snapshot per provider. Snapshots come from
``Provider.snapshot()`` and therefore never carry credentials.

Redis layout: hash ``{key}`` (default ``sync:providers``), field = provider id.
"""

from __future__ import annotations

import copy
import json
from abc import ABC, abstractmethod
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = structlog.get_logger(__name__)

_redis_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
    reraise=True,
)


class ProviderConfigStore(ABC):
    @abstractmethod
    async def load_all(self) -> dict[str, dict[str, Any]]:
        """Return every stored snapshot keyed by provider id."""

    @abstractmethod
    async def save(self, snapshot: dict[str, Any]) -> None:
        """Upsert one snapshot (keyed by its ``id``)."""

    @abstractmethod
    async def delete(self, provider_id: str) -> None: ...

    @abstractmethod
    async def clear(self) -> None: ...


class InMemoryProviderConfigStore(ProviderConfigStore):
    def __init__(self) -> None:
        self._snapshots: dict[str, dict[str, Any]] = {}

    async def load_all(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._snapshots)

    async def save(self, snapshot: dict[str, Any]) -> None:
        self._snapshots[snapshot["id"]] = copy.deepcopy(snapshot)

    async def delete(self, provider_id: str) -> None:
        self._snapshots.pop(provider_id, None)

    async def clear(self) -> None:
        self._snapshots.clear()


class RedisProviderConfigStore(ProviderConfigStore):
    """Hash-backed store shared across instances.

    Writes retry on connection/timeout errors (3 attempts, exponential
    backoff) before the error reaches the registry.
    """

    def __init__(self, redis: aioredis.Redis, key: str = "sync:providers") -> None:
        self._redis = redis
        self._key = key

    @_redis_retry
    async def load_all(self) -> dict[str, dict[str, Any]]:
        raw = await self._redis.hgetall(self._key)
        snapshots: dict[str, dict[str, Any]] = {}
        for provider_id, payload in raw.items():
            try:
                snapshots[provider_id] = json.loads(payload)
            except json.JSONDecodeError:
                logger.warning("config_store.corrupt_snapshot", key=self._key, provider_id=provider_id)
        return snapshots

    @_redis_retry
    async def save(self, snapshot: dict[str, Any]) -> None:
        await self._redis.hset(self._key, snapshot["id"], json.dumps(snapshot, default=str))
        logger.debug("config_store.saved", key=self._key, provider_id=snapshot["id"])

    @_redis_retry
    async def delete(self, provider_id: str) -> None:
        await self._redis.hdel(self._key, provider_id)

    @_redis_retry
    async def clear(self) -> None:
        await self._redis.delete(self._key)
