"""Shared httpx plumbing for REST-style provider adapters."""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime
from typing import Any

import httpx
import structlog

from src.clinic_sync.sync.adapters.base import ProviderAdapter
from src.clinic_sync.sync.schemas import Provider, parse_datetime

logger = structlog.get_logger(__name__)

ClientFactory = Callable[..., httpx.AsyncClient]


def iso(value: Any) -> str | None:
    if isinstance(value, datetime):
        return parse_datetime(value).isoformat()  # type: ignore[union-attr]
    if isinstance(value, date):
        return value.isoformat()
    return None if value is None else str(value)


class HttpProviderAdapter(ProviderAdapter):
    """Base for adapters that speak HTTP.

    A fresh client is opened per call with an explicit timeout. Non-2xx
    responses raise ``httpx.HTTPStatusError``.

    Args:
        client_factory: Builds the ``httpx.AsyncClient``; tests inject a
            factory bound to ``httpx.MockTransport``.
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, client_factory: ClientFactory = httpx.AsyncClient, timeout: float = 30.0) -> None:
        self._client_factory = client_factory
        self._timeout = timeout

    def _client(self, headers: dict[str, str] | None = None) -> httpx.AsyncClient:
        return self._client_factory(headers=headers or {}, timeout=self._timeout)

    async def _request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        async with self._client(headers) as client:
            response = await client.request(method, url, **kwargs)
            if response.is_error:
                logger.warning(
                    "adapter.http_error",
                    adapter=type(self).__name__,
                    method=method,
                    url=url,
                    status_code=response.status_code,
                )
            response.raise_for_status()
            return response

    @staticmethod
    def _require_credentials(provider: Provider) -> Any:
        if provider.credentials is None:
            msg = f"Provider {provider.id} has no credentials configured"
            raise ValueError(msg)
        return provider.credentials
