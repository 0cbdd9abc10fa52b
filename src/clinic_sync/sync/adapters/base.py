"""Provider adapter abstract base class.

Every external system the engine talks to implements this ABC. An adapter
owns its provider's wire mapping: it turns remote resources into
SyncableEntity field maps and back. Adapters never retry; failures
propagate to the engine, which records and classifies them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from src.clinic_sync.sync.errors import UnsupportedProviderType
from src.clinic_sync.sync.schemas import DataType, Provider, ProviderType, SyncableEntity, SyncWindow


class ProviderAdapter(ABC):
    """Abstract interface for one family of external systems.

    Methods:
        fetch_records: Pull entities of one data type inside a window.
        create_record: Create an entity remotely, return its external id.
        update_record: Overwrite a remote entity by external id.
        probe: Read-only credential check; raises on failure.
    """

    supported_data_types: frozenset[DataType] = frozenset({DataType.APPOINTMENTS})

    def supports(self, data_type: DataType) -> bool:
        return data_type in self.supported_data_types

    @abstractmethod
    async def fetch_records(
        self,
        provider: Provider,
        data_type: DataType,
        window: SyncWindow,
    ) -> list[SyncableEntity]:
        """Fetch remote entities of ``data_type`` that fall in ``window``."""
        ...

    @abstractmethod
    async def create_record(self, provider: Provider, entity: SyncableEntity) -> str:
        """Create ``entity`` remotely, return the new external id."""
        ...

    @abstractmethod
    async def update_record(self, provider: Provider, external_id: str, entity: SyncableEntity) -> None:
        """Write ``entity``'s fields to the remote record ``external_id``."""
        ...

    @abstractmethod
    async def probe(self, provider: Provider, credentials: Any) -> None:
        """Hit the provider's identity/metadata endpoint with ``credentials``.

        Raises:
            httpx.HTTPStatusError: Credentials rejected (401/403) or other HTTP failure.
            httpx.TransportError: Endpoint unreachable.
        """
        ...


class AdapterRegistry:
    """Maps provider types to adapter instances."""

    def __init__(self, adapters: dict[ProviderType, ProviderAdapter] | None = None) -> None:
        self._adapters: dict[ProviderType, ProviderAdapter] = dict(adapters or {})

    def register(self, provider_type: ProviderType, adapter: ProviderAdapter) -> None:
        self._adapters[provider_type] = adapter

    def get(self, provider_type: ProviderType) -> ProviderAdapter:
        try:
            return self._adapters[provider_type]
        except KeyError:
            raise UnsupportedProviderType(provider_type.value) from None

    def __contains__(self, provider_type: object) -> bool:
        return provider_type in self._adapters
