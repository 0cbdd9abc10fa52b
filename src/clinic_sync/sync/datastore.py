"""Internal record store interface consumed by the sync engine.

The clinic's own database is outside this package; the engine only needs
windowed reads plus insert and update-by-id. ``InMemoryDatastore`` serves
local development and tests.

Links to remote records are scoped per provider: an internal appointment
may be linked to a Google event and an Outlook event at the same time.
Reads for a provider project that provider's link onto
``SyncableEntity.external_id``.
"""

from __future__ import annotations

import copy
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from src.clinic_sync.sync.matching import WINDOWED_TYPES, time_value
from src.clinic_sync.sync.schemas import DataType, Origin, SyncableEntity, SyncWindow


class Datastore(ABC):
    @abstractmethod
    async def query_by_window(
        self,
        entity_type: DataType,
        window: SyncWindow,
        provider_id: str | None = None,
    ) -> list[SyncableEntity]:
        """Internal records of ``entity_type`` relevant to ``window``.

        With ``provider_id`` each record's ``external_id`` is its link for
        that provider, or None when it has none.
        """

    @abstractmethod
    async def insert(
        self,
        entity_type: DataType,
        fields: dict[str, Any],
        external_id: str | None = None,
        last_modified: datetime | None = None,
        provider_id: str | None = None,
    ) -> str:
        """Create a record, return its internal id.

        Raises:
            ValueError: ``external_id`` given without ``provider_id``.
        """

    @abstractmethod
    async def update_by_id(
        self,
        entity_type: DataType,
        internal_id: str,
        fields: dict[str, Any],
        external_id: str | None = None,
        provider_id: str | None = None,
    ) -> None:
        """Patch ``fields`` onto a record; link ``external_id`` for ``provider_id`` when given.

        Raises:
            KeyError: No record with ``internal_id``.
            ValueError: ``external_id`` given without ``provider_id``.
        """


def _require_provider(external_id: str | None, provider_id: str | None) -> None:
    if external_id is not None and not provider_id:
        msg = "Linking an external id requires the provider id"
        raise ValueError(msg)


class InMemoryDatastore(Datastore):
    """Dict-backed store.

    Windowed types (appointments) are filtered on their time field;
    other types return every record.
    """

    def __init__(self) -> None:
        self._records: dict[DataType, dict[str, SyncableEntity]] = {}

    def _table(self, entity_type: DataType) -> dict[str, SyncableEntity]:
        return self._records.setdefault(entity_type, {})

    @staticmethod
    def _view(record: SyncableEntity, provider_id: str | None) -> SyncableEntity:
        view = record.model_copy(deep=True)
        view.external_id = record.external_ids.get(provider_id) if provider_id else None
        return view

    async def query_by_window(
        self,
        entity_type: DataType,
        window: SyncWindow,
        provider_id: str | None = None,
    ) -> list[SyncableEntity]:
        records = list(self._table(entity_type).values())
        if entity_type in WINDOWED_TYPES:
            records = [
                r for r in records
                if (t := time_value(r)) is None or window.start <= t <= window.end
            ]
        return [self._view(r, provider_id) for r in records]

    async def insert(
        self,
        entity_type: DataType,
        fields: dict[str, Any],
        external_id: str | None = None,
        last_modified: datetime | None = None,
        provider_id: str | None = None,
    ) -> str:
        _require_provider(external_id, provider_id)
        internal_id = str(uuid.uuid4())
        self._table(entity_type)[internal_id] = SyncableEntity(
            internal_id=internal_id,
            external_ids={provider_id: external_id} if external_id is not None else {},
            entity_type=entity_type,
            fields=copy.deepcopy(fields),
            last_modified=last_modified or datetime.now(timezone.utc),
            origin=Origin.INTERNAL,
        )
        return internal_id

    async def update_by_id(
        self,
        entity_type: DataType,
        internal_id: str,
        fields: dict[str, Any],
        external_id: str | None = None,
        provider_id: str | None = None,
    ) -> None:
        _require_provider(external_id, provider_id)
        record = self._table(entity_type)[internal_id]
        if fields:
            record.fields.update(copy.deepcopy(fields))
            record.last_modified = datetime.now(timezone.utc)
        if external_id is not None:
            record.external_ids[provider_id] = external_id  # type: ignore[index]

    def get(self, entity_type: DataType, internal_id: str, provider_id: str | None = None) -> SyncableEntity | None:
        record = self._table(entity_type).get(internal_id)
        return self._view(record, provider_id) if record else None

    def all(self, entity_type: DataType) -> list[SyncableEntity]:
        return [r.model_copy(deep=True) for r in self._table(entity_type).values()]
