"""Shared fixtures for sync engine tests.

Provides:
- FakeClock: controllable epoch-seconds clock for limiter/retry tests
- ManualTimer: IntervalTimer whose jobs only run when a test fires them
- FakeAdapter: in-memory ProviderAdapter with call recording and fault injection
- A SyncService wired to the fakes, plus an ASGI client over the API
"""

from __future__ import annotations

import itertools
from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.clinic_sync.config import Settings
from src.clinic_sync.sync.adapters.base import AdapterRegistry, ProviderAdapter
from src.clinic_sync.sync.datastore import InMemoryDatastore
from src.clinic_sync.sync.matching import time_value
from src.clinic_sync.sync.scheduler import IntervalTimer, JobFn
from src.clinic_sync.sync.schemas import (
    DataType,
    Origin,
    Provider,
    ProviderType,
    SyncableEntity,
    SyncWindow,
)
from src.clinic_sync.sync.service import SyncService, build_sync_service

# ── Test doubles ─────────────────────────────────────────────────────────────


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ManualTimer(IntervalTimer):
    """Records interval jobs; ``fire`` runs one on demand."""

    def __init__(self) -> None:
        self.jobs: dict[str, tuple[float, JobFn]] = {}

    def start(self, key: str, interval_seconds: float, fn: JobFn) -> None:
        self.jobs[key] = (interval_seconds, fn)

    def stop(self, key: str) -> None:
        self.jobs.pop(key, None)

    def stop_all(self) -> None:
        self.jobs.clear()

    async def fire(self, key: str) -> None:
        _, fn = self.jobs[key]
        await fn()


class FakeAdapter(ProviderAdapter):
    """In-memory external system.

    ``remote`` holds the provider's records per data type. Set
    ``fetch_error`` / ``create_error`` / ``probe_error`` to inject faults.
    """

    supported_data_types = frozenset({DataType.APPOINTMENTS, DataType.PATIENTS})

    def __init__(self) -> None:
        self.remote: dict[DataType, dict[str, SyncableEntity]] = {}
        self.fetch_calls = 0
        self.created: list[SyncableEntity] = []
        self.updated: list[tuple[str, SyncableEntity]] = []
        self.probes = 0
        self.fetch_error: Exception | None = None
        self.create_error: Exception | None = None
        self.probe_error: Exception | None = None
        self._ids = itertools.count(1)

    def add(self, entity: SyncableEntity) -> SyncableEntity:
        self.remote.setdefault(entity.entity_type, {})[entity.external_id] = entity
        return entity

    async def fetch_records(self, provider: Provider, data_type: DataType, window: SyncWindow) -> list[SyncableEntity]:
        self.fetch_calls += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        records = []
        for entity in self.remote.get(data_type, {}).values():
            t = time_value(entity)
            if data_type == DataType.APPOINTMENTS and t is not None and not window.start <= t <= window.end:
                continue
            records.append(entity.model_copy(deep=True))
        return records

    async def create_record(self, provider: Provider, entity: SyncableEntity) -> str:
        if self.create_error is not None:
            raise self.create_error
        external_id = f"ext-new-{next(self._ids)}"
        self.created.append(entity)
        self.add(entity.model_copy(update={"external_id": external_id, "origin": Origin.EXTERNAL}, deep=True))
        return external_id

    async def update_record(self, provider: Provider, external_id: str, entity: SyncableEntity) -> None:
        self.updated.append((external_id, entity))
        stored = self.remote[entity.entity_type][external_id]
        stored.fields.update(entity.fields)

    async def probe(self, provider: Provider, credentials: Any) -> None:
        self.probes += 1
        if self.probe_error is not None:
            raise self.probe_error


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def datastore() -> InMemoryDatastore:
    return InMemoryDatastore()


@pytest.fixture
def timer() -> ManualTimer:
    return ManualTimer()


@pytest_asyncio.fixture
async def service(fake_adapter, datastore, timer, clock) -> AsyncGenerator[SyncService, None]:
    """SyncService on memory backends with every provider type served by FakeAdapter."""
    adapters = AdapterRegistry({t: fake_adapter for t in ProviderType})
    svc = build_sync_service(
        Settings(_env_file=None),
        datastore=datastore,
        timer=timer,
        adapters=adapters,
        clock=clock,
    )
    await svc.initialize()
    yield svc
    await svc.destroy()


@pytest_asyncio.fixture
async def google(service) -> Provider:
    """google-calendar configured and enabled."""
    return await service.configure_provider("google-calendar", {"access_token": "tok"})


@pytest_asyncio.fixture
async def client(service) -> AsyncGenerator[AsyncClient, None]:
    from src.clinic_sync.main import create_app

    app = create_app(service)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
