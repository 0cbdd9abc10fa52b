"""Tests for SyncEngine passes.

Runs passes through a SyncService wired to FakeAdapter and
InMemoryDatastore (see conftest) and checks counts, writes, provider
status and retry hand-off.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from src.clinic_sync.config import Settings
from src.clinic_sync.resilience.classifier import ErrorKind
from src.clinic_sync.sync.adapters.base import AdapterRegistry
from src.clinic_sync.sync.errors import ProviderNotEnabled, ProviderNotFound, SyncInProgress
from src.clinic_sync.sync.schemas import (
    DataType,
    Origin,
    ProviderStatus,
    ProviderType,
    Resolution,
    SyncableEntity,
    SyncWindow,
)
from src.clinic_sync.sync.service import build_sync_service

START = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=1)


def _make_event(external_id: str, title: str = "Checkup", start: datetime = START, **kwargs) -> SyncableEntity:
    entity = SyncableEntity(
        external_id=external_id,
        entity_type=DataType.APPOINTMENTS,
        fields={"title": title, "start": start, "end": start + timedelta(minutes=30)},
        origin=Origin.EXTERNAL,
    )
    for key, value in kwargs.items():
        setattr(entity, key, value)
    return entity


def _fields(title: str = "Checkup", start: datetime = START) -> dict:
    return {"title": title, "start": start, "end": start + timedelta(minutes=30)}


# ── Guards ───────────────────────────────────────────────────────────────────


class TestGuards:
    @pytest.mark.asyncio
    async def test_disabled_provider_raises_without_io(self, service, fake_adapter):
        with pytest.raises(ProviderNotEnabled):
            await service.sync_provider("google-calendar")
        assert fake_adapter.fetch_calls == 0

    @pytest.mark.asyncio
    async def test_unknown_provider(self, service):
        with pytest.raises(ProviderNotFound):
            await service.sync_provider("nope")

    @pytest.mark.asyncio
    async def test_concurrent_pass_is_rejected(self, service, google, fake_adapter):
        release = asyncio.Event()
        original = fake_adapter.fetch_records

        async def _slow_fetch(*args, **kwargs):
            await release.wait()
            return await original(*args, **kwargs)

        fake_adapter.fetch_records = _slow_fetch
        first = asyncio.create_task(service.sync_provider("google-calendar"))
        while not service.engine.is_running("google-calendar"):
            await asyncio.sleep(0)

        assert service.get_provider("google-calendar").status == ProviderStatus.SYNCING
        with pytest.raises(SyncInProgress):
            await service.sync_provider("google-calendar")

        release.set()
        report = await first
        assert report.success is True
        assert service.get_provider("google-calendar").status == ProviderStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_disabled_mid_pass_settles_disconnected(self, service, google, fake_adapter):
        release = asyncio.Event()
        original = fake_adapter.fetch_records

        async def _slow_fetch(*args, **kwargs):
            await release.wait()
            return await original(*args, **kwargs)

        fake_adapter.fetch_records = _slow_fetch
        task = asyncio.create_task(service.sync_provider("google-calendar"))
        while not service.engine.is_running("google-calendar"):
            await asyncio.sleep(0)

        await service.toggle_provider("google-calendar", False)
        release.set()
        await task

        provider = service.get_provider("google-calendar")
        assert provider.enabled is False
        assert provider.status == ProviderStatus.DISCONNECTED


# ── Inbound / outbound ───────────────────────────────────────────────────────


class TestPass:
    @pytest.mark.asyncio
    async def test_new_external_event_creates_internal_record(self, service, google, fake_adapter, datastore):
        fake_adapter.add(_make_event(
            "ext-1",
            start=datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc),
            last_modified=datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc),
        ))
        window = SyncWindow(
            start=datetime(2024, 1, 1, tzinfo=timezone.utc),
            end=datetime(2024, 2, 1, tzinfo=timezone.utc),
        )

        report = await service.engine.sync_provider("google-calendar", window=window)

        [result] = report.results
        assert result.records_created == 1
        assert result.records_updated == 0
        assert result.conflicts == []
        assert result.success is True
        [record] = datastore.all(DataType.APPOINTMENTS)
        assert record.external_ids == {"google-calendar": "ext-1"}
        assert record.fields["title"] == "Checkup"
        assert record.last_modified == datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)

        provider = service.get_provider("google-calendar")
        assert provider.status == ProviderStatus.CONNECTED
        assert provider.last_sync_at is not None

    @pytest.mark.asyncio
    async def test_second_pass_is_idempotent(self, service, google, fake_adapter, datastore):
        fake_adapter.add(_make_event("ext-1"))
        await datastore.insert(DataType.APPOINTMENTS, _fields("Follow-up", START + timedelta(hours=2)))

        first = await service.sync_provider("google-calendar")
        second = await service.sync_provider("google-calendar")

        assert first.records_created == 2
        assert second.records_created == 0
        assert second.records_updated == 0
        assert second.records_skipped == 2
        assert len(datastore.all(DataType.APPOINTMENTS)) == 2
        assert len(fake_adapter.created) == 1

    @pytest.mark.asyncio
    async def test_outbound_create_links_external_id(self, service, google, fake_adapter, datastore):
        internal_id = await datastore.insert(DataType.APPOINTMENTS, _fields("Consult"))

        report = await service.sync_provider("google-calendar")

        assert report.records_created == 1
        assert datastore.get(DataType.APPOINTMENTS, internal_id).external_ids == {"google-calendar": "ext-new-1"}

    @pytest.mark.asyncio
    async def test_heuristic_match_links_without_duplicate(self, service, google, fake_adapter, datastore):
        internal_id = await datastore.insert(DataType.APPOINTMENTS, _fields("Checkup"))
        fake_adapter.add(_make_event("ext-9"))

        report = await service.sync_provider("google-calendar")

        assert report.records_created == 0
        assert report.records_skipped == 1
        assert fake_adapter.created == []
        [record] = datastore.all(DataType.APPOINTMENTS)
        assert record.internal_id == internal_id
        assert record.external_ids == {"google-calendar": "ext-9"}

    @pytest.mark.asyncio
    async def test_record_linked_by_another_provider_still_matches(self, service, google, fake_adapter, datastore):
        """An appointment already linked to an Outlook event pairs with the same Google event."""
        internal_id = await datastore.insert(
            DataType.APPOINTMENTS, _fields("Checkup"), external_id="outlook-evt-9", provider_id="outlook-calendar",
        )
        fake_adapter.add(_make_event("g-1"))

        report = await service.sync_provider("google-calendar")

        assert report.records_created == 0
        assert fake_adapter.created == []
        [record] = datastore.all(DataType.APPOINTMENTS)
        assert record.internal_id == internal_id
        assert record.external_ids == {"outlook-calendar": "outlook-evt-9", "google-calendar": "g-1"}

    @pytest.mark.asyncio
    async def test_link_for_another_provider_does_not_block_push(self, service, google, fake_adapter, datastore):
        internal_id = await datastore.insert(
            DataType.APPOINTMENTS, _fields("Consult"), external_id="outlook-evt-3", provider_id="outlook-calendar",
        )

        report = await service.sync_provider("google-calendar")

        assert report.records_created == 1
        assert len(fake_adapter.created) == 1
        record = datastore.get(DataType.APPOINTMENTS, internal_id, provider_id="google-calendar")
        assert record.external_id == "ext-new-1"
        assert record.external_ids["outlook-calendar"] == "outlook-evt-3"

    @pytest.mark.asyncio
    async def test_inbound_only_never_pushes(self, service, fake_adapter, datastore):
        await service.configure_provider(
            "google-calendar", {"access_token": "tok"}, {"sync_direction": "inbound-only"},
        )
        await datastore.insert(DataType.APPOINTMENTS, _fields("Consult"))
        fake_adapter.add(_make_event("ext-1", title="Imaging", start=START + timedelta(hours=4)))

        report = await service.sync_provider("google-calendar")

        assert report.records_created == 1
        assert fake_adapter.created == []

    @pytest.mark.asyncio
    async def test_linked_record_missing_remotely_is_left_alone(self, service, google, fake_adapter, datastore):
        await datastore.insert(
            DataType.APPOINTMENTS, _fields("Gone"), external_id="ext-deleted", provider_id="google-calendar",
        )

        report = await service.sync_provider("google-calendar")

        assert report.records_processed == 0
        assert fake_adapter.created == []
        assert len(datastore.all(DataType.APPOINTMENTS)) == 1


# ── Conflicts ────────────────────────────────────────────────────────────────


class TestConflicts:
    @pytest.mark.asyncio
    async def test_external_wins_updates_internal(self, service, fake_adapter, datastore):
        await service.configure_provider(
            "google-calendar", {"access_token": "tok"}, {"conflict_resolution_policy": "external-wins"},
        )
        internal_id = await datastore.insert(
            DataType.APPOINTMENTS, _fields("A"), external_id="ext-1", provider_id="google-calendar",
        )
        fake_adapter.add(_make_event("ext-1", title="B"))

        report = await service.sync_provider("google-calendar")

        assert report.records_updated == 1
        [conflict] = report.conflicts
        assert conflict.conflicting_fields == ["title"]
        assert conflict.resolution == Resolution.EXTERNAL_WINS
        assert datastore.get(DataType.APPOINTMENTS, internal_id).fields["title"] == "B"
        assert fake_adapter.updated == []
        assert service.list_pending_conflicts() == []

    @pytest.mark.asyncio
    async def test_manual_conflict_waits_then_operator_resolves(self, service, google, fake_adapter, datastore):
        internal_id = await datastore.insert(
            DataType.APPOINTMENTS, _fields("A"), external_id="ext-1", provider_id="google-calendar",
        )
        fake_adapter.add(_make_event("ext-1", title="B"))

        first = await service.sync_provider("google-calendar")
        await service.sync_provider("google-calendar")

        assert first.records_updated == 0
        assert len(first.conflicts) == 1
        [pending] = service.list_pending_conflicts()
        assert datastore.get(DataType.APPOINTMENTS, internal_id).fields["title"] == "A"

        resolved = await service.resolve_conflict(pending.id, Resolution.INTERNAL_WINS)

        assert resolved.resolved is True
        [(external_id, entity)] = fake_adapter.updated
        assert external_id == "ext-1"
        assert entity.fields["title"] == "A"
        assert service.list_pending_conflicts() == []


# ── Failures ─────────────────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_fetch_failure_marks_error_and_schedules_retry(self, service, google, fake_adapter):
        fake_adapter.fetch_error = httpx.ConnectError("connection refused")

        report = await service.sync_provider("google-calendar")

        assert report.success is False
        assert report.errors[0].startswith("Failed to fetch appointments")
        provider = service.get_provider("google-calendar")
        assert provider.status == ProviderStatus.ERROR
        assert provider.last_sync_at is None
        [entry] = service.errors.coordinator.pending()
        assert entry.kind == ErrorKind.NETWORK_TIMEOUT
        assert entry.context["provider_id"] == "google-calendar"

    @pytest.mark.asyncio
    async def test_record_errors_accumulate_and_pass_continues(self, service, google, fake_adapter, datastore):
        fake_adapter.create_error = RuntimeError("remote rejected event")
        await datastore.insert(DataType.APPOINTMENTS, _fields("One"))
        await datastore.insert(DataType.APPOINTMENTS, _fields("Two", START + timedelta(hours=1)))
        fake_adapter.add(_make_event("ext-1", title="Three", start=START + timedelta(hours=2)))

        report = await service.sync_provider("google-calendar")

        [result] = report.results
        assert result.success is True
        assert len(result.errors) == 2
        assert result.records_created == 1
        assert result.records_processed == 3
        assert service.get_provider("google-calendar").status == ProviderStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_empty_exception_message_falls_back_to_type_name(self, service, google, fake_adapter):
        fake_adapter.fetch_error = TimeoutError()

        report = await service.sync_provider("google-calendar")

        assert report.errors == ["Failed to fetch appointments: TimeoutError"]

    @pytest.mark.asyncio
    async def test_record_failures_in_one_pass_open_one_retry(self, service, google, fake_adapter, datastore, clock):
        async def _timing_out_create(provider, entity):
            clock.advance(0.01)
            raise asyncio.TimeoutError()

        fake_adapter.create_record = _timing_out_create
        for n in range(3):
            await datastore.insert(DataType.APPOINTMENTS, _fields(f"Visit {n}", START + timedelta(hours=n)))

        report = await service.sync_provider("google-calendar")

        [result] = report.results
        assert len(result.errors) == 3
        assert all(e.endswith(": TimeoutError") for e in result.errors)
        assert service.errors.stats()["total_errors"] == 3
        [entry] = service.errors.coordinator.pending()
        assert entry.kind == ErrorKind.NETWORK_TIMEOUT
        assert entry.attempts == 1

    @pytest.mark.asyncio
    async def test_failing_retry_pass_reschedules_once(self, service, google, fake_adapter, datastore, clock):
        fake_adapter.create_error = RuntimeError("503 service unavailable")
        for n in range(2):
            await datastore.insert(DataType.APPOINTMENTS, _fields(f"Visit {n}", START + timedelta(hours=n)))
        await service.sync_provider("google-calendar")
        [first] = service.errors.coordinator.pending()

        clock.advance(first.next_retry_at - clock())
        [signal] = await service.errors.coordinator.sweep()
        await service.engine.sync_provider("google-calendar", retry=signal)

        [entry] = service.errors.coordinator.pending()
        assert entry.key == first.key
        assert entry.attempts == 2

    @pytest.mark.asyncio
    async def test_unsupported_data_type_fails_step_without_retry(self, service, fake_adapter):
        await service.configure_provider(
            "google-calendar", {"access_token": "tok"}, {"data_types": ["appointments", "billing"]},
        )

        report = await service.sync_provider("google-calendar")

        appointments, billing = report.results
        assert appointments.success is True
        assert billing.success is False
        assert billing.errors[0].startswith("Failed to fetch billing")
        assert len(service.errors.coordinator) == 0

    @pytest.mark.asyncio
    async def test_outbound_rate_limit_becomes_record_error(self, fake_adapter, datastore, timer, clock):
        adapters = AdapterRegistry({t: fake_adapter for t in ProviderType})
        svc = build_sync_service(
            Settings(_env_file=None, RATE_LIMIT_MAX_REQUESTS=1),
            datastore=datastore,
            timer=timer,
            adapters=adapters,
            clock=clock,
        )
        await svc.initialize()
        await svc.configure_provider("google-calendar", {"access_token": "tok"})
        await datastore.insert(DataType.APPOINTMENTS, _fields("One"))
        await datastore.insert(DataType.APPOINTMENTS, _fields("Two", START + timedelta(hours=1)))

        report = await svc.sync_provider("google-calendar")

        assert report.records_created == 1
        assert "Outbound rate limit" in report.errors[0]
        [entry] = svc.errors.coordinator.pending()
        assert entry.kind == ErrorKind.RATE_LIMITED
        await svc.destroy()
