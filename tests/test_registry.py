"""Tests for the provider registry, credential validation and config stores."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.clinic_sync.sync.adapters.base import AdapterRegistry
from src.clinic_sync.sync.config_store import InMemoryProviderConfigStore, RedisProviderConfigStore
from src.clinic_sync.sync.errors import ProviderNotFound, UnsupportedProviderType, ValidationFailed
from src.clinic_sync.sync.registry import ProviderRegistry, default_providers
from src.clinic_sync.sync.schemas import (
    ConflictPolicy,
    DataType,
    Provider,
    ProviderEndpoints,
    ProviderStatus,
    ProviderType,
    SyncDirection,
)
from src.clinic_sync.sync.validator import CredentialValidator, ValidationFailure


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://example.test/")
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=httpx.Response(code, request=request))


# ── Defaults and loading ─────────────────────────────────────────────────────


class TestDefaults:
    def test_catalogue(self):
        providers = {p.id: p for p in default_providers()}
        assert set(providers) == {
            "google-calendar",
            "outlook-calendar",
            "icloud-calendar",
            "epic-mychart",
            "cerner-powerchart",
            "athenahealth",
            "allscripts",
            "eclinicalworks",
        }
        assert all(not p.enabled and p.status == ProviderStatus.DISCONNECTED for p in providers.values())
        allscripts = providers["allscripts"].settings
        assert allscripts.sync_direction == SyncDirection.INBOUND_ONLY
        assert allscripts.conflict_resolution_policy == ConflictPolicy.EXTERNAL_WINS
        assert allscripts.data_types == [DataType.PATIENTS]
        assert providers["epic-mychart"].settings.sync_frequency_minutes == 60

    @pytest.mark.asyncio
    async def test_load_restores_snapshot_as_disabled(self, fake_adapter):
        store = InMemoryProviderConfigStore()
        snapshot = default_providers()[0].model_copy(update={"enabled": True, "status": ProviderStatus.CONNECTED})
        snapshot.settings.sync_frequency_minutes = 5
        await store.save(snapshot.snapshot())
        registry = ProviderRegistry(store, CredentialValidator(AdapterRegistry({ProviderType.GOOGLE: fake_adapter})))

        await registry.load()

        restored = registry.get("google-calendar")
        assert restored.settings.sync_frequency_minutes == 5
        assert restored.enabled is False
        assert restored.status == ProviderStatus.DISCONNECTED
        assert restored.credentials is None

    @pytest.mark.asyncio
    async def test_get_unknown_raises(self, service):
        with pytest.raises(ProviderNotFound):
            service.get_provider("missing")


# ── Configure / toggle ───────────────────────────────────────────────────────


class TestConfigure:
    @pytest.mark.asyncio
    async def test_valid_credentials_enable_and_schedule(self, service, timer, fake_adapter):
        provider = await service.configure_provider(
            "google-calendar", {"access_token": "tok"}, {"sync_frequency_minutes": 5},
        )

        assert provider.enabled is True
        assert provider.status == ProviderStatus.CONNECTED
        assert fake_adapter.probes == 1
        interval, _ = timer.jobs["sync:google-calendar"]
        assert interval == 300
        assert "google-calendar" in service.scheduler.scheduled

    @pytest.mark.asyncio
    async def test_missing_fields_rejected_without_probe(self, service, fake_adapter):
        with pytest.raises(ValidationFailed) as exc_info:
            await service.configure_provider("icloud-calendar", {"username": "ana"})

        assert exc_info.value.outcome.failure == ValidationFailure.MISSING_FIELD
        assert "password" in exc_info.value.outcome.message
        assert fake_adapter.probes == 0
        provider = service.get_provider("icloud-calendar")
        assert provider.status == ProviderStatus.ERROR
        assert provider.enabled is False

    @pytest.mark.asyncio
    async def test_google_requires_access_token(self, service, fake_adapter):
        with pytest.raises(ValidationFailed) as exc_info:
            await service.configure_provider("google-calendar", {"refresh_token": "r"})

        assert exc_info.value.outcome.failure == ValidationFailure.MISSING_FIELD
        assert "access_token" in exc_info.value.outcome.message
        assert fake_adapter.probes == 0
        provider = await service.configure_provider("google-calendar", {"access_token": "a", "refresh_token": "r"})
        assert provider.enabled is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("error", "failure"),
        [
            (_status_error(401), ValidationFailure.UNAUTHORIZED),
            (_status_error(403), ValidationFailure.UNAUTHORIZED),
            (_status_error(500), ValidationFailure.UNREACHABLE),
            (httpx.ConnectError("connection refused"), ValidationFailure.UNREACHABLE),
        ],
        ids=["401", "403", "500", "connect-error"],
    )
    async def test_probe_failures(self, service, fake_adapter, timer, error, failure):
        fake_adapter.probe_error = error

        with pytest.raises(ValidationFailed) as exc_info:
            await service.configure_provider("outlook-calendar", {"access_token": "tok"})

        assert exc_info.value.outcome.failure == failure
        assert service.get_provider("outlook-calendar").status == ProviderStatus.ERROR
        assert "sync:outlook-calendar" not in timer.jobs

    @pytest.mark.asyncio
    async def test_failed_reconfigure_disables_working_provider(self, service, google, fake_adapter, timer):
        fake_adapter.probe_error = _status_error(401)

        with pytest.raises(ValidationFailed):
            await service.configure_provider("google-calendar", {"access_token": "revoked"})

        assert service.get_provider("google-calendar").enabled is False
        assert "sync:google-calendar" not in timer.jobs

    @pytest.mark.asyncio
    async def test_snapshots_never_carry_credentials(self, service, google):
        snapshots = await service.registry._store.load_all()
        assert "credentials" not in snapshots["google-calendar"]
        assert "access_token" not in json.dumps(snapshots)


class TestToggle:
    @pytest.mark.asyncio
    async def test_enable_without_credentials_rejected(self, service):
        with pytest.raises(ValidationFailed) as exc_info:
            await service.toggle_provider("epic-mychart", True)
        assert exc_info.value.outcome.failure == ValidationFailure.MISSING_FIELD

    @pytest.mark.asyncio
    async def test_disable_then_enable(self, service, google, timer):
        provider = await service.toggle_provider("google-calendar", False)
        assert provider.status == ProviderStatus.DISCONNECTED
        assert "sync:google-calendar" not in timer.jobs

        provider = await service.toggle_provider("google-calendar", True)
        assert provider.status == ProviderStatus.CONNECTED
        assert "sync:google-calendar" in timer.jobs

    @pytest.mark.asyncio
    async def test_zero_frequency_is_manual_only(self, service, timer):
        await service.configure_provider("google-calendar", {"access_token": "tok"}, {"sync_frequency_minutes": 0})
        assert "sync:google-calendar" not in timer.jobs


class TestRegister:
    @pytest.mark.asyncio
    async def test_custom_fhir_server(self, service):
        provider = Provider(
            id="hapi",
            name="HAPI FHIR",
            type=ProviderType.FHIR,
            endpoints=ProviderEndpoints(base_url="https://hapi.example.test/fhir"),
        )
        await service.register_provider(provider)
        configured = await service.configure_provider("hapi", {})
        assert configured.enabled is True


# ── Validator ────────────────────────────────────────────────────────────────


class TestValidator:
    @pytest.mark.asyncio
    async def test_unregistered_type_raises(self):
        validator = CredentialValidator(AdapterRegistry())
        provider = default_providers()[0]
        with pytest.raises(UnsupportedProviderType):
            await validator.validate(provider, {"access_token": "tok"})

    @pytest.mark.asyncio
    async def test_slow_probe_times_out_as_unreachable(self, fake_adapter):
        async def _hang(*args):
            await asyncio.sleep(10)

        fake_adapter.probe = _hang
        validator = CredentialValidator(AdapterRegistry({ProviderType.GOOGLE: fake_adapter}), timeout=0.01)

        _, outcome = await validator.validate(default_providers()[0], {"access_token": "tok"})

        assert outcome.ok is False
        assert outcome.failure == ValidationFailure.UNREACHABLE
        assert outcome.message.endswith("unreachable: TimeoutError")

    @pytest.mark.asyncio
    async def test_connection_test_reuses_stored_credentials(self, service, google, fake_adapter):
        assert await service.test_connection("google-calendar") is True
        fake_adapter.probe_error = _status_error(401)
        assert await service.test_connection("google-calendar") is False
        assert await service.test_connection("epic-mychart") is False


# ── Config stores ────────────────────────────────────────────────────────────


class TestRedisConfigStore:
    @pytest.mark.asyncio
    async def test_save_and_load(self):
        redis = MagicMock()
        redis.hset = AsyncMock()
        redis.hgetall = AsyncMock(return_value={"google-calendar": json.dumps({"id": "google-calendar"}), "bad": "{"})
        store = RedisProviderConfigStore(redis, key="sync:providers")

        await store.save({"id": "google-calendar", "enabled": True})
        loaded = await store.load_all()

        redis.hset.assert_awaited_once_with(
            "sync:providers", "google-calendar", json.dumps({"id": "google-calendar", "enabled": True}),
        )
        assert loaded == {"google-calendar": {"id": "google-calendar"}}

    @pytest.mark.asyncio
    async def test_transient_connection_error_is_retried(self):
        redis = MagicMock()
        redis.hgetall = AsyncMock(side_effect=[RedisConnectionError("reset"), {}])
        store = RedisProviderConfigStore(redis)

        assert await store.load_all() == {}
        assert redis.hgetall.await_count == 2
