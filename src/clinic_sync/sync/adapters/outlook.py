"""Outlook calendar adapter (Microsoft Graph v1.0)."""

from __future__ import annotations

from typing import Any

import httpx

from src.clinic_sync.sync.adapters.http import ClientFactory, HttpProviderAdapter, iso, parse_datetime
from src.clinic_sync.sync.schemas import DataType, Origin, Provider, SyncableEntity, SyncWindow

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"


def _graph_time(value: Any) -> dict[str, Any]:
    parsed = parse_datetime(value)
    # Graph expects a naive local time paired with an explicit zone name.
    return {
        "dateTime": parsed.replace(tzinfo=None).isoformat() if parsed else None,
        "timeZone": "UTC",
    }


class OutlookCalendarAdapter(HttpProviderAdapter):
    supported_data_types = frozenset({DataType.APPOINTMENTS})

    def __init__(
        self,
        client_factory: ClientFactory = httpx.AsyncClient,
        timeout: float = 30.0,
        base_url: str = GRAPH_BASE_URL,
    ) -> None:
        super().__init__(client_factory, timeout)
        self._base_url = base_url.rstrip("/")

    @staticmethod
    def _headers(credentials: Any) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credentials.access_token}",
            "Prefer": 'outlook.timezone="UTC"',
        }

    async def probe(self, provider: Provider, credentials: Any) -> None:
        await self._request("GET", f"{self._base_url}/me/calendars", headers=self._headers(credentials))

    async def fetch_records(self, provider: Provider, data_type: DataType, window: SyncWindow) -> list[SyncableEntity]:
        credentials = self._require_credentials(provider)
        start = iso(window.start)
        end = iso(window.end)
        response = await self._request(
            "GET",
            f"{self._base_url}/me/events",
            headers=self._headers(credentials),
            params={"$filter": f"start/dateTime ge '{start}' and start/dateTime le '{end}'"},
        )
        return [self.to_entity(item) for item in response.json().get("value", [])]

    async def create_record(self, provider: Provider, entity: SyncableEntity) -> str:
        credentials = self._require_credentials(provider)
        response = await self._request(
            "POST",
            f"{self._base_url}/me/events",
            headers=self._headers(credentials),
            json=self.to_event(entity),
        )
        return response.json()["id"]

    async def update_record(self, provider: Provider, external_id: str, entity: SyncableEntity) -> None:
        credentials = self._require_credentials(provider)
        await self._request(
            "PATCH",
            f"{self._base_url}/me/events/{external_id}",
            headers=self._headers(credentials),
            json=self.to_event(entity),
        )

    @staticmethod
    def to_entity(event: dict[str, Any]) -> SyncableEntity:
        body = event.get("body") or {}
        location = event.get("location") or {}
        fields = {
            "title": event.get("subject") or "Untitled Event",
            "description": body.get("content"),
            "start": parse_datetime((event.get("start") or {}).get("dateTime")),
            "end": parse_datetime((event.get("end") or {}).get("dateTime")),
            "location": location.get("displayName"),
            "status": "cancelled" if event.get("isCancelled") else "confirmed",
        }
        entity = SyncableEntity(
            external_id=event["id"],
            entity_type=DataType.APPOINTMENTS,
            fields=fields,
            origin=Origin.EXTERNAL,
        )
        modified = parse_datetime(event.get("lastModifiedDateTime"))
        if modified is not None:
            entity.last_modified = modified
        return entity

    @staticmethod
    def to_event(entity: SyncableEntity) -> dict[str, Any]:
        fields = entity.fields
        return {
            "subject": fields.get("title"),
            "body": {"contentType": "text", "content": fields.get("description") or ""},
            "start": _graph_time(fields.get("start")),
            "end": _graph_time(fields.get("end") or fields.get("start")),
            "location": {"displayName": fields.get("location") or ""},
        }
