"""Google Calendar adapter (Calendar API v3, primary calendar)."""

from __future__ import annotations

from typing import Any

import httpx

from src.clinic_sync.sync.adapters.http import ClientFactory, HttpProviderAdapter, iso, parse_datetime
from src.clinic_sync.sync.schemas import (
    DataType,
    GoogleCredentials,
    Origin,
    Provider,
    SyncableEntity,
    SyncWindow,
)

GOOGLE_CALENDAR_BASE_URL = "https://www.googleapis.com/calendar/v3"


class GoogleCalendarAdapter(HttpProviderAdapter):
    supported_data_types = frozenset({DataType.APPOINTMENTS})

    def __init__(
        self,
        client_factory: ClientFactory = httpx.AsyncClient,
        timeout: float = 30.0,
        base_url: str = GOOGLE_CALENDAR_BASE_URL,
    ) -> None:
        super().__init__(client_factory, timeout)
        self._base_url = base_url.rstrip("/")

    @staticmethod
    def _headers(credentials: GoogleCredentials) -> dict[str, str]:
        return {"Authorization": f"Bearer {credentials.access_token}"}

    async def probe(self, provider: Provider, credentials: Any) -> None:
        await self._request("GET", f"{self._base_url}/calendars/primary", headers=self._headers(credentials))

    async def fetch_records(self, provider: Provider, data_type: DataType, window: SyncWindow) -> list[SyncableEntity]:
        credentials = self._require_credentials(provider)
        response = await self._request(
            "GET",
            f"{self._base_url}/calendars/primary/events",
            headers=self._headers(credentials),
            params={
                "timeMin": iso(window.start),
                "timeMax": iso(window.end),
                "singleEvents": "true",
                "orderBy": "startTime",
            },
        )
        return [self.to_entity(item) for item in response.json().get("items", [])]

    async def create_record(self, provider: Provider, entity: SyncableEntity) -> str:
        credentials = self._require_credentials(provider)
        response = await self._request(
            "POST",
            f"{self._base_url}/calendars/primary/events",
            headers=self._headers(credentials),
            json=self.to_event(entity),
        )
        return response.json()["id"]

    async def update_record(self, provider: Provider, external_id: str, entity: SyncableEntity) -> None:
        credentials = self._require_credentials(provider)
        await self._request(
            "PUT",
            f"{self._base_url}/calendars/primary/events/{external_id}",
            headers=self._headers(credentials),
            json=self.to_event(entity),
        )

    @staticmethod
    def to_entity(event: dict[str, Any]) -> SyncableEntity:
        start = event.get("start") or {}
        end = event.get("end") or {}
        fields = {
            "title": event.get("summary") or "Untitled Event",
            "description": event.get("description"),
            "start": parse_datetime(start.get("dateTime") or start.get("date")),
            "end": parse_datetime(end.get("dateTime") or end.get("date")),
            "location": event.get("location"),
            "status": "cancelled" if event.get("status") == "cancelled" else "confirmed",
        }
        entity = SyncableEntity(
            external_id=event["id"],
            entity_type=DataType.APPOINTMENTS,
            fields=fields,
            origin=Origin.EXTERNAL,
        )
        updated = parse_datetime(event.get("updated"))
        if updated is not None:
            entity.last_modified = updated
        return entity

    @staticmethod
    def to_event(entity: SyncableEntity) -> dict[str, Any]:
        fields = entity.fields
        body: dict[str, Any] = {
            "summary": fields.get("title"),
            "description": fields.get("description"),
            "location": fields.get("location"),
            "start": {"dateTime": iso(fields.get("start"))},
            "end": {"dateTime": iso(fields.get("end") or fields.get("start"))},
        }
        if fields.get("status") == "cancelled":
            body["status"] = "cancelled"
        return body
