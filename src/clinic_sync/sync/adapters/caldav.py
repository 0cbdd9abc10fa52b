"""CalDAV adapter for generic servers and iCloud.

Events are exchanged as iCalendar VEVENT bodies. Fetch issues a
calendar-query REPORT bounded by the sync window and reads every
``calendar-data`` element in the multistatus reply; create and update
both PUT ``{calendar_url}/{uid}.ics``.
"""

from __future__ import annotations

import re
import uuid
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from src.clinic_sync.sync.adapters.http import ClientFactory, HttpProviderAdapter, parse_datetime
from src.clinic_sync.sync.schemas import (
    CalDAVCredentials,
    DataType,
    ICloudCredentials,
    Origin,
    Provider,
    SyncableEntity,
    SyncWindow,
)

logger = structlog.get_logger(__name__)

_CALDAV_NS = "urn:ietf:params:xml:ns:caldav"
_VEVENT_RE = re.compile(r"BEGIN:VEVENT\r?\n(.*?)END:VEVENT", re.DOTALL)

_PROPFIND_BODY = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <D:displayname />
    <D:resourcetype />
  </D:prop>
</D:propfind>"""

_REPORT_TEMPLATE = """<?xml version="1.0" encoding="utf-8" ?>
<C:calendar-query xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <D:getetag />
    <C:calendar-data />
  </D:prop>
  <C:filter>
    <C:comp-filter name="VCALENDAR">
      <C:comp-filter name="VEVENT">
        <C:time-range start="{start}" end="{end}" />
      </C:comp-filter>
    </C:comp-filter>
  </C:filter>
</C:calendar-query>"""


# ── iCalendar helpers ──────────────────────────────────────────────────────


def format_ical_datetime(value: Any) -> str:
    parsed = parse_datetime(value) or datetime.now(timezone.utc)
    return parsed.strftime("%Y%m%dT%H%M%SZ")


def parse_ical_datetime(value: str) -> datetime | None:
    value = value.strip()
    for fmt in ("%Y%m%dT%H%M%SZ", "%Y%m%dT%H%M%S", "%Y%m%d"):
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def _unescape(text: str) -> str:
    return text.replace("\\n", "\n").replace("\\N", "\n").replace("\\,", ",").replace("\\;", ";").replace("\\\\", "\\")


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace(";", "\\;").replace(",", "\\,").replace("\n", "\\n")


def _unfold(block: str) -> list[str]:
    lines: list[str] = []
    for raw in block.splitlines():
        if raw[:1] in (" ", "\t") and lines:
            lines[-1] += raw[1:]
        elif raw:
            lines.append(raw)
    return lines


def parse_vevent(block: str) -> dict[str, str]:
    """Property name (parameters stripped) to raw value for one VEVENT."""
    props: dict[str, str] = {}
    for line in _unfold(block):
        if ":" not in line:
            continue
        head, value = line.split(":", 1)
        name = head.split(";", 1)[0].upper()
        props.setdefault(name, value)
    return props


def extract_calendar_data(body: str) -> list[str]:
    """Pull calendar-data payloads out of a multistatus reply.

    Falls back to the raw body when it is not XML (some servers answer
    a REPORT with bare iCalendar text).
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return [body]
    return [el.text for el in root.iter(f"{{{_CALDAV_NS}}}calendar-data") if el.text]


def parse_events(body: str) -> list[SyncableEntity]:
    entities: list[SyncableEntity] = []
    for payload in extract_calendar_data(body):
        for match in _VEVENT_RE.finditer(payload):
            props = parse_vevent(match.group(1))
            uid = props.get("UID")
            start = parse_ical_datetime(props.get("DTSTART", ""))
            if not uid or start is None:
                logger.debug("caldav.event_skipped", uid=uid, reason="missing UID or DTSTART")
                continue
            modified = parse_ical_datetime(props.get("LAST-MODIFIED", "") or props.get("DTSTAMP", ""))
            entity = SyncableEntity(
                external_id=uid,
                entity_type=DataType.APPOINTMENTS,
                fields={
                    "title": _unescape(props.get("SUMMARY", "")) or "Untitled Event",
                    "description": _unescape(props["DESCRIPTION"]) if "DESCRIPTION" in props else None,
                    "start": start,
                    "end": parse_ical_datetime(props.get("DTEND", "")),
                    "location": _unescape(props["LOCATION"]) if "LOCATION" in props else None,
                    "status": "cancelled" if props.get("STATUS", "").upper() == "CANCELLED" else "confirmed",
                },
                origin=Origin.EXTERNAL,
            )
            if modified is not None:
                entity.last_modified = modified
            entities.append(entity)
    return entities


def to_ical(uid: str, entity: SyncableEntity) -> str:
    fields = entity.fields
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Clinic Sync//Calendar Sync//EN",
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"DTSTAMP:{format_ical_datetime(datetime.now(timezone.utc))}",
        f"DTSTART:{format_ical_datetime(fields.get('start'))}",
        f"DTEND:{format_ical_datetime(fields.get('end') or fields.get('start'))}",
        f"SUMMARY:{_escape(str(fields.get('title') or ''))}",
        f"DESCRIPTION:{_escape(str(fields.get('description') or ''))}",
    ]
    if fields.get("location"):
        lines.append(f"LOCATION:{_escape(str(fields['location']))}")
    lines += [
        f"STATUS:{'CANCELLED' if fields.get('status') == 'cancelled' else 'CONFIRMED'}",
        f"LAST-MODIFIED:{format_ical_datetime(entity.last_modified)}",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(lines) + "\r\n"


# ── Adapter ────────────────────────────────────────────────────────────────


class CalDAVAdapter(HttpProviderAdapter):
    """Serves both ``caldav`` (explicit url) and ``icloud`` (caldav_url) credentials."""

    supported_data_types = frozenset({DataType.APPOINTMENTS})

    def __init__(self, client_factory: ClientFactory = httpx.AsyncClient, timeout: float = 30.0) -> None:
        super().__init__(client_factory, timeout)

    @staticmethod
    def _calendar_url(credentials: CalDAVCredentials | ICloudCredentials) -> str:
        if isinstance(credentials, ICloudCredentials):
            return credentials.caldav_url.rstrip("/")
        return credentials.url.rstrip("/")

    @staticmethod
    def _auth(credentials: CalDAVCredentials | ICloudCredentials) -> httpx.BasicAuth:
        return httpx.BasicAuth(credentials.username, credentials.password)

    async def probe(self, provider: Provider, credentials: Any) -> None:
        await self._request(
            "PROPFIND",
            self._calendar_url(credentials),
            headers={"Content-Type": "application/xml", "Depth": "0"},
            content=_PROPFIND_BODY,
            auth=self._auth(credentials),
        )

    async def fetch_records(self, provider: Provider, data_type: DataType, window: SyncWindow) -> list[SyncableEntity]:
        credentials = self._require_credentials(provider)
        body = _REPORT_TEMPLATE.format(
            start=format_ical_datetime(window.start),
            end=format_ical_datetime(window.end),
        )
        response = await self._request(
            "REPORT",
            self._calendar_url(credentials),
            headers={"Content-Type": "application/xml", "Depth": "1"},
            content=body,
            auth=self._auth(credentials),
        )
        return parse_events(response.text)

    async def create_record(self, provider: Provider, entity: SyncableEntity) -> str:
        uid = uuid.uuid4().hex
        await self._put_event(provider, uid, entity)
        return uid

    async def update_record(self, provider: Provider, external_id: str, entity: SyncableEntity) -> None:
        await self._put_event(provider, external_id, entity)

    async def _put_event(self, provider: Provider, uid: str, entity: SyncableEntity) -> None:
        credentials = self._require_credentials(provider)
        await self._request(
            "PUT",
            f"{self._calendar_url(credentials)}/{uid}.ics",
            headers={"Content-Type": "text/calendar; charset=utf-8"},
            content=to_ical(uid, entity),
            auth=self._auth(credentials),
        )
