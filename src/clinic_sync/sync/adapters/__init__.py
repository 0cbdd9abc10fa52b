"""Provider adapters -- one per external system family.

Provides abstract ProviderAdapter interface with concrete implementations:
- GoogleCalendarAdapter: Google Calendar API v3
- OutlookCalendarAdapter: Microsoft Graph calendar events
- CalDAVAdapter: generic CalDAV servers and iCloud
- FHIRAdapter / AthenaAdapter: FHIR R4 clinical-data systems

default_adapters() builds an AdapterRegistry covering every ProviderType.
"""

from __future__ import annotations

import httpx

from src.clinic_sync.sync.adapters.base import AdapterRegistry, ProviderAdapter
from src.clinic_sync.sync.adapters.caldav import CalDAVAdapter
from src.clinic_sync.sync.adapters.fhir import AthenaAdapter, FHIRAdapter
from src.clinic_sync.sync.adapters.google import GoogleCalendarAdapter
from src.clinic_sync.sync.adapters.http import ClientFactory, HttpProviderAdapter
from src.clinic_sync.sync.adapters.outlook import OutlookCalendarAdapter
from src.clinic_sync.sync.schemas import ProviderType


def default_adapters(
    client_factory: ClientFactory = httpx.AsyncClient,
    timeout: float = 30.0,
) -> AdapterRegistry:
    """Adapter set for the built-in provider types."""
    caldav = CalDAVAdapter(client_factory, timeout)
    fhir = FHIRAdapter(client_factory, timeout)
    return AdapterRegistry({
        ProviderType.GOOGLE: GoogleCalendarAdapter(client_factory, timeout),
        ProviderType.OUTLOOK: OutlookCalendarAdapter(client_factory, timeout),
        ProviderType.ICLOUD: caldav,
        ProviderType.CALDAV: caldav,
        ProviderType.EPIC: fhir,
        ProviderType.CERNER: fhir,
        ProviderType.ALLSCRIPTS: fhir,
        ProviderType.ECLINICALWORKS: fhir,
        ProviderType.FHIR: fhir,
        ProviderType.ATHENA: AthenaAdapter(client_factory, timeout),
    })


__all__ = [
    "AdapterRegistry",
    "AthenaAdapter",
    "CalDAVAdapter",
    "FHIRAdapter",
    "GoogleCalendarAdapter",
    "HttpProviderAdapter",
    "OutlookCalendarAdapter",
    "ProviderAdapter",
    "default_adapters",
]
