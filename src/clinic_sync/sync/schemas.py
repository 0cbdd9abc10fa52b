"""Sync domain schemas: providers, credentials, entities, conflicts, results.

Pydantic models shared by the registry, the engine, the adapters and the
operator API. Credentials are a tagged union keyed by ``kind`` so each
provider type declares its own required fields and is validated once at
configuration time.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 string, date or datetime into an aware UTC datetime.

    Naive values are taken to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class ProviderType(str, Enum):
    """Supported external system kinds."""

    GOOGLE = "google"
    OUTLOOK = "outlook"
    ICLOUD = "icloud"
    CALDAV = "caldav"
    EPIC = "epic"
    CERNER = "cerner"
    ATHENA = "athena"
    ALLSCRIPTS = "allscripts"
    ECLINICALWORKS = "eclinicalworks"
    FHIR = "fhir"


class SyncDirection(str, Enum):
    BIDIRECTIONAL = "bidirectional"
    INBOUND_ONLY = "inbound-only"
    OUTBOUND_ONLY = "outbound-only"

    @property
    def allows_inbound(self) -> bool:
        return self in (SyncDirection.BIDIRECTIONAL, SyncDirection.INBOUND_ONLY)

    @property
    def allows_outbound(self) -> bool:
        return self in (SyncDirection.BIDIRECTIONAL, SyncDirection.OUTBOUND_ONLY)


class ConflictPolicy(str, Enum):
    """How a matched pair with differing fields is settled."""

    INTERNAL_WINS = "internal-wins"
    EXTERNAL_WINS = "external-wins"
    MANUAL = "manual"
    MERGE = "merge"


class Resolution(str, Enum):
    INTERNAL_WINS = "internal-wins"
    EXTERNAL_WINS = "external-wins"
    MERGE = "merge"


class ProviderStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    SYNCING = "syncing"
    ERROR = "error"


class DataType(str, Enum):
    """Entity kinds a provider can exchange."""

    APPOINTMENTS = "appointments"
    PATIENTS = "patients"
    MEDICAL_RECORDS = "medical_records"
    PRESCRIPTIONS = "prescriptions"
    LAB_RESULTS = "lab_results"
    BILLING = "billing"


class Origin(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"


# ── Credentials (tagged union) ──────────────────────────────────────────────


class GoogleCredentials(BaseModel):
    """Bearer token for the Calendar REST API; the refresh token is kept for rotation."""

    kind: Literal["google"] = "google"
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None


class OutlookCredentials(BaseModel):
    kind: Literal["outlook"] = "outlook"
    access_token: str = Field(min_length=1)


class ICloudCredentials(BaseModel):
    kind: Literal["icloud"] = "icloud"
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    caldav_url: str = "https://caldav.icloud.com"


class CalDAVCredentials(BaseModel):
    kind: Literal["caldav"] = "caldav"
    url: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class EpicCredentials(BaseModel):
    kind: Literal["epic"] = "epic"
    client_id: str = Field(min_length=1)
    access_token: str = Field(min_length=1)


class CernerCredentials(BaseModel):
    kind: Literal["cerner"] = "cerner"
    access_token: str = Field(min_length=1)


class AthenaCredentials(BaseModel):
    kind: Literal["athena"] = "athena"
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    access_token: str = Field(min_length=1)


class AllscriptsCredentials(BaseModel):
    kind: Literal["allscripts"] = "allscripts"
    access_token: str = Field(min_length=1)


class EClinicalWorksCredentials(BaseModel):
    kind: Literal["eclinicalworks"] = "eclinicalworks"
    access_token: str = Field(min_length=1)


class FHIRCredentials(BaseModel):
    kind: Literal["fhir"] = "fhir"
    access_token: str | None = None


ProviderCredentials = Annotated[
    Union[
        GoogleCredentials,
        OutlookCredentials,
        ICloudCredentials,
        CalDAVCredentials,
        EpicCredentials,
        CernerCredentials,
        AthenaCredentials,
        AllscriptsCredentials,
        EClinicalWorksCredentials,
        FHIRCredentials,
    ],
    Field(discriminator="kind"),
]

_credentials_adapter: TypeAdapter[Any] = TypeAdapter(ProviderCredentials)


def parse_credentials(provider_type: ProviderType, raw: dict[str, Any]) -> Any:
    """Validate a raw credential payload against the provider type's model.

    The ``kind`` tag is forced to the provider type so callers cannot
    smuggle in credentials shaped for another provider.

    Raises:
        pydantic.ValidationError: When a required field is missing or empty.
    """
    payload = {**raw, "kind": provider_type.value}
    return _credentials_adapter.validate_python(payload)


# ── Provider ────────────────────────────────────────────────────────────────


class ProviderSettings(BaseModel):
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    sync_frequency_minutes: int = Field(default=15, ge=0)
    conflict_resolution_policy: ConflictPolicy = ConflictPolicy.MANUAL
    data_types: list[DataType] = Field(default_factory=lambda: [DataType.APPOINTMENTS])


class ProviderEndpoints(BaseModel):
    """Base URL and resource paths for clinical-data providers."""

    base_url: str
    patient_path: str = "/Patient"
    appointment_path: str = "/Appointment"


class Provider(BaseModel):
    """A configured external system endpoint.

    ``credentials`` is held in memory only; ``snapshot()`` is what gets
    persisted and exposed to operators.
    """

    id: str
    name: str
    type: ProviderType
    enabled: bool = False
    credentials: ProviderCredentials | None = None
    settings: ProviderSettings = Field(default_factory=ProviderSettings)
    endpoints: ProviderEndpoints | None = None
    status: ProviderStatus = ProviderStatus.DISCONNECTED
    last_sync_at: datetime | None = None

    def snapshot(self) -> dict[str, Any]:
        """Serializable view with credentials stripped."""
        return self.model_dump(mode="json", exclude={"credentials"})


# ── Entities and conflicts ──────────────────────────────────────────────────


class SyncWindow(BaseModel):
    start: datetime
    end: datetime


class SyncableEntity(BaseModel):
    """A record on either side of a sync, reduced to a field map.

    Internal records keep one link per provider in ``external_ids``
    (provider id -> remote id). ``external_id`` is the remote id as seen by
    the provider being synced: the record's own id on external records,
    and the link for that provider on internal records read through
    ``Datastore.query_by_window``.
    """

    model_config = ConfigDict(validate_assignment=True)

    internal_id: str | None = None
    external_id: str | None = None
    external_ids: dict[str, str] = Field(default_factory=dict)
    entity_type: DataType
    fields: dict[str, Any] = Field(default_factory=dict)
    last_modified: datetime = Field(default_factory=_utcnow)
    origin: Origin

    @field_validator("last_modified")
    @classmethod
    def _normalize_last_modified(cls, v: datetime) -> datetime:
        """Store as aware UTC; naive values from drivers are taken to be UTC."""
        return parse_datetime(v)  # type: ignore[return-value]


class Conflict(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    provider_id: str
    entity_type: DataType
    internal_record: SyncableEntity
    external_record: SyncableEntity
    conflicting_fields: list[str]
    resolution: Resolution | None = None
    resolved: bool = False
    detected_at: datetime = Field(default_factory=_utcnow)


class SyncResult(BaseModel):
    """Outcome of syncing one data type during one pass."""

    provider_id: str
    data_type: DataType
    success: bool = False
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    conflicts: list[Conflict] = Field(default_factory=list)
    duration_ms: int = 0
    timestamp: datetime = Field(default_factory=_utcnow)


class SyncReport(BaseModel):
    """All per-data-type results of one provider pass, plus totals."""

    provider_id: str
    results: list[SyncResult] = Field(default_factory=list)
    duration_ms: int = 0
    timestamp: datetime = Field(default_factory=_utcnow)

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def records_processed(self) -> int:
        return sum(r.records_processed for r in self.results)

    @property
    def records_created(self) -> int:
        return sum(r.records_created for r in self.results)

    @property
    def records_updated(self) -> int:
        return sum(r.records_updated for r in self.results)

    @property
    def records_skipped(self) -> int:
        return sum(r.records_skipped for r in self.results)

    @property
    def errors(self) -> list[str]:
        return [e for r in self.results for e in r.errors]

    @property
    def conflicts(self) -> list[Conflict]:
        return [c for r in self.results for c in r.conflicts]

    def summary(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "success": self.success,
            "records_processed": self.records_processed,
            "records_created": self.records_created,
            "records_updated": self.records_updated,
            "records_skipped": self.records_skipped,
            "errors": self.errors,
            "conflicts": len(self.conflicts),
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
        }
