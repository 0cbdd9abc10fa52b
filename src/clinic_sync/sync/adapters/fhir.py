"""FHIR R4 adapter for clinical-data providers.

Serves epic, cerner, allscripts, eclinicalworks and generic ``fhir``
providers. Resource locations come from the provider's endpoints block;
Patient and Appointment resources are flattened into entity fields:

    patients:      full_name, given_name, family_name, birth_date, gender, phone, email
    appointments:  title, description, start, end, status, patient_reference
"""

from __future__ import annotations

from typing import Any

import httpx

from src.clinic_sync.sync.adapters.http import ClientFactory, HttpProviderAdapter, iso, parse_datetime
from src.clinic_sync.sync.errors import UnsupportedDataType
from src.clinic_sync.sync.schemas import (
    DataType,
    Origin,
    Provider,
    ProviderEndpoints,
    SyncableEntity,
    SyncWindow,
)

PAGE_SIZE = 100


def _telecom(resource: dict[str, Any], system: str) -> str | None:
    for entry in resource.get("telecom") or []:
        if entry.get("system") == system:
            return entry.get("value")
    return None


def patient_to_fields(resource: dict[str, Any]) -> dict[str, Any]:
    name = (resource.get("name") or [{}])[0]
    given = " ".join(name.get("given") or [])
    family = name.get("family") or ""
    full_name = name.get("text") or " ".join(part for part in (given, family) if part)
    return {
        "full_name": full_name,
        "given_name": given or None,
        "family_name": family or None,
        "birth_date": resource.get("birthDate"),
        "gender": resource.get("gender"),
        "phone": _telecom(resource, "phone"),
        "email": _telecom(resource, "email"),
    }


def fields_to_patient(fields: dict[str, Any], external_id: str | None = None) -> dict[str, Any]:
    name: dict[str, Any] = {"text": fields.get("full_name")}
    if fields.get("given_name"):
        name["given"] = str(fields["given_name"]).split()
    if fields.get("family_name"):
        name["family"] = fields["family_name"]
    telecom = [
        {"system": system, "value": fields[key]}
        for system, key in (("phone", "phone"), ("email", "email"))
        if fields.get(key)
    ]
    resource: dict[str, Any] = {
        "resourceType": "Patient",
        "name": [name],
        "birthDate": iso(fields.get("birth_date")),
        "gender": fields.get("gender"),
        "telecom": telecom,
    }
    if external_id:
        resource["id"] = external_id
    return resource


def appointment_to_fields(resource: dict[str, Any]) -> dict[str, Any]:
    service_type = (resource.get("serviceType") or [{}])[0]
    patient_reference = None
    for participant in resource.get("participant") or []:
        reference = (participant.get("actor") or {}).get("reference", "")
        if reference.startswith("Patient/"):
            patient_reference = reference
            break
    return {
        "title": resource.get("description") or service_type.get("text") or "Appointment",
        "description": resource.get("comment"),
        "start": parse_datetime(resource.get("start")),
        "end": parse_datetime(resource.get("end")),
        "status": resource.get("status"),
        "patient_reference": patient_reference,
    }


def fields_to_appointment(fields: dict[str, Any], external_id: str | None = None) -> dict[str, Any]:
    resource: dict[str, Any] = {
        "resourceType": "Appointment",
        "status": fields.get("status") or "booked",
        "description": fields.get("title"),
        "comment": fields.get("description"),
        "start": iso(fields.get("start")),
        "end": iso(fields.get("end") or fields.get("start")),
    }
    if fields.get("patient_reference"):
        resource["participant"] = [
            {"actor": {"reference": fields["patient_reference"]}, "status": "accepted"},
        ]
    if external_id:
        resource["id"] = external_id
    return resource


class FHIRAdapter(HttpProviderAdapter):
    supported_data_types = frozenset({DataType.PATIENTS, DataType.APPOINTMENTS})

    probe_path = "/metadata"

    def __init__(self, client_factory: ClientFactory = httpx.AsyncClient, timeout: float = 30.0) -> None:
        super().__init__(client_factory, timeout)

    @staticmethod
    def _endpoints(provider: Provider) -> ProviderEndpoints:
        if provider.endpoints is None:
            msg = f"Provider {provider.id} has no endpoints configured"
            raise ValueError(msg)
        return provider.endpoints

    @staticmethod
    def _headers(credentials: Any) -> dict[str, str]:
        headers = {"Accept": "application/fhir+json"}
        token = getattr(credentials, "access_token", None)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _resource_path(self, provider: Provider, data_type: DataType) -> str:
        endpoints = self._endpoints(provider)
        if data_type == DataType.PATIENTS:
            path = endpoints.patient_path
        elif data_type == DataType.APPOINTMENTS:
            path = endpoints.appointment_path
        else:
            raise UnsupportedDataType(provider.type.value, data_type.value)
        return endpoints.base_url.rstrip("/") + path

    async def probe(self, provider: Provider, credentials: Any) -> None:
        base = self._endpoints(provider).base_url.rstrip("/")
        await self._request("GET", base + self.probe_path, headers=self._headers(credentials))

    async def fetch_records(self, provider: Provider, data_type: DataType, window: SyncWindow) -> list[SyncableEntity]:
        credentials = self._require_credentials(provider)
        url = self._resource_path(provider, data_type)
        params: list[tuple[str, str]] = [("_count", str(PAGE_SIZE))]
        if data_type == DataType.APPOINTMENTS:
            params += [("date", f"ge{iso(window.start)}"), ("date", f"le{iso(window.end)}")]

        entities: list[SyncableEntity] = []
        next_url: str | None = url
        while next_url:
            response = await self._request(
                "GET",
                next_url,
                headers=self._headers(credentials),
                params=params if next_url == url else None,
            )
            bundle = response.json()
            for entry in bundle.get("entry") or []:
                resource = entry.get("resource") or {}
                if resource.get("id"):
                    entities.append(self.to_entity(resource, data_type))
            next_url = next(
                (link.get("url") for link in bundle.get("link") or [] if link.get("relation") == "next"),
                None,
            )
        return entities

    async def create_record(self, provider: Provider, entity: SyncableEntity) -> str:
        credentials = self._require_credentials(provider)
        response = await self._request(
            "POST",
            self._resource_path(provider, entity.entity_type),
            headers={**self._headers(credentials), "Content-Type": "application/fhir+json"},
            json=self.to_resource(entity),
        )
        if response.content:
            created_id = response.json().get("id")
            if created_id:
                return created_id
        # Servers may answer 201 with only a Location: {base}/{type}/{id}/_history/{vid}
        location = response.headers.get("Location", "")
        parts = [p for p in location.split("/") if p]
        if "_history" in parts:
            parts = parts[: parts.index("_history")]
        if not parts:
            msg = f"FHIR create returned no resource id for {provider.id}"
            raise ValueError(msg)
        return parts[-1]

    async def update_record(self, provider: Provider, external_id: str, entity: SyncableEntity) -> None:
        credentials = self._require_credentials(provider)
        await self._request(
            "PUT",
            f"{self._resource_path(provider, entity.entity_type)}/{external_id}",
            headers={**self._headers(credentials), "Content-Type": "application/fhir+json"},
            json=self.to_resource(entity, external_id),
        )

    @staticmethod
    def to_entity(resource: dict[str, Any], data_type: DataType) -> SyncableEntity:
        if data_type == DataType.PATIENTS:
            fields = patient_to_fields(resource)
        else:
            fields = appointment_to_fields(resource)
        entity = SyncableEntity(
            external_id=resource["id"],
            entity_type=data_type,
            fields=fields,
            origin=Origin.EXTERNAL,
        )
        updated = parse_datetime((resource.get("meta") or {}).get("lastUpdated"))
        if updated is not None:
            entity.last_modified = updated
        return entity

    @staticmethod
    def to_resource(entity: SyncableEntity, external_id: str | None = None) -> dict[str, Any]:
        if entity.entity_type == DataType.PATIENTS:
            return fields_to_patient(entity.fields, external_id)
        return fields_to_appointment(entity.fields, external_id)


class AthenaAdapter(FHIRAdapter):
    """athenahealth: same resource mapping, practice-info identity probe."""

    probe_path = "/practiceinfo"
