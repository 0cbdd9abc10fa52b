"""Per-provider credential validation.

Checks required credential fields against the provider type's model, then
performs one read-only probe through the provider's adapter. There is no
internal retry: a failed probe is reported once and the caller decides.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from src.clinic_sync.sync.adapters.base import AdapterRegistry
from src.clinic_sync.sync.schemas import Provider, parse_credentials

logger = structlog.get_logger(__name__)


class ValidationFailure(str, Enum):
    MISSING_FIELD = "missing-field"
    UNAUTHORIZED = "unauthorized"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class ValidationOutcome:
    ok: bool
    failure: ValidationFailure | None = None
    message: str = ""

    @classmethod
    def success(cls) -> ValidationOutcome:
        return cls(ok=True)

    @classmethod
    def failed(cls, failure: ValidationFailure, message: str) -> ValidationOutcome:
        return cls(ok=False, failure=failure, message=message)


def _missing_fields_message(exc: ValidationError) -> str:
    fields = sorted({".".join(str(p) for p in err["loc"][1:]) or err["msg"] for err in exc.errors()})
    return "Missing or invalid credential fields: " + ", ".join(fields)


class CredentialValidator:
    """Validates credentials for every registered provider type.

    Args:
        adapters: Adapter lookup used for the probe.
        timeout: Hard deadline for one probe, in seconds.
    """

    def __init__(self, adapters: AdapterRegistry, timeout: float = 30.0) -> None:
        self._adapters = adapters
        self._timeout = timeout

    def parse(self, provider: Provider, raw: dict[str, Any]) -> tuple[Any | None, ValidationOutcome]:
        """Check required fields only; no network."""
        try:
            return parse_credentials(provider.type, raw), ValidationOutcome.success()
        except ValidationError as exc:
            return None, ValidationOutcome.failed(ValidationFailure.MISSING_FIELD, _missing_fields_message(exc))

    async def probe(self, provider: Provider, credentials: Any) -> ValidationOutcome:
        """Probe the provider with already-parsed credentials.

        Raises:
            UnsupportedProviderType: No adapter is registered for the type.
        """
        adapter = self._adapters.get(provider.type)
        try:
            await asyncio.wait_for(adapter.probe(provider, credentials), timeout=self._timeout)
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code
            failure = ValidationFailure.UNAUTHORIZED if code in (401, 403) else ValidationFailure.UNREACHABLE
            outcome = ValidationOutcome.failed(failure, f"{provider.name} returned HTTP {code}")
        except (httpx.HTTPError, asyncio.TimeoutError, OSError, ValueError) as exc:
            outcome = ValidationOutcome.failed(
                ValidationFailure.UNREACHABLE,
                f"{provider.name} unreachable: {str(exc) or type(exc).__name__}",
            )
        else:
            outcome = ValidationOutcome.success()

        logger.info(
            "validator.probe_complete",
            provider_id=provider.id,
            provider_type=provider.type.value,
            ok=outcome.ok,
            failure=outcome.failure.value if outcome.failure else None,
        )
        return outcome

    async def validate(self, provider: Provider, raw: dict[str, Any]) -> tuple[Any | None, ValidationOutcome]:
        """Parse ``raw`` and probe with it.

        Returns:
            (credentials, outcome). ``credentials`` is None when the
            required fields are missing.
        """
        credentials, outcome = self.parse(provider, raw)
        if credentials is None:
            logger.info(
                "validator.missing_fields",
                provider_id=provider.id,
                provider_type=provider.type.value,
                message=outcome.message,
            )
            return None, outcome
        return credentials, await self.probe(provider, credentials)
