"""Field-level conflict detection and resolution.

Resolution rules per conflicting field:
- internal-wins: internal value is written to the external side
- external-wins: external value is written to the internal side
- merge: the side with the strictly newer lastModified wins; an exact
  tie goes to internal
- manual: the conflict waits in the pending list until an operator
  resolves it; nothing is written meanwhile

Resolved conflicts leave the pending list once their writes are applied.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

import structlog

from src.clinic_sync.sync.errors import ConflictNotFound
from src.clinic_sync.sync.schemas import Conflict, ConflictPolicy, Resolution, SyncableEntity

logger = structlog.get_logger(__name__)


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        return value.strip()
    return value


class ConflictDetector:
    """Diffs the field maps of a matched pair."""

    @staticmethod
    def diff(internal: SyncableEntity, external: SyncableEntity) -> list[str]:
        """Names of fields whose values differ. A missing key equals None."""
        names = sorted(set(internal.fields) | set(external.fields))
        return [
            name for name in names
            if _comparable(internal.fields.get(name)) != _comparable(external.fields.get(name))
        ]

    def detect(self, provider_id: str, internal: SyncableEntity, external: SyncableEntity) -> Conflict | None:
        fields = self.diff(internal, external)
        if not fields:
            return None
        return Conflict(
            provider_id=provider_id,
            entity_type=internal.entity_type,
            internal_record=internal,
            external_record=external,
            conflicting_fields=fields,
        )


@dataclass
class ConflictOutcome:
    """Writes implied by a resolution.

    ``internal_patch`` goes to the datastore, ``external_patch`` to the
    provider. ``merged`` holds the final value of every conflicting field.
    Empty patches when the conflict is pending.
    """

    conflict: Conflict
    internal_patch: dict[str, Any] = field(default_factory=dict)
    external_patch: dict[str, Any] = field(default_factory=dict)
    merged: dict[str, Any] = field(default_factory=dict)

    @property
    def pending(self) -> bool:
        return not self.conflict.resolved


def apply_resolution(conflict: Conflict, resolution: Resolution) -> ConflictOutcome:
    internal = conflict.internal_record
    external = conflict.external_record
    outcome = ConflictOutcome(conflict=conflict)

    for name in conflict.conflicting_fields:
        if resolution == Resolution.INTERNAL_WINS:
            internal_wins = True
        elif resolution == Resolution.EXTERNAL_WINS:
            internal_wins = False
        else:
            internal_wins = not external.last_modified > internal.last_modified

        if internal_wins:
            value = internal.fields.get(name)
            outcome.external_patch[name] = value
        else:
            value = external.fields.get(name)
            outcome.internal_patch[name] = value
        outcome.merged[name] = value

    conflict.resolution = resolution
    conflict.resolved = True
    return outcome


def _pending_key(conflict: Conflict) -> tuple[str, str, str | None, str | None]:
    return (
        conflict.provider_id,
        conflict.entity_type.value,
        conflict.internal_record.internal_id,
        conflict.external_record.external_id,
    )


class ConflictResolver:
    """Applies a provider's policy and owns the pending (manual) list."""

    def __init__(self, detector: ConflictDetector | None = None) -> None:
        self._detector = detector or ConflictDetector()
        self._pending: dict[str, Conflict] = {}

    def process(
        self,
        provider_id: str,
        policy: ConflictPolicy,
        internal: SyncableEntity,
        external: SyncableEntity,
    ) -> ConflictOutcome | None:
        """Detect and, unless the policy is manual, resolve. None when equal."""
        conflict = self._detector.detect(provider_id, internal, external)
        if conflict is None:
            return None

        if policy == ConflictPolicy.MANUAL:
            conflict = self._add_pending(conflict)
            return ConflictOutcome(conflict=conflict)

        outcome = apply_resolution(conflict, Resolution(policy.value))
        logger.info(
            "conflicts.auto_resolved",
            provider_id=provider_id,
            entity_type=conflict.entity_type.value,
            policy=policy.value,
            fields=conflict.conflicting_fields,
        )
        return outcome

    def _add_pending(self, conflict: Conflict) -> Conflict:
        key = _pending_key(conflict)
        for existing in self._pending.values():
            if _pending_key(existing) == key:
                existing.internal_record = conflict.internal_record
                existing.external_record = conflict.external_record
                existing.conflicting_fields = conflict.conflicting_fields
                return existing
        self._pending[conflict.id] = conflict
        logger.info(
            "conflicts.pending_added",
            conflict_id=conflict.id,
            provider_id=conflict.provider_id,
            entity_type=conflict.entity_type.value,
            fields=conflict.conflicting_fields,
        )
        return conflict

    def get(self, conflict_id: str) -> Conflict:
        try:
            return self._pending[conflict_id]
        except KeyError:
            raise ConflictNotFound(conflict_id) from None

    def resolve(self, conflict_id: str, resolution: Resolution) -> ConflictOutcome:
        """Compute the writes for an operator decision.

        The conflict stays pending until ``mark_applied`` confirms the
        writes went through.

        Raises:
            ConflictNotFound: Unknown or already applied conflict id.
        """
        conflict = self.get(conflict_id).model_copy(deep=True)
        return apply_resolution(conflict, resolution)

    def mark_applied(self, conflict_id: str) -> None:
        self._pending.pop(conflict_id, None)
        logger.info("conflicts.applied", conflict_id=conflict_id)

    def pending(self, provider_id: str | None = None) -> list[Conflict]:
        conflicts = sorted(self._pending.values(), key=lambda c: c.detected_at)
        if provider_id is None:
            return conflicts
        return [c for c in conflicts if c.provider_id == provider_id]

    def clear(self, provider_id: str | None = None) -> None:
        if provider_id is None:
            self._pending.clear()
            return
        for conflict_id in [k for k, c in self._pending.items() if c.provider_id == provider_id]:
            del self._pending[conflict_id]
