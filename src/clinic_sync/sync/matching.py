"""Pairing internal and external records.

Records pair by externalId first. Unlinked records then pair heuristically
when entity type matches, their title-like fields are equal (case-insensitive,
whitespace collapsed), and their time-like fields are within the tolerance.

    appointments  title="title"      time="start"
    patients      title="full_name"  time="birth_date"

Other entity types pair by externalId only. Every output list is ordered
by time field ascending (records without one last) so passes replay
deterministically.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from src.clinic_sync.sync.schemas import DataType, SyncableEntity, parse_datetime

MATCH_KEYS: dict[DataType, tuple[str, str]] = {
    DataType.APPOINTMENTS: ("title", "start"),
    DataType.PATIENTS: ("full_name", "birth_date"),
}

# Types whose time field is an event time rather than an attribute.
WINDOWED_TYPES: frozenset[DataType] = frozenset({DataType.APPOINTMENTS})

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


class MatchKind(str, Enum):
    EXTERNAL_ID = "external_id"
    HEURISTIC = "heuristic"


@dataclass
class Match:
    internal: SyncableEntity
    external: SyncableEntity
    kind: MatchKind


@dataclass
class MatchPlan:
    matches: list[Match] = field(default_factory=list)
    external_only: list[SyncableEntity] = field(default_factory=list)
    internal_only: list[SyncableEntity] = field(default_factory=list)


def normalize_title(value: Any) -> str:
    return " ".join(str(value or "").split()).lower()


def time_value(entity: SyncableEntity) -> datetime | None:
    keys = MATCH_KEYS.get(entity.entity_type)
    if keys is None:
        return None
    return parse_datetime(entity.fields.get(keys[1]))


def sort_key(entity: SyncableEntity) -> tuple[datetime, str]:
    return (
        time_value(entity) or _FAR_FUTURE,
        entity.external_id or entity.internal_id or "",
    )


def is_same_record(a: SyncableEntity, b: SyncableEntity, tolerance_seconds: float = 60) -> bool:
    """Heuristic identity: same type, same title, times within tolerance."""
    if a.entity_type != b.entity_type:
        return False
    keys = MATCH_KEYS.get(a.entity_type)
    if keys is None:
        return False
    title_key, _ = keys
    title_a = normalize_title(a.fields.get(title_key))
    if not title_a or title_a != normalize_title(b.fields.get(title_key)):
        return False
    time_a, time_b = time_value(a), time_value(b)
    if time_a is None or time_b is None:
        return False
    return abs((time_a - time_b).total_seconds()) <= tolerance_seconds


def build_match_plan(
    internal: list[SyncableEntity],
    external: list[SyncableEntity],
    tolerance_seconds: float = 60,
) -> MatchPlan:
    plan = MatchPlan()
    by_external_id = {r.external_id: r for r in internal if r.external_id}
    claimed: set[int] = set()
    unmatched_external: list[SyncableEntity] = []

    for ext in sorted(external, key=sort_key):
        linked = by_external_id.get(ext.external_id) if ext.external_id else None
        if linked is not None and id(linked) not in claimed:
            claimed.add(id(linked))
            plan.matches.append(Match(linked, ext, MatchKind.EXTERNAL_ID))
        else:
            unmatched_external.append(ext)

    for ext in unmatched_external:
        ext_time = time_value(ext)
        candidates = [
            r for r in internal
            if id(r) not in claimed and not r.external_id and is_same_record(r, ext, tolerance_seconds)
        ]
        if not candidates:
            plan.external_only.append(ext)
            continue
        best = min(
            candidates,
            key=lambda r: abs((time_value(r) - ext_time).total_seconds()),  # type: ignore[operator]
        )
        claimed.add(id(best))
        plan.matches.append(Match(best, ext, MatchKind.HEURISTIC))

    plan.matches.sort(key=lambda m: sort_key(m.external))
    plan.internal_only = sorted((r for r in internal if id(r) not in claimed), key=sort_key)
    return plan
