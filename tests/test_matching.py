"""Tests for record pairing: externalId links first, then the heuristic rule."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from src.clinic_sync.sync.matching import MatchKind, build_match_plan, is_same_record, normalize_title
from src.clinic_sync.sync.schemas import DataType, Origin, SyncableEntity

T0 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def _appt(title: str, start: datetime, origin: Origin, external_id=None, internal_id=None) -> SyncableEntity:
    return SyncableEntity(
        internal_id=internal_id,
        external_id=external_id,
        entity_type=DataType.APPOINTMENTS,
        fields={"title": title, "start": start},
        origin=origin,
    )


class TestIsSameRecord:
    def test_title_normalized_and_time_within_tolerance(self):
        a = _appt("  Annual   CHECKUP ", T0, Origin.INTERNAL)
        b = _appt("annual checkup", T0 + timedelta(seconds=45), Origin.EXTERNAL)
        assert is_same_record(a, b)

    def test_outside_tolerance(self):
        a = _appt("Checkup", T0, Origin.INTERNAL)
        b = _appt("Checkup", T0 + timedelta(seconds=61), Origin.EXTERNAL)
        assert not is_same_record(a, b)

    def test_string_and_datetime_times_compare(self):
        a = _appt("Checkup", T0, Origin.INTERNAL)
        b = SyncableEntity(
            entity_type=DataType.APPOINTMENTS,
            fields={"title": "Checkup", "start": "2024-01-15T10:00:30Z"},
            origin=Origin.EXTERNAL,
        )
        assert is_same_record(a, b)

    def test_patients_use_name_and_birth_date(self):
        a = SyncableEntity(
            entity_type=DataType.PATIENTS,
            fields={"full_name": "Ana Diaz", "birth_date": "1980-02-01"},
            origin=Origin.INTERNAL,
        )
        b = a.model_copy(update={"origin": Origin.EXTERNAL})
        assert is_same_record(a, b)

    def test_different_entity_types_never_match(self):
        a = _appt("Checkup", T0, Origin.INTERNAL)
        b = a.model_copy(update={"entity_type": DataType.PATIENTS})
        assert not is_same_record(a, b)

    def test_normalize_title(self):
        assert normalize_title(" Follow\tUp  Visit ") == "follow up visit"
        assert normalize_title(None) == ""


class TestBuildMatchPlan:
    def test_external_id_link_wins_over_heuristic(self):
        linked = _appt("Renamed", T0 + timedelta(hours=3), Origin.INTERNAL, external_id="ext-1", internal_id="i1")
        lookalike = _appt("Checkup", T0, Origin.INTERNAL, internal_id="i2")
        ext = _appt("Checkup", T0, Origin.EXTERNAL, external_id="ext-1")

        plan = build_match_plan([linked, lookalike], [ext])

        [match] = plan.matches
        assert match.kind == MatchKind.EXTERNAL_ID
        assert match.internal.internal_id == "i1"
        assert [r.internal_id for r in plan.internal_only] == ["i2"]
        assert plan.external_only == []

    def test_heuristic_skips_records_linked_elsewhere(self):
        linked_elsewhere = _appt("Checkup", T0, Origin.INTERNAL, external_id="ext-other", internal_id="i1")
        ext = _appt("Checkup", T0, Origin.EXTERNAL, external_id="ext-1")

        plan = build_match_plan([linked_elsewhere], [ext])

        assert plan.matches == []
        assert [r.external_id for r in plan.external_only] == ["ext-1"]

    def test_heuristic_picks_closest_time(self):
        far = _appt("Checkup", T0 + timedelta(seconds=50), Origin.INTERNAL, internal_id="far")
        near = _appt("Checkup", T0 + timedelta(seconds=5), Origin.INTERNAL, internal_id="near")
        ext = _appt("Checkup", T0, Origin.EXTERNAL, external_id="ext-1")

        plan = build_match_plan([far, near], [ext])

        [match] = plan.matches
        assert match.kind == MatchKind.HEURISTIC
        assert match.internal.internal_id == "near"

    def test_each_internal_record_matches_once(self):
        internal = _appt("Checkup", T0, Origin.INTERNAL, internal_id="i1")
        first = _appt("Checkup", T0, Origin.EXTERNAL, external_id="ext-1")
        second = _appt("Checkup", T0 + timedelta(seconds=10), Origin.EXTERNAL, external_id="ext-2")

        plan = build_match_plan([internal], [second, first])

        assert len(plan.matches) == 1
        assert plan.matches[0].external.external_id == "ext-1"
        assert [r.external_id for r in plan.external_only] == ["ext-2"]

    def test_outputs_are_time_ordered(self):
        externals = [
            _appt(f"Visit {n}", T0 + timedelta(hours=h), Origin.EXTERNAL, external_id=f"ext-{n}")
            for n, h in ((1, 5), (2, 1), (3, 3))
        ]
        plan = build_match_plan([], externals)
        assert [r.external_id for r in plan.external_only] == ["ext-2", "ext-3", "ext-1"]
