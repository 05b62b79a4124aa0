"""
Unit Tests: Conflict Detection and Resolution

Tests:
    - Value normalization (None, missing, "", NaN)
    - Two-way and three-way field diff
    - System and derived field immunity
    - Resolution parsing and merge building
"""

import math

import pytest

from coedit.conflict.detector import (
    EMPTY,
    ConflictDetector,
    ConflictKind,
    normalize,
    values_equal,
)
from coedit.conflict.resolution import (
    CustomMerge,
    KeepServer,
    ResolutionChoice,
    build_merge,
    parse_resolution,
)
from coedit.core.errors import ResolutionError


class TestNormalization:
    """Tests for empty-value equivalence."""

    @pytest.mark.parametrize("value", [None, "", float("nan")])
    def test_empty_values_normalize(self, value):
        assert normalize(value) is EMPTY

    def test_non_empty_passes_through(self):
        assert normalize(0) == 0
        assert normalize("x") == "x"
        assert normalize(False) is False

    def test_empty_values_equal_each_other(self):
        assert values_equal(None, "")
        assert values_equal("", math.nan)
        assert values_equal(None, math.nan)

    def test_zero_is_not_empty(self):
        assert not values_equal(0, None)
        assert not values_equal(0, "")


class TestTwoWayDetection:
    """Tests for field diff without a base snapshot."""

    def test_differing_field_conflicts(self):
        detector = ConflictDetector()
        server = {"id": 1, "version": 6, "name": "Widget B"}
        local = {"id": 1, "name": "Widget A"}

        assert detector.conflicting_fields(server, local) == {"name"}

    def test_system_fields_never_conflict(self):
        detector = ConflictDetector()
        server = {
            "id": 1, "version": 9, "name": "Widget",
            "created_at": "2024-01-01", "updated_at": "2024-06-01",
            "last_modified_by": "user-b",
        }
        local = {
            "id": 1, "version": 5, "name": "Widget",
            "created_at": "2023-01-01", "updated_at": "2024-01-02",
            "last_modified_by": "user-a",
        }

        report = detector.detect("products", 1, 5, server, local)

        assert not report.has_conflict
        assert report.kind is ConflictKind.VERSION_ONLY

    def test_derived_fields_ignored(self):
        detector = ConflictDetector(derived_fields={"quantity_available"})
        server = {"id": 1, "quantity_available": 10}
        local = {"id": 1, "quantity_available": 3}

        assert detector.conflicting_fields(server, local) == frozenset()

    def test_null_and_empty_string_match(self):
        detector = ConflictDetector()
        server = {"id": 1, "notes": None}
        local = {"id": 1, "notes": ""}

        assert detector.conflicting_fields(server, local) == frozenset()

    def test_missing_field_matches_empty(self):
        detector = ConflictDetector()
        server = {"id": 1, "memo": float("nan")}
        local = {"id": 1}

        assert detector.conflicting_fields(server, local) == frozenset()


class TestThreeWayDetection:
    """Tests for field diff relative to a base snapshot."""

    def test_disjoint_changes_do_not_conflict(self):
        detector = ConflictDetector()
        base = {"id": 1, "a": 1, "b": 1, "c": 1}
        local = {"id": 1, "a": 2, "b": 2, "c": 1}
        server = {"id": 1, "a": 1, "b": 1, "c": 3}

        assert detector.conflicting_fields(server, local, base) == frozenset()

    def test_both_sides_changed_conflicts(self):
        detector = ConflictDetector()
        base = {"id": 1, "a": 1}
        local = {"id": 1, "a": 2}
        server = {"id": 1, "a": 3}

        assert detector.conflicting_fields(server, local, base) == {"a"}

    def test_same_new_value_is_not_a_conflict(self):
        detector = ConflictDetector()
        base = {"id": 1, "a": 1}
        local = {"id": 1, "a": 2}
        server = {"id": 1, "a": 2}

        assert detector.conflicting_fields(server, local, base) == frozenset()

    def test_changed_fields(self):
        detector = ConflictDetector()
        base = {"id": 1, "version": 5, "a": 1, "b": None}
        local = {"id": 1, "version": 5, "a": 2, "b": ""}

        assert detector.changed_fields(local, base) == {"a"}


class TestConflictReport:
    """Tests for report contents."""

    def test_report_carries_both_sides(self):
        detector = ConflictDetector()
        server = {"id": 1, "version": 6, "name": "Widget B", "last_modified_by": "user-b"}
        local = {"id": 1, "name": "Widget A"}

        report = detector.detect("products", 1, 5, server, local, active_users=["user-b"])

        assert report.expected_version == 5
        assert report.current_version == 6
        assert report.server_snapshot["name"] == "Widget B"
        assert report.local_snapshot["name"] == "Widget A"
        assert report.last_modified_by == "user-b"
        assert "user-b" in report.message
        assert report.active_users == ("user-b",)

    def test_to_dict(self):
        detector = ConflictDetector()
        report = detector.detect(
            "products", 1, 5,
            {"id": 1, "version": 6, "name": "B", "price": 2},
            {"id": 1, "name": "A", "price": 3},
        )
        data = report.to_dict()

        assert data["type"] == "version_conflict"
        assert data["kind"] == "field_collision"
        assert data["conflicting_fields"] == ["name", "price"]
        assert data["record_id"] == "1"
        assert "another user" in data["message"]


class TestResolutionParsing:
    """Tests for accepted resolution spellings."""

    @pytest.mark.parametrize("choice", ["keepLocal", "keep_local", "LOCAL", ResolutionChoice.KEEP_LOCAL])
    def test_keep_local(self, choice):
        assert parse_resolution(choice) is ResolutionChoice.KEEP_LOCAL

    @pytest.mark.parametrize("choice", ["keepServer", "keep_server", "server", ResolutionChoice.KEEP_SERVER])
    def test_keep_server(self, choice):
        assert parse_resolution(choice) == KeepServer()

    def test_keep_server_touch_preserved(self):
        assert parse_resolution(KeepServer(touch=True)).touch is True

    def test_merged_mapping(self):
        resolution = parse_resolution({"merged": {"name": "Both"}})
        assert resolution == CustomMerge(record={"name": "Both"})

    @pytest.mark.parametrize("choice", ["discard", 42, {"merged": "x"}, {"other": {}}])
    def test_invalid_choices_raise(self, choice):
        with pytest.raises(ResolutionError):
            parse_resolution(choice)


class TestBuildMerge:
    """Tests for the merge builder."""

    def test_overlays_non_conflicting_local_fields(self):
        server = {"id": 1, "version": 6, "a": 1, "c": 3}
        local = {"id": 1, "version": 5, "a": 2, "b": 2}

        merged = build_merge(server, local, conflicting_fields=())

        assert merged == {"id": 1, "version": 6, "a": 2, "b": 2, "c": 3}

    def test_conflicting_fields_keep_server_value(self):
        merged = build_merge({"a": "server"}, {"a": "local"}, conflicting_fields={"a"})
        assert merged["a"] == "server"

    def test_changed_fields_restrict_overlay(self):
        server = {"a": 1, "b": 5}
        local = {"a": 2, "b": 1}

        merged = build_merge(server, local, conflicting_fields=(), changed_fields={"a"})

        assert merged == {"a": 2, "b": 5}
