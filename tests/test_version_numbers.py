"""
Tests for version numbering and the approval transition table.

Covers:
    - Version parsing / formatting / ordering
    - next_version allocation (minor carry, major floor, none)
    - validate_transition rules for entity and document workflows
"""

import pytest

from grc.core.exceptions import ValidationError
from grc.services.approval_workflow import validate_transition
from grc.services.version_numbers import INITIAL_VERSION, Version, next_version, normalize_bump


# ═════════════════════════════════════════════════════════════════════════════
# Version value object
# ═════════════════════════════════════════════════════════════════════════════


class TestVersion:
    @pytest.mark.parametrize("raw, text", [
        ("0.1", "0.1"), ("2.3", "2.3"), ("3", "3.0"), (1.2, "1.2"), (4, "4.0"), (" 1.0 ", "1.0"),
    ])
    def test_parse_and_format(self, raw, text):
        assert str(Version.parse(raw)) == text

    @pytest.mark.parametrize("raw", ["2.35", "abc", "", None, True, "nan", "-1.0", "1e30", {"v": 1}])
    def test_parse_rejects(self, raw):
        with pytest.raises(ValueError):
            Version.parse(raw)

    def test_ordering_is_numeric(self):
        assert Version.parse("1.9") < Version.parse("2.0")
        assert Version.parse("0.9") < Version.parse("1.0")
        assert max(Version.parse("2.1"), Version.parse("10.0")) == Version.parse("10.0")

    def test_major_minor(self):
        v = Version.parse("2.7")
        assert (v.major, v.minor) == (2, 7)

    def test_initial_version(self):
        assert str(INITIAL_VERSION) == "0.1"


# ═════════════════════════════════════════════════════════════════════════════
# Allocation
# ═════════════════════════════════════════════════════════════════════════════


class TestNextVersion:
    def test_first_version(self):
        assert next_version(None, "minor") == INITIAL_VERSION
        assert next_version(None, "major") == INITIAL_VERSION
        assert next_version(None, None) == INITIAL_VERSION

    def test_none_keeps_number(self):
        assert next_version(Version.parse("1.4"), "none") == Version.parse("1.4")
        assert next_version(Version.parse("1.4"), None) == Version.parse("1.4")

    def test_minor(self):
        assert str(next_version(Version.parse("0.1"), "minor")) == "0.2"

    def test_minor_carries_into_major(self):
        assert str(next_version(Version.parse("2.9"), "minor")) == "3.0"

    def test_major_floors(self):
        assert str(next_version(Version.parse("0.3"), "major")) == "1.0"
        assert str(next_version(Version.parse("2.0"), "major")) == "3.0"

    def test_repeated_minor_bumps_do_not_drift(self):
        v = INITIAL_VERSION
        for _ in range(29):
            v = next_version(v, "minor")
        assert str(v) == "3.0"

    def test_bump_is_case_insensitive(self):
        assert normalize_bump(" MAJOR ") == "major"

    def test_invalid_bump(self):
        with pytest.raises(ValidationError) as exc:
            next_version(Version.parse("1.0"), "patch")
        assert exc.value.details == {"version_bump": "invalid"}

    @pytest.mark.parametrize("bump", [1, 0.1, ["minor"], True])
    def test_non_string_bump(self, bump):
        with pytest.raises(ValidationError) as exc:
            normalize_bump(bump)
        assert exc.value.details == {"version_bump": "invalid"}


# ═════════════════════════════════════════════════════════════════════════════
# Transition table
# ═════════════════════════════════════════════════════════════════════════════

ALL_STATES = ["DRAFT", "PENDING_FIRST_APPROVAL", "PENDING_SECOND_APPROVAL", "APPROVED", "REJECTED", "CLOSED"]

ENTITY_ALLOWED = {
    "submit_for_review": {"DRAFT", "REJECTED"},
    "first_approval": {"PENDING_FIRST_APPROVAL"},
    "second_approval": {"PENDING_SECOND_APPROVAL"},
    "reject": {"PENDING_FIRST_APPROVAL", "PENDING_SECOND_APPROVAL"},
}


class TestValidateTransition:
    @pytest.mark.parametrize("action", sorted(ENTITY_ALLOWED))
    @pytest.mark.parametrize("status", ALL_STATES)
    def test_entity_grid(self, action, status):
        result = validate_transition(status, action)
        assert result["valid"] is (status in ENTITY_ALLOWED[action])
        if not result["valid"]:
            assert status in result["reason"]

    def test_targets(self):
        assert validate_transition("DRAFT", "submit_for_review")["to"] == "PENDING_FIRST_APPROVAL"
        assert validate_transition("PENDING_FIRST_APPROVAL", "first_approval")["to"] == "PENDING_SECOND_APPROVAL"
        assert validate_transition("PENDING_SECOND_APPROVAL", "second_approval")["to"] == "APPROVED"
        assert validate_transition("PENDING_SECOND_APPROVAL", "reject")["to"] == "REJECTED"

    @pytest.mark.parametrize("action", ["new_revision", "discard_revision"])
    def test_document_actions_refused_for_entities(self, action):
        result = validate_transition("APPROVED", action)
        assert result["valid"] is False
        assert "only available for documents" in result["reason"]

    def test_document_actions(self):
        assert validate_transition("APPROVED", "new_revision", document_level=True)["to"] == "DRAFT"
        assert validate_transition("DRAFT", "discard_revision", document_level=True)["to"] == "APPROVED"
        assert validate_transition("DRAFT", "new_revision", document_level=True)["valid"] is False

    def test_retire_needs_support(self):
        assert validate_transition("APPROVED", "retire")["valid"] is False
        assert validate_transition("APPROVED", "retire", supports_retire=True)["to"] == "CLOSED"
        assert validate_transition("CLOSED", "retire", supports_retire=True)["valid"] is False

    def test_unknown_action(self):
        result = validate_transition("DRAFT", "publish")
        assert result["valid"] is False
        assert "Unknown action" in result["reason"]
