"""
Tests for the generic two-stage approval workflow.

Uses risks as the carrier entity:
    - end-to-end submit → 1st approval → 2nd approval
    - reject and resubmit, version monotonicity
    - illegal (state, action) pairs leave status and version untouched
    - role gating and the order in which checks are applied
    - audit rows and snapshot rows written per transition
"""

import pytest

from grc.core.exceptions import (
    AuthorizationError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from grc.models import db
from grc.models.audit import AuditLog
from grc.models.risk import Risk
from grc.models.versioning import (
    SNAPSHOT_DRAFT_AND_REVIEW,
    SNAPSHOT_REJECTED,
    SNAPSHOT_SUBMITTED,
    ApprovalStatus,
)
from grc.services import risk_service, version_store
from grc.services.risk_service import risk_workflow as wf


@pytest.fixture()
def risk(org, members):
    return risk_service.create_risk(members["user"], org.id, {"title": "Phishing campaign"})


def _reload(risk_id):
    db.session.expire_all()
    return db.session.get(Risk, risk_id)


def _to_status(risk, members, status):
    """Drive ``risk`` into ``status`` through the public workflow."""
    if status == "DRAFT":
        return risk
    wf.submit_for_review(risk.id, members["user"], "Ready for review")
    if status == "PENDING_FIRST_APPROVAL":
        return risk
    if status == "REJECTED":
        wf.reject(risk.id, members["local_admin"], "Needs more detail")
        return risk
    wf.first_approval(risk.id, members["local_admin"])
    if status == "PENDING_SECOND_APPROVAL":
        return risk
    wf.second_approval(risk.id, members["admin"])
    if status == "APPROVED":
        return risk
    wf.retire(risk.id, members["admin"], "Obsolete")
    return risk


# ═════════════════════════════════════════════════════════════════════════════
# Happy path
# ═════════════════════════════════════════════════════════════════════════════


class TestEndToEnd:
    def test_create_submit_approve(self, risk, members):
        assert str(risk.version) == "0.1"
        assert risk.approval_status == ApprovalStatus.DRAFT
        assert [s.action for s in version_store.list_snapshots(risk)] == [SNAPSHOT_DRAFT_AND_REVIEW]

        wf.submit_for_review(risk.id, members["user"], "First assessment", "minor")
        risk = _reload(risk.id)
        assert str(risk.version) == "0.2"
        assert risk.approval_status == ApprovalStatus.PENDING_FIRST_APPROVAL
        snaps = version_store.list_snapshots(risk)
        assert len(snaps) == 2
        assert snaps[0].action == SNAPSHOT_SUBMITTED
        assert snaps[0].change_description == "First assessment"

        wf.first_approval(risk.id, members["local_admin"], "Looks right")
        risk = _reload(risk.id)
        assert risk.approval_status == ApprovalStatus.PENDING_SECOND_APPROVAL
        assert str(risk.version) == "0.2"

        wf.second_approval(risk.id, members["admin"])
        risk = _reload(risk.id)
        assert risk.approval_status == ApprovalStatus.APPROVED
        assert str(risk.version) == "0.2"
        assert len(version_store.list_snapshots(risk)) == 2

    def test_submit_without_bump_reuses_version_row(self, risk, members):
        wf.submit_for_review(risk.id, members["user"], "Same version")
        risk = _reload(risk.id)
        assert str(risk.version) == "0.1"
        snaps = version_store.list_snapshots(risk)
        assert len(snaps) == 1
        assert snaps[0].action == SNAPSHOT_SUBMITTED

    def test_reject_then_resubmit(self, risk, members):
        wf.submit_for_review(risk.id, members["user"], "Try one", "minor")
        wf.reject(risk.id, members["local_admin"], "Impact underestimated")
        risk = _reload(risk.id)
        assert risk.approval_status == ApprovalStatus.REJECTED
        assert str(risk.version) == "0.2"
        head = version_store.list_snapshots(risk)[0]
        assert head.action == SNAPSHOT_REJECTED
        assert head.change_description == "Rejected: Impact underestimated"

        wf.submit_for_review(risk.id, members["user"], "Try two", "minor")
        risk = _reload(risk.id)
        assert risk.approval_status == ApprovalStatus.PENDING_FIRST_APPROVAL
        assert str(risk.version) == "0.3"

    def test_second_level_reject_needs_approver(self, risk, members):
        _to_status(risk, members, "PENDING_SECOND_APPROVAL")
        with pytest.raises(AuthorizationError):
            wf.reject(risk.id, members["local_admin"], "Not at this level")
        wf.reject(risk.id, members["admin"], "Board disagrees")
        assert _reload(risk.id).approval_status == ApprovalStatus.REJECTED

    def test_versions_strictly_increase(self, risk, members):
        seen = [risk.version]
        for bump in ("minor", "major", "minor"):
            wf.submit_for_review(risk.id, members["user"], f"bump {bump}", bump)
            wf.reject(risk.id, members["local_admin"], "again")
            seen.append(_reload(risk.id).version)
        assert [str(v) for v in seen] == ["0.1", "0.2", "1.0", "1.1"]
        assert seen == sorted(set(seen))

    def test_audit_rows(self, risk, members):
        _to_status(risk, members, "APPROVED")
        actions = [
            row.action for row in
            AuditLog.query.filter_by(entity_type="risk", entity_id=str(risk.id)).order_by(AuditLog.id)
        ]
        assert actions == ["CREATE", "UPDATE", "APPROVE", "APPROVE"]


# ═════════════════════════════════════════════════════════════════════════════
# State machine legality
# ═════════════════════════════════════════════════════════════════════════════

ILLEGAL = [
    ("DRAFT", "first_approval"), ("DRAFT", "second_approval"), ("DRAFT", "reject"),
    ("PENDING_FIRST_APPROVAL", "submit_for_review"), ("PENDING_FIRST_APPROVAL", "second_approval"),
    ("PENDING_SECOND_APPROVAL", "submit_for_review"), ("PENDING_SECOND_APPROVAL", "first_approval"),
    ("APPROVED", "submit_for_review"), ("APPROVED", "first_approval"),
    ("APPROVED", "second_approval"), ("APPROVED", "reject"),
    ("REJECTED", "first_approval"), ("REJECTED", "second_approval"), ("REJECTED", "reject"),
    ("CLOSED", "submit_for_review"), ("CLOSED", "first_approval"), ("CLOSED", "reject"),
    ("APPROVED", "new_revision"), ("DRAFT", "discard_revision"),
]


def _call(action, risk_id, members):
    admin = members["admin"]
    if action == "submit_for_review":
        return wf.submit_for_review(risk_id, admin, "desc", "minor")
    if action == "reject":
        return wf.reject(risk_id, admin, "reason")
    if action == "new_revision":
        return wf.new_revision(risk_id, admin, "desc")
    return getattr(wf, action)(risk_id, admin)


class TestIllegalTransitions:
    @pytest.mark.parametrize("status, action", ILLEGAL)
    def test_refused_without_side_effects(self, risk, members, status, action):
        _to_status(risk, members, status)
        before = _reload(risk.id)
        status_before, version_before = before.approval_status, before.version
        snaps_before = len(version_store.list_snapshots(before))

        with pytest.raises(InvalidStateTransitionError) as exc:
            _call(action, risk.id, members)
        assert status_before in str(exc.value)

        after = _reload(risk.id)
        assert after.approval_status == status_before
        assert after.version == version_before
        assert len(version_store.list_snapshots(after)) == snaps_before


# ═════════════════════════════════════════════════════════════════════════════
# Role gating and check order
# ═════════════════════════════════════════════════════════════════════════════


class TestGating:
    def test_viewer_cannot_submit(self, risk, members):
        with pytest.raises(AuthorizationError):
            wf.submit_for_review(risk.id, members["viewer"], "desc")

    def test_viewer_cannot_retire(self, risk, members):
        with pytest.raises(AuthorizationError):
            wf.retire(risk.id, members["viewer"], "gone")

    def test_outsider_cannot_submit(self, risk, members):
        with pytest.raises(AuthorizationError):
            wf.submit_for_review(risk.id, members["outsider"], "desc")

    @pytest.mark.parametrize("who", ["user", "auditor", "viewer"])
    def test_first_approval_needs_reviewer(self, risk, members, who):
        _to_status(risk, members, "PENDING_FIRST_APPROVAL")
        with pytest.raises(AuthorizationError):
            wf.first_approval(risk.id, members[who])

    @pytest.mark.parametrize("who", ["local_admin", "admin", "global_admin"])
    def test_first_approval_reviewers(self, risk, members, who):
        _to_status(risk, members, "PENDING_FIRST_APPROVAL")
        wf.first_approval(risk.id, members[who])
        assert _reload(risk.id).approval_status == ApprovalStatus.PENDING_SECOND_APPROVAL

    @pytest.mark.parametrize("who", ["user", "auditor", "local_admin"])
    def test_second_approval_needs_approver(self, risk, members, who):
        _to_status(risk, members, "PENDING_SECOND_APPROVAL")
        with pytest.raises(AuthorizationError):
            wf.second_approval(risk.id, members[who])

    def test_missing_description_checked_first(self, members):
        # Required fields are validated before the entity is even loaded
        with pytest.raises(ValidationError):
            wf.submit_for_review(424242, members["admin"], "   ")

    def test_missing_reason_checked_first(self, members):
        with pytest.raises(ValidationError):
            wf.reject(424242, members["admin"], None)

    def test_unknown_entity(self, members):
        with pytest.raises(NotFoundError):
            wf.submit_for_review(424242, members["admin"], "desc")

    def test_membership_before_state(self, risk, members):
        _to_status(risk, members, "APPROVED")
        with pytest.raises(AuthorizationError):
            wf.first_approval(risk.id, members["outsider"])

    def test_state_before_role(self, risk, members):
        with pytest.raises(InvalidStateTransitionError):
            wf.second_approval(risk.id, members["user"])

    def test_invalid_bump(self, risk, members):
        with pytest.raises(ValidationError):
            wf.submit_for_review(risk.id, members["user"], "desc", "patch")
