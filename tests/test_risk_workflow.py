"""
Tests for the risk register service.

Covers:
    - creation, sequential codes, validation
    - edits (incl. demotion of APPROVED risks) and CLOSED immutability
    - treatments and residual scoring
    - retirement
    - control links
    - heatmap, pending / retired listings, delete
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
from grc.models.risk import Risk, RiskControl
from grc.models.versioning import SNAPSHOT_RISK_RETIRED, ApprovalStatus, VersionSnapshot
from grc.services import risk_service, version_store
from grc.services.risk_service import risk_workflow as wf


@pytest.fixture()
def risk(org, members):
    return risk_service.create_risk(
        members["user"], org.id, {"title": "Ransomware", "likelihood": 4, "impact": 5, "category": "Cyber"},
    )


def _approve(risk_id, members, bump="minor"):
    wf.submit_for_review(risk_id, members["user"], "Review", bump)
    wf.first_approval(risk_id, members["local_admin"])
    wf.second_approval(risk_id, members["admin"])


def _reload(risk_id):
    db.session.expire_all()
    return db.session.get(Risk, risk_id)


# ═════════════════════════════════════════════════════════════════════════════
# Create
# ═════════════════════════════════════════════════════════════════════════════


class TestCreate:
    def test_defaults(self, risk, members):
        assert risk.risk_code == "RISK-001"
        assert risk.inherent_risk == 20
        assert risk.approval_status == ApprovalStatus.DRAFT
        assert str(risk.version) == "0.1"
        assert risk.created_by_id == members["user"].user_id

    def test_codes_are_sequential_per_org(self, org, other_org, risk, members, make_member):
        second = risk_service.create_risk(members["user"], org.id, {"title": "Second"})
        assert second.risk_code == "RISK-002"
        outsider_admin = make_member("ADMIN", target_org=other_org)
        elsewhere = risk_service.create_risk(outsider_admin, other_org.id, {"title": "Elsewhere"})
        assert elsewhere.risk_code == "RISK-001"

    def test_title_required(self, org, members):
        with pytest.raises(ValidationError) as exc:
            risk_service.create_risk(members["user"], org.id, {"title": "  "})
        assert exc.value.details == {"title": "required"}

    @pytest.mark.parametrize("score", [0, 6, "high", 2.5])
    def test_score_range(self, org, members, score):
        with pytest.raises(ValidationError):
            risk_service.create_risk(members["user"], org.id, {"title": "Bad", "likelihood": score})

    def test_viewer_cannot_create(self, org, members):
        with pytest.raises(AuthorizationError):
            risk_service.create_risk(members["viewer"], org.id, {"title": "Nope"})

    def test_unknown_org(self, members):
        with pytest.raises(NotFoundError):
            risk_service.create_risk(members["global_admin"], 999, {"title": "Nope"})


# ═════════════════════════════════════════════════════════════════════════════
# Edit
# ═════════════════════════════════════════════════════════════════════════════


class TestEdit:
    def test_recomputes_inherent(self, risk, members):
        updated = risk_service.update_risk(members["user"], risk.id, {"likelihood": 1})
        assert updated.inherent_risk == 5

    def test_approved_edit_demotes_and_keeps_version(self, risk, members):
        _approve(risk.id, members, bump="major")
        approved = _reload(risk.id)
        assert approved.approval_status == ApprovalStatus.APPROVED
        assert str(approved.version) == "1.0"

        risk_service.update_risk(members["user"], risk.id, {"description": "Now with more detail"})
        edited = _reload(risk.id)
        assert edited.approval_status == ApprovalStatus.DRAFT
        assert str(edited.version) == "1.0"

    def test_no_op_edit_does_not_demote(self, risk, members):
        _approve(risk.id, members)
        risk_service.update_risk(members["user"], risk.id, {"title": "Ransomware"})
        assert _reload(risk.id).approval_status == ApprovalStatus.APPROVED

    def test_pending_edit_allowed(self, risk, members):
        wf.submit_for_review(risk.id, members["user"], "Review")
        risk_service.update_risk(members["user"], risk.id, {"comments": "typo fix"})
        assert _reload(risk.id).approval_status == ApprovalStatus.PENDING_FIRST_APPROVAL

    def test_unknown_field(self, risk, members):
        with pytest.raises(ValidationError) as exc:
            risk_service.update_risk(members["user"], risk.id, {"approval_status": "APPROVED"})
        assert exc.value.details == {"approval_status": "not editable"}

    def test_status_closed_only_via_retire(self, risk, members):
        with pytest.raises(ValidationError):
            risk_service.update_risk(members["user"], risk.id, {"status": "CLOSED"})

    def test_viewer_cannot_edit(self, risk, members):
        with pytest.raises(AuthorizationError):
            risk_service.update_risk(members["viewer"], risk.id, {"title": "Changed"})

    def test_closed_risk_is_immutable(self, risk, members):
        wf.retire(risk.id, members["admin"], "Accepted by board")
        with pytest.raises(InvalidStateTransitionError):
            risk_service.update_risk(members["admin"], risk.id, {"title": "Changed"})


# ═════════════════════════════════════════════════════════════════════════════
# Treatment / retirement
# ═════════════════════════════════════════════════════════════════════════════


class TestTreatment:
    def test_residual_copied_onto_risk(self, risk, members):
        treatment = risk_service.add_treatment(members["user"], risk.id, {
            "residual_probability": 2, "residual_impact": 3, "risk_response": "MITIGATE",
            "control_description": "EDR rollout", "control_implementation_date": "2030-01-31",
        })
        assert treatment.residual_risk == 6
        assert treatment.treatment_days is not None
        fresh = _reload(risk.id)
        assert fresh.residual_risk == 6
        assert fresh.treatment == "MITIGATE"
        assert fresh.control_description == "EDR rollout"
        assert len(fresh.treatments) == 1

    def test_response_required(self, risk, members):
        with pytest.raises(ValidationError) as exc:
            risk_service.add_treatment(members["user"], risk.id, {"residual_probability": 1, "residual_impact": 1})
        assert exc.value.details == {"risk_response": "required"}

    def test_treatment_demotes_approved(self, risk, members):
        _approve(risk.id, members)
        risk_service.add_treatment(members["user"], risk.id, {
            "residual_probability": 1, "residual_impact": 1, "risk_response": "ACCEPT",
        })
        assert _reload(risk.id).approval_status == ApprovalStatus.DRAFT


class TestRetire:
    def test_retire(self, risk, members):
        record = wf.retire(risk.id, members["user"], "Asset decommissioned")
        assert record.reason == "Asset decommissioned"
        fresh = _reload(risk.id)
        assert fresh.approval_status == ApprovalStatus.CLOSED
        assert fresh.status == "CLOSED"
        assert fresh.is_retired is True
        assert str(fresh.version) == "0.1"
        head = version_store.list_snapshots(fresh)[0]
        assert head.action == SNAPSHOT_RISK_RETIRED
        assert head.change_description == "Risk retired: Asset decommissioned"

    def test_reason_required(self, risk, members):
        with pytest.raises(ValidationError):
            wf.retire(risk.id, members["admin"], "")

    def test_cannot_retire_twice(self, risk, members):
        wf.retire(risk.id, members["admin"], "Gone")
        with pytest.raises(InvalidStateTransitionError):
            wf.retire(risk.id, members["admin"], "Gone again")

    def test_retired_listing(self, org, risk, members):
        risk_service.create_risk(members["user"], org.id, {"title": "Still open"})
        wf.retire(risk.id, members["admin"], "Gone")
        retired = risk_service.retired_risks(members["auditor"], org.id)
        assert [r.id for r in retired] == [risk.id]
        active = risk_service.list_risks(members["auditor"], org.id)
        assert [r.title for r in active] == ["Still open"]
        everything = risk_service.list_risks(members["auditor"], org.id, include_retired=True)
        assert len(everything) == 2


class TestControlLinks:
    @pytest.fixture()
    def controls(self, make_control):
        return [make_control("A.5.1", "Policies"), make_control("A.8.13", "Information backup")]

    def test_link_and_replace(self, risk, members, controls):
        risk_service.link_controls(members["user"], risk.id, [controls[1].id, controls[0].id])
        linked = _reload(risk.id).to_dict()["linked_controls"]
        assert sorted(c["control_id"] for c in linked) == ["A.5.1", "A.8.13"]

        risk_service.link_controls(members["user"], risk.id, [controls[0].id])
        assert [c["id"] for c in _reload(risk.id).to_dict()["linked_controls"]] == [controls[0].id]
        assert RiskControl.query.count() == 1

    def test_clear(self, risk, members, controls):
        risk_service.link_controls(members["user"], risk.id, [controls[0].id])
        risk_service.link_controls(members["user"], risk.id, [])
        assert _reload(risk.id).control_links == []

    def test_audited_once_per_change(self, risk, members, controls):
        risk_service.link_controls(members["user"], risk.id, [controls[0].id])
        risk_service.link_controls(members["user"], risk.id, [controls[0].id])
        logs = AuditLog.query.filter_by(entity_type="risk", entity_id=str(risk.id), action="UPDATE").all()
        assert len(logs) == 1

    def test_foreign_control_refused(self, risk, members, other_org, make_control):
        foreign = make_control("A.5.1", "Elsewhere", target_org=other_org)
        with pytest.raises(ValidationError) as exc:
            risk_service.link_controls(members["user"], risk.id, [foreign.id])
        assert exc.value.details == {"control_ids": "invalid"}
        assert RiskControl.query.count() == 0

    @pytest.mark.parametrize("value", [None, "1", [1, "2"], [True]])
    def test_malformed_ids(self, risk, members, value):
        with pytest.raises(ValidationError):
            risk_service.link_controls(members["user"], risk.id, value)

    def test_viewer_refused(self, risk, members, controls):
        with pytest.raises(AuthorizationError):
            risk_service.link_controls(members["viewer"], risk.id, [controls[0].id])

    def test_approved_risk_demotes(self, risk, members, controls):
        _approve(risk.id, members)
        risk_service.link_controls(members["user"], risk.id, [controls[0].id])
        assert _reload(risk.id).approval_status == ApprovalStatus.DRAFT

    def test_closed_risk_refused(self, risk, members, controls):
        wf.retire(risk.id, members["admin"], "Gone")
        with pytest.raises(InvalidStateTransitionError):
            risk_service.link_controls(members["admin"], risk.id, [controls[0].id])

    def test_links_removed_with_risk(self, risk, members, controls):
        risk_service.link_controls(members["user"], risk.id, [controls[0].id])
        risk_service.delete_risk(members["admin"], risk.id)
        assert RiskControl.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# Queries / delete
# ═════════════════════════════════════════════════════════════════════════════


class TestQueries:
    def test_heatmap(self, org, risk, members):
        risk_service.create_risk(members["user"], org.id, {"title": "Flood", "likelihood": 1, "impact": 5})
        retired = risk_service.create_risk(members["user"], org.id, {"title": "Old", "likelihood": 4, "impact": 5})
        wf.retire(retired.id, members["admin"], "Gone")

        heat = risk_service.compute_heatmap(members["viewer"], org.id)
        assert heat["counts"][3][4] == 1
        assert heat["counts"][0][4] == 1
        assert sum(sum(row) for row in heat["counts"]) == 2
        assert heat["matrix"][3][4][0]["risk_code"] == "RISK-001"

    def test_pending(self, org, risk, members):
        risk_service.create_risk(members["user"], org.id, {"title": "Draft only"})
        wf.submit_for_review(risk.id, members["user"], "Review")
        pending = risk_service.pending_approvals(members["local_admin"], org.id)
        assert [r.id for r in pending] == [risk.id]

    def test_search(self, org, risk, members):
        risk_service.create_risk(members["user"], org.id, {"title": "Insider threat"})
        found = risk_service.list_risks(members["user"], org.id, search="insider")
        assert [r.title for r in found] == ["Insider threat"]

    def test_outsider_cannot_list(self, org, members):
        with pytest.raises(AuthorizationError):
            risk_service.list_risks(members["outsider"], org.id)

    def test_delete_requires_admin(self, risk, members):
        with pytest.raises(AuthorizationError):
            risk_service.delete_risk(members["user"], risk.id)

    def test_delete_removes_history(self, risk, members):
        risk_id = risk.id
        risk_service.delete_risk(members["local_admin"], risk_id)
        assert db.session.get(Risk, risk_id) is None
        assert VersionSnapshot.query.filter_by(entity_type="risk", entity_id=str(risk_id)).count() == 0
