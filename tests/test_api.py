"""
HTTP-level tests: actor header, response envelope, error mapping and a
walk through each blueprint's main routes.
"""

import pytest

from grc.models.audit import AuditLog
from grc.services import risk_service


@pytest.fixture()
def h(members):
    """X-User-Id headers keyed like the members fixture."""
    return {role: {"X-User-Id": str(actor.user_id)} for role, actor in members.items()}


def _create_risk(client, org, headers, **fields):
    body = {"organization_id": org.id, "title": "API risk", **fields}
    return client.post("/api/v1/risks", json=body, headers=headers)


# ═════════════════════════════════════════════════════════════════════════════
# Actor header / envelope
# ═════════════════════════════════════════════════════════════════════════════


class TestActorHeader:
    def test_missing_header(self, client, org):
        res = client.get(f"/api/v1/risks?organization_id={org.id}")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_unknown_user(self, client, org):
        res = client.get(f"/api/v1/risks?organization_id={org.id}", headers={"X-User-Id": "4242"})
        assert res.status_code == 401

    def test_non_numeric(self, client, org):
        res = client.get(f"/api/v1/risks?organization_id={org.id}", headers={"X-User-Id": "admin"})
        assert res.status_code == 401

    def test_health_needs_no_actor(self, client):
        assert client.get("/api/v1/health").get_json()["status"] == "ok"
        live = client.get("/api/v1/health/live")
        assert live.status_code == 200

    def test_request_id_header(self, client, org, h):
        res = client.get(f"/api/v1/risks?organization_id={org.id}", headers=h["user"])
        assert res.headers.get("X-Request-ID")


class TestEnvelope:
    def test_create_and_get(self, client, org, h):
        res = _create_risk(client, org, h["user"], likelihood=4, impact=4)
        assert res.status_code == 201
        body = res.get_json()
        assert body["message"] == "Risk created"
        risk = body["data"]
        assert risk["risk_code"] == "RISK-001"
        assert risk["version"] == "0.1"
        assert risk["approval_status"] == "DRAFT"

        res = client.get(f"/api/v1/risks/{risk['id']}", headers=h["viewer"])
        assert res.status_code == 200
        assert res.get_json()["data"]["inherent_risk"] == 16


# ═════════════════════════════════════════════════════════════════════════════
# Error mapping
# ═════════════════════════════════════════════════════════════════════════════


class TestErrorMapping:
    def test_validation_required(self, client, org, h):
        res = _create_risk(client, org, h["user"], title="")
        assert res.status_code == 400
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_REQUIRED"
        assert body["details"] == {"title": "required"}

    def test_missing_org_id(self, client, h):
        res = client.get("/api/v1/risks", headers=h["user"])
        assert res.status_code == 400
        assert res.get_json()["details"] == {"organization_id": "required"}

    def test_forbidden(self, client, org, h):
        res = _create_risk(client, org, h["viewer"])
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_not_found(self, client, h):
        res = client.get("/api/v1/risks/999", headers=h["admin"])
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_invalid_transition(self, client, org, h):
        risk = _create_risk(client, org, h["user"]).get_json()["data"]
        res = client.post(f"/api/v1/risks/{risk['id']}/first-approval", json={}, headers=h["admin"])
        assert res.status_code == 400
        body = res.get_json()
        assert body["code"] == "ERR_INVALID_TRANSITION"
        assert body["details"] == {"action": "first_approval", "current_status": "DRAFT"}
        assert "DRAFT" in body["error"]

    def test_conflict(self, client, org, h):
        risk = _create_risk(client, org, h["user"]).get_json()["data"]
        res = client.patch(
            f"/api/v1/risks/{risk['id']}", json={"title": "x", "expected_version": "0.3"}, headers=h["user"],
        )
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    @pytest.mark.parametrize("body, field", [
        ({"change_description": "x", "expected_version": "1e30"}, "expected_version"),
        ({"change_description": "x", "version_bump": 1}, "version_bump"),
    ])
    def test_malformed_transition_input(self, client, org, h, body, field):
        risk = _create_risk(client, org, h["user"]).get_json()["data"]
        res = client.post(f"/api/v1/risks/{risk['id']}/submit-for-review", json=body, headers=h["user"])
        assert res.status_code == 400
        assert field in res.get_json()["details"]
        assert client.get(f"/api/v1/risks/{risk['id']}", headers=h["user"]).get_json()["data"]["approval_status"] == "DRAFT"

    @pytest.mark.parametrize("fields, field", [
        ({"title": 123}, "title"),
        ({"description": {"text": "x"}}, "description"),
        ({"treatment": ["MITIGATE"]}, "treatment"),
    ])
    def test_non_text_risk_fields(self, client, org, h, fields, field):
        res = _create_risk(client, org, h["user"], **fields)
        assert res.status_code == 400
        assert res.get_json()["details"] == {field: "invalid"}

    def test_non_text_exemption_fields(self, client, org, h, make_control):
        control = make_control("A.8.24", "Use of cryptography")
        res = client.post("/api/v1/exemptions", json={
            "organization_id": org.id, "title": "Legacy ERP", "control_ref_id": control.id,
            "justification": 7, "valid_until": "2031-06-30",
        }, headers=h["user"])
        assert res.status_code == 400
        assert res.get_json()["details"] == {"justification": "invalid"}

    def test_non_text_document_title(self, client, org, h):
        res = client.patch("/api/v1/risks/document", json={"organization_id": org.id, "title": 5}, headers=h["user"])
        assert res.status_code == 400
        assert res.get_json()["details"] == {"title": "invalid"}

    def test_non_object_body(self, client, org, h):
        res = client.post("/api/v1/risks", json=[1, 2], headers=h["user"])
        assert res.status_code == 400

    def test_unknown_route(self, client, h):
        res = client.get("/api/v1/nothing-here", headers=h["user"])
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# Blueprints
# ═════════════════════════════════════════════════════════════════════════════


class TestRiskRoutes:
    def test_approval_cycle(self, client, org, h):
        risk = _create_risk(client, org, h["user"]).get_json()["data"]
        base = f"/api/v1/risks/{risk['id']}"

        res = client.post(f"{base}/submit-for-review",
                          json={"change_description": "Initial", "version_bump": "minor"}, headers=h["user"])
        assert res.status_code == 200
        assert res.get_json()["data"]["version"] == "0.2"

        res = client.post(f"{base}/submit-for-review", json={"change_description": "x"}, headers=h["user"])
        assert res.status_code == 400

        assert client.post(f"{base}/first-approval", json={}, headers=h["user"]).status_code == 403
        assert client.post(f"{base}/first-approval", json={"comments": "ok"}, headers=h["local_admin"]).status_code == 200
        res = client.post(f"{base}/second-approval", json={"expected_version": "0.2"}, headers=h["admin"])
        assert res.get_json()["data"]["approval_status"] == "APPROVED"

        versions = client.get(f"{base}/versions", headers=h["viewer"]).get_json()["data"]
        assert [v["version"] for v in versions] == ["0.2", "0.1"]

        res = client.patch(f"{base}/versions/{versions[0]['id']}",
                           json={"change_description": "Initial assessment"}, headers=h["auditor"])
        assert res.status_code == 200
        assert res.get_json()["data"]["change_description"] == "Initial assessment"

    def test_reject_requires_reason(self, client, org, h):
        risk = _create_risk(client, org, h["user"]).get_json()["data"]
        base = f"/api/v1/risks/{risk['id']}"
        client.post(f"{base}/submit-for-review", json={"change_description": "go"}, headers=h["user"])
        res = client.post(f"{base}/reject", json={}, headers=h["local_admin"])
        assert res.status_code == 400
        assert res.get_json()["details"] == {"reason": "required"}

    def test_treatment_and_retire(self, client, org, h):
        risk = _create_risk(client, org, h["user"]).get_json()["data"]
        base = f"/api/v1/risks/{risk['id']}"
        res = client.post(f"{base}/treatment", json={
            "residual_probability": 1, "residual_impact": 2, "risk_response": "TRANSFER",
        }, headers=h["user"])
        assert res.status_code == 201

        res = client.post(f"{base}/retire", json={"reason": "Insured"}, headers=h["admin"])
        assert res.status_code == 200
        retired = client.get(f"/api/v1/risks/retired?organization_id={org.id}", headers=h["user"]).get_json()
        assert [r["id"] for r in retired["data"]] == [risk["id"]]

    def test_link_controls(self, client, org, h, make_control):
        control = make_control("A.8.13", "Information backup")
        risk = _create_risk(client, org, h["user"]).get_json()["data"]
        assert risk["linked_controls"] == []
        url = f"/api/v1/risks/{risk['id']}/controls"

        res = client.post(url, json={"control_ids": [control.id], "expected_version": "0.1"}, headers=h["user"])
        assert res.status_code == 200
        assert res.get_json()["data"]["linked_controls"][0]["control_id"] == "A.8.13"

        assert client.post(url, json={"control_ids": [control.id]}, headers=h["viewer"]).status_code == 403
        bad = client.post(url, json={"control_ids": "A.8.13"}, headers=h["user"])
        assert bad.status_code == 400
        assert bad.get_json()["details"] == {"control_ids": "invalid"}

    def test_heatmap_and_delete(self, client, org, h):
        risk = _create_risk(client, org, h["user"], likelihood=5, impact=5).get_json()["data"]
        heat = client.get(f"/api/v1/risks/heatmap?organization_id={org.id}", headers=h["viewer"]).get_json()
        assert heat["data"]["counts"][4][4] == 1
        assert client.delete(f"/api/v1/risks/{risk['id']}", headers=h["user"]).status_code == 403
        assert client.delete(f"/api/v1/risks/{risk['id']}", headers=h["admin"]).status_code == 200


class TestSoARoutes:
    def test_initialize_edit_submit(self, client, org, h, make_control):
        make_control("A.5.1", "Policies")
        make_control("A.5.2", "Roles")
        res = client.post("/api/v1/soa/initialize", json={"organization_id": org.id}, headers=h["admin"])
        assert res.status_code == 201
        again = client.post("/api/v1/soa/initialize", json={"organization_id": org.id}, headers=h["admin"])
        assert again.status_code == 200

        listing = client.get(f"/api/v1/soa?organization_id={org.id}", headers=h["viewer"]).get_json()["data"]
        assert listing["stats"]["total"] == 2
        entry_id = listing["entries"][0]["id"]

        res = client.patch(f"/api/v1/soa/{entry_id}", json={"status": "IN_PROGRESS"}, headers=h["auditor"])
        assert res.status_code == 200
        assert client.patch(f"/api/v1/soa/{entry_id}", json={"status": "IN_PROGRESS"},
                            headers=h["user"]).status_code == 403

        res = client.post("/api/v1/soa/bulk-submit", json={"organization_id": org.id}, headers=h["auditor"])
        assert res.get_json()["data"] == {"submitted": 2}
        pending = client.get(f"/api/v1/soa/pending-approvals?organization_id={org.id}", headers=h["admin"])
        assert len(pending.get_json()["data"]) == 2

    def test_export(self, client, org, h, make_control):
        make_control("A.5.1", "Policies")
        client.post("/api/v1/soa/initialize", json={"organization_id": org.id}, headers=h["admin"])
        base = f"/api/v1/soa/export?organization_id={org.id}"

        data = client.get(base, headers=h["viewer"]).get_json()["data"]
        assert data["total_controls"] == 1
        assert data["by_category"][0]["category"] == "A5_ORGANIZATIONAL"

        res = client.get(f"{base}&format=csv", headers=h["viewer"])
        assert res.status_code == 200
        assert res.mimetype == "text/csv"
        assert res.headers["Content-Disposition"] == "attachment; filename=soa-acme.csv"
        lines = res.get_data(as_text=True).splitlines()
        assert lines[0].startswith("Control No,Control Name,")
        assert lines[1].startswith("A.5.1,Policies,")

        bad = client.get(f"{base}&format=pdf", headers=h["viewer"])
        assert bad.status_code == 400
        assert bad.get_json()["details"] == {"format": "invalid"}


class TestExemptionRoutes:
    def test_lifecycle(self, client, org, h, make_control):
        control = make_control("A.8.24", "Use of cryptography")
        res = client.post("/api/v1/exemptions", json={
            "organization_id": org.id, "title": "Legacy TLS", "control_ref_id": control.id,
            "justification": "Vendor patch pending", "valid_until": "2031-01-01",
        }, headers=h["user"])
        assert res.status_code == 201
        ex = res.get_json()["data"]
        base = f"/api/v1/exemptions/{ex['id']}"

        client.post(f"{base}/submit-for-review", json={"change_description": "Approve please"}, headers=h["user"])
        client.post(f"{base}/first-approval", json={}, headers=h["local_admin"])
        res = client.post(f"{base}/second-approval", json={}, headers=h["admin"])
        assert res.get_json()["data"]["status"] == "ACTIVE"

        res = client.post(f"{base}/revoke", json={"reason": "Patched"}, headers=h["local_admin"])
        assert res.get_json()["data"]["status"] == "REVOKED"

        stats = client.get(f"/api/v1/exemptions/stats?organization_id={org.id}", headers=h["viewer"]).get_json()
        assert stats["data"]["revoked"] == 1

    def test_create_requires_valid_until(self, client, org, h, make_control):
        control = make_control()
        res = client.post("/api/v1/exemptions", json={
            "organization_id": org.id, "title": "Open ended", "control_ref_id": control.id,
            "justification": "Forever",
        }, headers=h["user"])
        assert res.status_code == 400
        assert res.get_json()["details"] == {"valid_until": "required"}


class TestDocumentRoutes:
    def test_revision_cycle(self, client, org, h):
        base = "/api/v1/risks/document"
        q = f"?organization_id={org.id}"
        doc = client.get(base + q, headers=h["user"]).get_json()["data"]
        assert doc["version"] == "0.1"

        res = client.post(f"{base}/discard-revision", json={"organization_id": org.id}, headers=h["user"])
        assert res.status_code == 400

        body = {"organization_id": org.id}
        client.post(f"{base}/submit-for-review", json={**body, "change_description": "v1", "version_bump": "major"},
                    headers=h["user"])
        client.post(f"{base}/first-approval", json=body, headers=h["local_admin"])
        res = client.post(f"{base}/second-approval", json=body, headers=h["admin"])
        assert res.get_json()["data"]["approval_status"] == "APPROVED"

        res = client.post(f"{base}/new-revision", json={**body, "change_description": "Refresh"}, headers=h["user"])
        assert res.get_json()["data"]["version"] == "1.1"
        res = client.post(f"{base}/discard-revision", json=body, headers=h["user"])
        assert res.get_json()["data"]["version"] == "1.0"

        versions = client.get(f"{base}/versions{q}", headers=h["viewer"]).get_json()["data"]
        assert [v["version"] for v in versions] == ["1.0", "0.1"]

    def test_soa_document_assignment(self, client, org, h, members):
        res = client.patch("/api/v1/soa/document", json={
            "organization_id": org.id, "reviewer_id": members["auditor"].user_id,
        }, headers=h["local_admin"])
        assert res.status_code == 200
        assert res.get_json()["data"]["reviewer_id"] == members["auditor"].user_id

    def test_unknown_section(self, client, org, h):
        res = client.get(f"/api/v1/policies/document?organization_id={org.id}", headers=h["user"])
        assert res.status_code == 404


class TestAuditAndNotificationRoutes:
    def test_audit_log_listing(self, client, org, h, members):
        risk = risk_service.create_risk(members["user"], org.id, {"title": "Audited"})
        res = client.get(
            f"/api/v1/audit-logs?organization_id={org.id}&entity_type=risk&entity_id={risk.id}",
            headers=h["auditor"],
        )
        data = res.get_json()["data"]
        assert data["total"] == 1
        assert data["audit_logs"][0]["action"] == "CREATE"

        log = AuditLog.query.first()
        assert client.get(f"/api/v1/audit-logs/{log.id}", headers=h["auditor"]).status_code == 200

    def test_audit_needs_membership(self, client, org, h):
        res = client.get(f"/api/v1/audit-logs?organization_id={org.id}", headers=h["outsider"])
        assert res.status_code == 403

    def test_inbox(self, client, org, h, members):
        risk = risk_service.create_risk(members["user"], org.id, {"title": "Notify"})
        risk_service.risk_workflow.submit_for_review(risk.id, members["user"], "Review please")

        count = client.get("/api/v1/notifications/unread-count", headers=h["admin"]).get_json()["data"]
        assert count == {"unread_count": 1}
        items = client.get("/api/v1/notifications", headers=h["admin"]).get_json()["data"]["items"]
        res = client.patch(f"/api/v1/notifications/{items[0]['id']}/read", headers=h["admin"])
        assert res.status_code == 200
        assert client.patch(f"/api/v1/notifications/{items[0]['id']}/read",
                            headers=h["user"]).status_code == 404
        res = client.post("/api/v1/notifications/mark-all-read", json={}, headers=h["local_admin"])
        assert res.get_json()["data"] == {"marked_read": 1}
