"""
GRC Platform
Risk blueprint: risk register CRUD, treatment, retirement and approvals.

Endpoints summary:
    RISK     /api/v1/risks?organization_id=             GET, POST
             /api/v1/risks/<id>                         GET, PATCH, DELETE
             /api/v1/risks/heatmap?organization_id=     GET
             /api/v1/risks/pending-approvals            GET
             /api/v1/risks/retired                      GET
             /api/v1/risks/<id>/treatment               POST
             /api/v1/risks/<id>/retire                  POST
             /api/v1/risks/<id>/controls                POST  (replace linked controls)

    APPROVAL /api/v1/risks/<id>/submit-for-review       POST
             /api/v1/risks/<id>/first-approval          POST
             /api/v1/risks/<id>/second-approval         POST
             /api/v1/risks/<id>/reject                  POST

    VERSIONS /api/v1/risks/<id>/versions                GET
             /api/v1/risks/<id>/versions/<vid>          PATCH
"""

import logging

from flask import Blueprint, request

from grc.blueprints import current_actor, int_arg, json_body, ok, register_approval_routes
from grc.services import risk_service
from grc.services.risk_service import risk_workflow
from grc.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

risk_bp = Blueprint("risk", __name__, url_prefix="/api/v1")


def _serialize(risk):
    return risk.to_dict()


# ═══════════════════════════════════════════════════════════════════════════
#  RISK CRUD
# ═══════════════════════════════════════════════════════════════════════════

@risk_bp.route("/risks", methods=["GET"])
def list_risks():
    org_id = int_arg("organization_id", required=True)
    risks = risk_service.list_risks(
        current_actor(), org_id,
        include_retired=parse_bool(request.args.get("include_retired", False)),
        approval_status=request.args.get("approval_status"),
        search=request.args.get("search"),
    )
    return ok([r.to_dict() for r in risks])


@risk_bp.route("/risks", methods=["POST"])
def create_risk():
    data = json_body()
    org_id = int_arg("organization_id", required=True, data=data)
    fields = {k: v for k, v in data.items() if k != "organization_id"}
    risk = risk_service.create_risk(current_actor(), org_id, fields)
    return ok(risk.to_dict(), "Risk created", 201)


@risk_bp.route("/risks/heatmap", methods=["GET"])
def heatmap():
    org_id = int_arg("organization_id", required=True)
    return ok(risk_service.compute_heatmap(current_actor(), org_id))


@risk_bp.route("/risks/pending-approvals", methods=["GET"])
def pending_approvals():
    org_id = int_arg("organization_id", required=True)
    risks = risk_service.pending_approvals(current_actor(), org_id)
    return ok([r.to_dict() for r in risks])


@risk_bp.route("/risks/retired", methods=["GET"])
def retired_risks():
    org_id = int_arg("organization_id", required=True)
    risks = risk_service.retired_risks(current_actor(), org_id)
    return ok([r.to_dict(include_children=True) for r in risks])


@risk_bp.route("/risks/<int:risk_id>", methods=["GET"])
def get_risk(risk_id):
    risk = risk_service.get_risk(current_actor(), risk_id)
    return ok(risk.to_dict(include_children=True))


@risk_bp.route("/risks/<int:risk_id>", methods=["PATCH"])
def update_risk(risk_id):
    data = json_body()
    expected = data.pop("expected_version", None)
    risk = risk_service.update_risk(current_actor(), risk_id, data, expected_version=expected)
    return ok(risk.to_dict(), "Risk updated")


@risk_bp.route("/risks/<int:risk_id>", methods=["DELETE"])
def delete_risk(risk_id):
    risk_service.delete_risk(current_actor(), risk_id)
    return ok(None, "Risk deleted")


# ═══════════════════════════════════════════════════════════════════════════
#  TREATMENT / RETIREMENT
# ═══════════════════════════════════════════════════════════════════════════

@risk_bp.route("/risks/<int:risk_id>/treatment", methods=["POST"])
def add_treatment(risk_id):
    data = json_body()
    expected = data.pop("expected_version", None)
    treatment = risk_service.add_treatment(current_actor(), risk_id, data, expected_version=expected)
    return ok(treatment.to_dict(), "Treatment recorded", 201)


@risk_bp.route("/risks/<int:risk_id>/retire", methods=["POST"])
def retire_risk(risk_id):
    data = json_body()
    retirement = risk_workflow.retire(
        risk_id, current_actor(), data.get("reason"), expected_version=data.get("expected_version"),
    )
    return ok(retirement.to_dict(), "Risk retired")


# ═══════════════════════════════════════════════════════════════════════════
#  CONTROL LINKS
# ═══════════════════════════════════════════════════════════════════════════

@risk_bp.route("/risks/<int:risk_id>/controls", methods=["POST"])
def link_controls(risk_id):
    data = json_body()
    risk = risk_service.link_controls(
        current_actor(), risk_id, data.get("control_ids"), expected_version=data.get("expected_version"),
    )
    return ok(risk.to_dict(), "Risk controls updated")


register_approval_routes(risk_bp, "/risks/<int:entity_id>", risk_workflow, _serialize)
