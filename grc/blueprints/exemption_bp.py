"""
GRC Platform
Control exemption blueprint.

Endpoints summary:
    EXEMPTION /api/v1/exemptions?organization_id=          GET, POST
              /api/v1/exemptions/stats?organization_id=    GET
              /api/v1/exemptions/<id>                      GET, PATCH
              /api/v1/exemptions/<id>/revoke               POST
              /api/v1/exemptions/<id>/renew                POST

    APPROVAL  /api/v1/exemptions/<id>/submit-for-review    POST
              /api/v1/exemptions/<id>/first-approval       POST
              /api/v1/exemptions/<id>/second-approval      POST
              /api/v1/exemptions/<id>/reject               POST

    VERSIONS  /api/v1/exemptions/<id>/versions             GET
              /api/v1/exemptions/<id>/versions/<vid>       PATCH
"""

from flask import Blueprint, request

from grc.blueprints import current_actor, int_arg, json_body, ok, register_approval_routes
from grc.services import exemption_service
from grc.services.exemption_service import exemption_workflow

exemption_bp = Blueprint("exemption", __name__, url_prefix="/api/v1")


def _serialize(exemption):
    return exemption.to_dict()


@exemption_bp.route("/exemptions", methods=["GET"])
def list_exemptions():
    org_id = int_arg("organization_id", required=True)
    exemptions = exemption_service.list_exemptions(
        current_actor(), org_id,
        status=request.args.get("status"),
        approval_status=request.args.get("approval_status"),
        control_ref_id=int_arg("control_ref_id"),
    )
    return ok([e.to_dict() for e in exemptions])


@exemption_bp.route("/exemptions", methods=["POST"])
def create_exemption():
    data = json_body()
    org_id = int_arg("organization_id", required=True, data=data)
    fields = {k: v for k, v in data.items() if k != "organization_id"}
    exemption = exemption_service.create_exemption(current_actor(), org_id, fields)
    return ok(exemption.to_dict(), "Exemption created", 201)


@exemption_bp.route("/exemptions/stats", methods=["GET"])
def stats():
    org_id = int_arg("organization_id", required=True)
    return ok(exemption_service.stats(current_actor(), org_id))


@exemption_bp.route("/exemptions/<int:exemption_id>", methods=["GET"])
def get_exemption(exemption_id):
    return ok(exemption_service.get_exemption(current_actor(), exemption_id).to_dict())


@exemption_bp.route("/exemptions/<int:exemption_id>", methods=["PATCH"])
def update_exemption(exemption_id):
    data = json_body()
    expected = data.pop("expected_version", None)
    exemption = exemption_service.update_exemption(current_actor(), exemption_id, data, expected_version=expected)
    return ok(exemption.to_dict(), "Exemption updated")


@exemption_bp.route("/exemptions/<int:exemption_id>/revoke", methods=["POST"])
def revoke(exemption_id):
    data = json_body()
    exemption = exemption_service.revoke(
        current_actor(), exemption_id, data.get("reason"), expected_version=data.get("expected_version"),
    )
    return ok(exemption.to_dict(), "Exemption revoked")


@exemption_bp.route("/exemptions/<int:exemption_id>/renew", methods=["POST"])
def renew(exemption_id):
    data = json_body()
    expected = data.pop("expected_version", None)
    exemption = exemption_service.renew(current_actor(), exemption_id, data, expected_version=expected)
    return ok(exemption.to_dict(), "Renewal requested")


register_approval_routes(exemption_bp, "/exemptions/<int:entity_id>", exemption_workflow, _serialize)
