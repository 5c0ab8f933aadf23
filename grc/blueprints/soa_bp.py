"""
GRC Platform
Statement of Applicability blueprint.

Endpoints summary:
    SOA      /api/v1/soa?organization_id=                GET   (entries + stats)
             /api/v1/soa/initialize                      POST
             /api/v1/soa/bulk-update                     POST
             /api/v1/soa/bulk-submit                     POST
             /api/v1/soa/pending-approvals               GET
             /api/v1/soa/export?organization_id=&format=  GET   (json | csv)
             /api/v1/soa/<id>                            GET, PATCH

    APPROVAL /api/v1/soa/<id>/submit-for-review          POST
             /api/v1/soa/<id>/first-approval             POST
             /api/v1/soa/<id>/second-approval            POST
             /api/v1/soa/<id>/reject                     POST

    VERSIONS /api/v1/soa/<id>/versions                   GET
             /api/v1/soa/<id>/versions/<vid>             PATCH
"""

from flask import Blueprint, Response, request

from grc.blueprints import current_actor, int_arg, json_body, ok, register_approval_routes
from grc.core.exceptions import ValidationError
from grc.services import soa_service
from grc.services.soa_service import soa_workflow

soa_bp = Blueprint("soa", __name__, url_prefix="/api/v1")


def _serialize(entry):
    return entry.to_dict()


@soa_bp.route("/soa", methods=["GET"])
def list_entries():
    org_id = int_arg("organization_id", required=True)
    entries, stats = soa_service.list_entries(
        current_actor(), org_id,
        applicable=request.args.get("applicable"),
        approval_status=request.args.get("approval_status"),
        search=request.args.get("search"),
    )
    return ok({"entries": [e.to_dict() for e in entries], "stats": stats})


@soa_bp.route("/soa/initialize", methods=["POST"])
def initialize():
    data = json_body()
    org_id = int_arg("organization_id", required=True, data=data)
    created = soa_service.initialize_soa(current_actor(), org_id)
    return ok([e.to_dict() for e in created], f"Created {len(created)} SoA entries", 201 if created else 200)


@soa_bp.route("/soa/bulk-update", methods=["POST"])
def bulk_update():
    data = json_body()
    org_id = int_arg("organization_id", required=True, data=data)
    changed = soa_service.bulk_update(current_actor(), org_id, data.get("updates"))
    return ok({"updated": changed}, f"Updated {changed} SoA entries")


@soa_bp.route("/soa/bulk-submit", methods=["POST"])
def bulk_submit():
    data = json_body()
    org_id = int_arg("organization_id", required=True, data=data)
    entries = soa_service.bulk_submit(current_actor(), org_id, data.get("change_description"))
    return ok({"submitted": len(entries)}, f"Submitted {len(entries)} SoA entries for review")


@soa_bp.route("/soa/pending-approvals", methods=["GET"])
def pending_approvals():
    org_id = int_arg("organization_id", required=True)
    entries = soa_service.pending_approvals(current_actor(), org_id)
    return ok([e.to_dict() for e in entries])


@soa_bp.route("/soa/export", methods=["GET"])
def export():
    org_id = int_arg("organization_id", required=True)
    fmt = request.args.get("format", "json").lower()
    if fmt not in ("json", "csv"):
        raise ValidationError("Unsupported format. Supported values: json, csv.", details={"format": "invalid"})

    data = soa_service.export_entries(current_actor(), org_id)
    if fmt == "json":
        return ok(data)
    filename = f"soa-{data['organization']['slug']}.csv"
    return Response(
        soa_service.generate_soa_csv(data),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@soa_bp.route("/soa/<int:entry_id>", methods=["GET"])
def get_entry(entry_id):
    return ok(soa_service.get_entry(current_actor(), entry_id).to_dict())


@soa_bp.route("/soa/<int:entry_id>", methods=["PATCH"])
def update_entry(entry_id):
    data = json_body()
    expected = data.pop("expected_version", None)
    entry = soa_service.update_entry(current_actor(), entry_id, data, expected_version=expected)
    return ok(entry.to_dict(), "SoA entry updated")


register_approval_routes(soa_bp, "/soa/<int:entity_id>", soa_workflow, _serialize)
