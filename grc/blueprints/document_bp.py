"""
GRC Platform
Organization document blueprint: Risk Register and SoA cover documents.

``<section>`` is ``risks`` (Risk Register document) or ``soa`` (SoA document).
Every route takes ``organization_id`` (query string, or JSON body for writes).

Endpoints summary:
    DOCUMENT /api/v1/<section>/document                         GET, PATCH
             /api/v1/<section>/document/submit-for-review       POST
             /api/v1/<section>/document/first-approval          POST
             /api/v1/<section>/document/second-approval         POST
             /api/v1/<section>/document/reject                  POST
             /api/v1/<section>/document/new-revision            POST
             /api/v1/<section>/document/discard-revision        POST
             /api/v1/<section>/document/versions                GET
             /api/v1/<section>/document/versions/<vid>          PATCH
"""

from flask import Blueprint

from grc.blueprints import current_actor, int_arg, json_body, ok
from grc.services import document_service

document_bp = Blueprint("document", __name__, url_prefix="/api/v1")

_BASE = "/<any(risks, soa):section>/document"
_SECTION_KINDS = {"risks": "risk_register", "soa": "soa"}


def _load(section, data=None):
    """Resolve (kind, workflow, document) for the request's organization."""
    kind = _SECTION_KINDS[section]
    org_id = int_arg("organization_id", required=True, data=data)
    document = document_service.get_or_create_document(current_actor(), org_id, kind)
    return document_service.workflow_for(kind), document


@document_bp.route(_BASE, methods=["GET"])
def get_document(section):
    _, document = _load(section)
    return ok(document.to_dict())


@document_bp.route(_BASE, methods=["PATCH"])
def update_document(section):
    data = json_body()
    org_id = int_arg("organization_id", required=True, data=data)
    expected = data.pop("expected_version", None)
    fields = {k: v for k, v in data.items() if k != "organization_id"}
    document = document_service.update_document(
        current_actor(), org_id, _SECTION_KINDS[section], fields, expected_version=expected,
    )
    return ok(document.to_dict(), "Document updated")


@document_bp.route(f"{_BASE}/submit-for-review", methods=["POST"])
def submit_for_review(section):
    data = json_body()
    workflow, document = _load(section, data)
    document = workflow.submit_for_review(
        document.id, current_actor(), data.get("change_description"), data.get("version_bump", "none"),
        expected_version=data.get("expected_version"),
    )
    return ok(document.to_dict(), "Submitted for review")


@document_bp.route(f"{_BASE}/first-approval", methods=["POST"])
def first_approval(section):
    data = json_body()
    workflow, document = _load(section, data)
    document = workflow.first_approval(
        document.id, current_actor(), data.get("comments"), expected_version=data.get("expected_version"),
    )
    return ok(document.to_dict(), "1st level approval recorded")


@document_bp.route(f"{_BASE}/second-approval", methods=["POST"])
def second_approval(section):
    data = json_body()
    workflow, document = _load(section, data)
    document = workflow.second_approval(
        document.id, current_actor(), data.get("comments"), expected_version=data.get("expected_version"),
    )
    return ok(document.to_dict(), "Approved")


@document_bp.route(f"{_BASE}/reject", methods=["POST"])
def reject(section):
    data = json_body()
    workflow, document = _load(section, data)
    document = workflow.reject(
        document.id, current_actor(), data.get("reason"), expected_version=data.get("expected_version"),
    )
    return ok(document.to_dict(), "Rejected")


@document_bp.route(f"{_BASE}/new-revision", methods=["POST"])
def new_revision(section):
    data = json_body()
    workflow, document = _load(section, data)
    document = workflow.new_revision(
        document.id, current_actor(), data.get("change_description"), data.get("version_bump", "minor"),
        expected_version=data.get("expected_version"),
    )
    return ok(document.to_dict(), f"Revision {document.version} started")


@document_bp.route(f"{_BASE}/discard-revision", methods=["POST"])
def discard_revision(section):
    data = json_body()
    workflow, document = _load(section, data)
    document = workflow.discard_revision(
        document.id, current_actor(), expected_version=data.get("expected_version"),
    )
    return ok(document.to_dict(), f"Revision discarded; back to {document.version}")


@document_bp.route(f"{_BASE}/versions", methods=["GET"])
def list_versions(section):
    workflow, document = _load(section)
    return ok([s.to_dict() for s in workflow.list_versions(document.id, current_actor())])


@document_bp.route(f"{_BASE}/versions/<int:snapshot_id>", methods=["PATCH"])
def update_version(section, snapshot_id):
    data = json_body()
    workflow, document = _load(section, data)
    snapshot = workflow.update_version_description(
        document.id, snapshot_id, current_actor(), data.get("change_description"),
    )
    return ok(snapshot.to_dict(), "Version description updated")
