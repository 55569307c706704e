# Overview: Flask API routes called by internal services (attachment scanner).

from flask import Blueprint

from ..decorators import orchestrator, require_actor, require_tenant, with_deadline
from ..permissions import Role
from ..responses import ok
from ..validation import json_body, require_fields


internal_warranty_bp = Blueprint("internal_warranty", __name__, url_prefix="/api/v1/internal/warranty")


@internal_warranty_bp.post("/attachments/<attachment_id>/scan-status")
@with_deadline
@require_tenant
@require_actor(Role.SYSTEM)
def set_scan_status_route(attachment_id, tenant, actor, deadline):
    """
    Record the scanner verdict. Idempotent: repeating the same verdict is a no-op.

    Request body: {"scan_status": "clean" | "infected" | "failed"}

    Returns:
        200: Updated attachment
        409: A different verdict was already recorded
    """
    data = json_body()
    require_fields(data, "scan_status")
    return ok(orchestrator().set_scan_status(
        tenant, actor, attachment_id, str(data["scan_status"]).strip().lower(), deadline=deadline
    ))
