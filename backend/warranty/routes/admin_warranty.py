# Overview: Flask API routes for staff warranty operations; parses input and returns JSON responses.

"""
Admin Warranty API Routes

WHY: Staff-side management of barcodes, generation batches, claims, repair
tickets and attachments.

DESIGN:
- Every route is bound to one storefront (require_tenant) and one actor
  (require_actor with a staff role); per-action role checks happen in the
  orchestrator
- Handlers only parse input and shape the envelope; errors propagate to
  the registered error handlers

SECURITY:
- Ids belonging to another storefront yield not_found, exactly like
  missing ids
- Headers X-Actor-ID / X-Actor-Role are asserted by the upstream gateway
"""

from flask import Blueprint, request

from ..decorators import orchestrator, require_actor, require_tenant, with_deadline
from ..permissions import STAFF_ROLES
from ..responses import no_content, ok, paged
from ..validation import (
    json_body,
    optional_str,
    page_request_from_args,
    parse_bool,
    parse_datetime,
    parse_int,
    parse_uuid,
    require_fields,
)


admin_warranty_bp = Blueprint("admin_warranty", __name__, url_prefix="/api/v1/admin/warranty")


def staff_endpoint(f):
    """Deadline, tenant and staff actor, in that order."""
    return with_deadline(require_tenant(require_actor(*STAFF_ROLES)(f)))


# =============================================================================
# BARCODES & BATCHES
# =============================================================================

@admin_warranty_bp.post("/barcodes/generate")
@staff_endpoint
def generate_barcodes_route(tenant, actor, deadline):
    """
    Queue a generation batch.

    Request body:
    {
        "product_id": "uuid",
        "count": 5000,
        "prefix": "AC"  (optional, 1-4 chars A-Z0-9)
    }

    Returns:
        202: {"data": {"batch_id": "..."}}
        400: Invalid count or prefix
        404: Product not found
    """
    data = json_body()
    require_fields(data, "product_id", "count")
    result = orchestrator().generate_batch(
        tenant,
        actor,
        product_id=parse_uuid(data.get("product_id"), "product_id"),
        count=parse_int(data.get("count"), "count", minimum=1),
        prefix=optional_str(data, "prefix", max_length=4),
        deadline=deadline,
    )
    return ok(result, 202)


@admin_warranty_bp.get("/barcodes")
@staff_endpoint
def list_barcodes_route(tenant, actor, deadline):
    """Query: status, product_id, batch_id, customer_id, page, size."""
    args = request.args
    page = orchestrator().list_barcodes(
        tenant,
        actor,
        page_request=page_request_from_args(args),
        status=args.get("status") or None,
        product_id=parse_uuid(args.get("product_id"), "product_id", required=False),
        batch_id=parse_uuid(args.get("batch_id"), "batch_id", required=False),
        customer_id=parse_uuid(args.get("customer_id"), "customer_id", required=False),
        deadline=deadline,
    )
    return paged(page)


@admin_warranty_bp.get("/barcodes/stats")
@staff_endpoint
def barcode_stats_route(tenant, actor, deadline):
    return ok(orchestrator().barcode_stats(tenant, actor, deadline=deadline))


@admin_warranty_bp.post("/barcodes/<barcode_id>/activate")
@staff_endpoint
def activate_barcode_route(barcode_id, tenant, actor, deadline):
    """
    Register a generated barcode to a customer.

    Request body:
    {
        "customer_id": "uuid",
        "purchase_date": "2026-01-15T00:00:00Z",
        "warranty_months": 24  (optional, defaults to the product's)
    }
    """
    data = json_body()
    require_fields(data, "customer_id", "purchase_date")
    result = orchestrator().activate_barcode(
        tenant,
        actor,
        barcode_id,
        customer_id=parse_uuid(data.get("customer_id"), "customer_id"),
        purchase_date=parse_datetime(data.get("purchase_date"), "purchase_date", required=True),
        warranty_months=parse_int(data.get("warranty_months"), "warranty_months", required=False, minimum=1),
        deadline=deadline,
    )
    return ok(result)


@admin_warranty_bp.post("/barcodes/<barcode_id>/revoke")
@staff_endpoint
def revoke_barcode_route(barcode_id, tenant, actor, deadline):
    data = json_body()
    result = orchestrator().revoke_barcode(
        tenant, actor, barcode_id, reason=optional_str(data, "reason", max_length=255) or "", deadline=deadline
    )
    return ok(result)


@admin_warranty_bp.get("/batches/<batch_id>/progress")
@admin_warranty_bp.get("/claims/<claim_id>/batches/<batch_id>/progress")
@staff_endpoint
def batch_progress_route(batch_id, tenant, actor, deadline, claim_id=None):
    """
    Batch progress; plain read, never locks the batch.

    Returns:
        200: {"data": {"state", "requested", "minted", "collisions", "rate", "eta_seconds", ...}}
    """
    return ok(orchestrator().batch_progress(tenant, actor, batch_id, deadline=deadline))


@admin_warranty_bp.post("/batches/<batch_id>/cancel")
@admin_warranty_bp.post("/claims/<claim_id>/batches/<batch_id>/cancel")
@staff_endpoint
def cancel_batch_route(batch_id, tenant, actor, deadline, claim_id=None):
    """Idempotent cancel. Returns 204; 409 if the batch already completed or failed."""
    orchestrator().cancel_batch(tenant, actor, batch_id, deadline=deadline)
    return no_content()


# =============================================================================
# CLAIMS
# =============================================================================

@admin_warranty_bp.get("/claims")
@staff_endpoint
def list_claims_route(tenant, actor, deadline):
    """
    Query: status, severity, priority, customer_id, technician_id,
    from, to (ISO-8601 created_at range), page, size.
    """
    args = request.args
    page = orchestrator().list_claims(
        tenant,
        actor,
        page_request=page_request_from_args(args),
        status=args.get("status") or None,
        severity=args.get("severity") or None,
        priority=args.get("priority") or None,
        customer_id=parse_uuid(args.get("customer_id"), "customer_id", required=False),
        technician_id=args.get("technician_id") or None,
        created_from=parse_datetime(args.get("from"), "from"),
        created_to=parse_datetime(args.get("to"), "to"),
        deadline=deadline,
    )
    return paged(page)


@admin_warranty_bp.get("/claims/stats")
@staff_endpoint
def claim_stats_route(tenant, actor, deadline):
    args = request.args
    stats = orchestrator().claim_stats(
        tenant,
        actor,
        start=parse_datetime(args.get("from"), "from"),
        end=parse_datetime(args.get("to"), "to"),
        deadline=deadline,
    )
    return ok(stats)


@admin_warranty_bp.get("/claims/by-number/<claim_number>")
@staff_endpoint
def get_claim_by_number_route(claim_number, tenant, actor, deadline):
    return ok(orchestrator().get_claim_by_number(tenant, actor, claim_number, deadline=deadline))


@admin_warranty_bp.get("/claims/<claim_id>")
@staff_endpoint
def get_claim_route(claim_id, tenant, actor, deadline):
    return ok(orchestrator().get_claim(tenant, actor, claim_id, deadline=deadline))


@admin_warranty_bp.patch("/claims/<claim_id>")
@staff_endpoint
def update_claim_route(claim_id, tenant, actor, deadline):
    """
    Update notes, priority or estimated completion of a non-terminal claim.

    Request body (any subset):
    {
        "admin_notes": "...",
        "repair_notes": "...",
        "priority": "urgent",
        "estimated_completion_at": "2026-11-01T12:00:00Z"
    }
    """
    data = json_body()
    patch = dict(data)
    if "estimated_completion_at" in patch:
        patch["estimated_completion_at"] = parse_datetime(patch["estimated_completion_at"], "estimated_completion_at")
    return ok(orchestrator().update_claim(tenant, actor, claim_id, patch, deadline=deadline))


@admin_warranty_bp.post("/claims/<claim_id>/validate")
@staff_endpoint
def validate_claim_route(claim_id, tenant, actor, deadline):
    return ok(orchestrator().validate_claim(tenant, actor, claim_id, deadline=deadline))


@admin_warranty_bp.post("/claims/<claim_id>/reject")
@staff_endpoint
def reject_claim_route(claim_id, tenant, actor, deadline):
    """Request body: {"reason": "not covered"}"""
    data = json_body()
    return ok(orchestrator().reject_claim(
        tenant, actor, claim_id, reason=optional_str(data, "reason") or "", deadline=deadline
    ))


@admin_warranty_bp.post("/claims/<claim_id>/assign")
@staff_endpoint
def assign_claim_route(claim_id, tenant, actor, deadline):
    """Request body: {"technician_id": "t1", "estimated_completion_at": "..." (optional)}"""
    data = json_body()
    return ok(orchestrator().assign_technician(
        tenant,
        actor,
        claim_id,
        technician_id=optional_str(data, "technician_id", max_length=64) or "",
        estimated_completion_at=parse_datetime(data.get("estimated_completion_at"), "estimated_completion_at"),
        deadline=deadline,
    ))


@admin_warranty_bp.post("/claims/<claim_id>/start-repair")
@staff_endpoint
def start_repair_route(claim_id, tenant, actor, deadline):
    return ok(orchestrator().start_repair(tenant, actor, claim_id, deadline=deadline))


@admin_warranty_bp.post("/claims/<claim_id>/request-qc")
@staff_endpoint
def request_qc_route(claim_id, tenant, actor, deadline):
    return ok(orchestrator().request_qc(tenant, actor, claim_id, deadline=deadline))


@admin_warranty_bp.post("/claims/<claim_id>/complete")
@staff_endpoint
def complete_claim_route(claim_id, tenant, actor, deadline):
    return ok(orchestrator().complete_claim(tenant, actor, claim_id, deadline=deadline))


@admin_warranty_bp.post("/claims/<claim_id>/qc-fail")
@staff_endpoint
def qc_fail_route(claim_id, tenant, actor, deadline):
    data = json_body()
    return ok(orchestrator().fail_qc(
        tenant, actor, claim_id, notes=optional_str(data, "notes", max_length=5000), deadline=deadline
    ))


@admin_warranty_bp.post("/claims/<claim_id>/hold")
@staff_endpoint
def hold_claim_route(claim_id, tenant, actor, deadline):
    data = json_body()
    return ok(orchestrator().hold_claim(
        tenant, actor, claim_id, reason=optional_str(data, "reason") or "", deadline=deadline
    ))


@admin_warranty_bp.post("/claims/<claim_id>/resume")
@staff_endpoint
def resume_claim_route(claim_id, tenant, actor, deadline):
    return ok(orchestrator().resume_claim(tenant, actor, claim_id, deadline=deadline))


@admin_warranty_bp.post("/claims/<claim_id>/cancel")
@staff_endpoint
def cancel_claim_route(claim_id, tenant, actor, deadline):
    data = json_body()
    return ok(orchestrator().cancel_claim(
        tenant, actor, claim_id, reason=optional_str(data, "reason"), deadline=deadline
    ))


@admin_warranty_bp.get("/claims/<claim_id>/timeline")
@staff_endpoint
def claim_timeline_route(claim_id, tenant, actor, deadline):
    args = request.args
    page_request = page_request_from_args({"page": args.get("page"), "size": args.get("size") or 100})
    return paged(orchestrator().list_timeline(tenant, actor, claim_id, page_request=page_request, deadline=deadline))


# =============================================================================
# ATTACHMENTS
# =============================================================================

@admin_warranty_bp.get("/claims/<claim_id>/attachments")
@staff_endpoint
def list_attachments_route(claim_id, tenant, actor, deadline):
    return ok(orchestrator().list_attachments(tenant, actor, claim_id, deadline=deadline))


@admin_warranty_bp.post("/claims/<claim_id>/attachments/upload")
@staff_endpoint
def upload_attachment_route(claim_id, tenant, actor, deadline):
    """
    Register attachment metadata (the bytes are already in the blob store).

    Request body:
    {
        "original_filename": "receipt.pdf",
        "sanitized_path": "sf1/claims/abc/receipt.pdf",
        "size_bytes": 20480,
        "mime_type": "application/pdf",
        "kind": "invoice",
        "description": "Purchase receipt"  (optional)
    }
    """
    data = json_body()
    return ok(orchestrator().upload_attachment(tenant, actor, claim_id, data, deadline=deadline), 201)


@admin_warranty_bp.post("/attachments/<attachment_id>/approve")
@staff_endpoint
def approve_attachment_route(attachment_id, tenant, actor, deadline):
    return ok(orchestrator().set_attachment_approval(tenant, actor, attachment_id, "approved", deadline=deadline))


@admin_warranty_bp.post("/attachments/<attachment_id>/reject")
@staff_endpoint
def reject_attachment_route(attachment_id, tenant, actor, deadline):
    return ok(orchestrator().set_attachment_approval(tenant, actor, attachment_id, "rejected", deadline=deadline))


# =============================================================================
# REPAIR TICKETS
# =============================================================================

@admin_warranty_bp.get("/claims/<claim_id>/ticket")
@staff_endpoint
def claim_ticket_route(claim_id, tenant, actor, deadline):
    return ok(orchestrator().get_ticket_for_claim(tenant, actor, claim_id, deadline=deadline))


@admin_warranty_bp.post("/tickets/<ticket_id>/assign")
@staff_endpoint
def assign_ticket_route(ticket_id, tenant, actor, deadline):
    data = json_body()
    return ok(orchestrator().assign_ticket_technician(
        tenant, actor, ticket_id, technician_id=optional_str(data, "technician_id", max_length=64) or "",
        deadline=deadline,
    ))


@admin_warranty_bp.post("/tickets/<ticket_id>/diagnose")
@staff_endpoint
def diagnose_ticket_route(ticket_id, tenant, actor, deadline):
    data = json_body()
    return ok(orchestrator().diagnose_ticket(
        tenant, actor, ticket_id, diagnosis=optional_str(data, "diagnosis", max_length=5000), deadline=deadline
    ))


@admin_warranty_bp.post("/tickets/<ticket_id>/repair")
@staff_endpoint
def repair_ticket_route(ticket_id, tenant, actor, deadline):
    data = json_body()
    return ok(orchestrator().start_ticket_repair(
        tenant, actor, ticket_id, diagnosis=optional_str(data, "diagnosis", max_length=5000), deadline=deadline
    ))


@admin_warranty_bp.post("/tickets/<ticket_id>/submit-qc")
@staff_endpoint
def submit_ticket_qc_route(ticket_id, tenant, actor, deadline):
    """
    Request body:
    {
        "labor_minutes": 45,
        "parts_used": [{"name": "Screen", "quantity": 1, "unit_cost": "89.00"}],
        "cost": "120.00"
    }
    """
    data = json_body()
    require_fields(data, "labor_minutes", "cost")
    return ok(orchestrator().submit_ticket_for_qc(
        tenant,
        actor,
        ticket_id,
        labor_minutes=parse_int(data.get("labor_minutes"), "labor_minutes", minimum=0),
        parts_used=data.get("parts_used"),
        cost=data.get("cost"),
        deadline=deadline,
    ))


@admin_warranty_bp.post("/tickets/<ticket_id>/qc")
@staff_endpoint
def record_ticket_qc_route(ticket_id, tenant, actor, deadline):
    """Request body: {"passed": true, "notes": "..."}"""
    data = json_body()
    require_fields(data, "passed")
    return ok(orchestrator().record_qc(
        tenant,
        actor,
        ticket_id,
        passed=parse_bool(data.get("passed"), "passed"),
        notes=optional_str(data, "notes", max_length=5000),
        deadline=deadline,
    ))
