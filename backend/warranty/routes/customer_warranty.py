# Overview: Flask API routes for customer-facing warranty claims; parses input and returns JSON responses.

"""
Customer Warranty API Routes

The acting customer (X-Actor-ID = customer id, X-Actor-Role = customer)
only ever sees their own claims and warranties; another customer's claim or
warranty is reported as not found. Staff-only fields are stripped from
every response.
"""

from flask import Blueprint, request

from ..decorators import orchestrator, require_actor, require_tenant, with_deadline
from ..permissions import Role
from ..responses import ok, paged
from ..validation import json_body, optional_str, page_request_from_args, parse_datetime, require_fields


customer_warranty_bp = Blueprint(
    "customer_warranty", __name__, url_prefix="/api/v1/customer/protected/warranty"
)


def customer_endpoint(f):
    return with_deadline(require_tenant(require_actor(Role.CUSTOMER)(f)))


@customer_warranty_bp.post("/claims")
@customer_endpoint
def submit_claim_route(tenant, actor, deadline):
    """
    Submit a warranty claim.

    Request body:
    {
        "barcode_id": "uuid"  (or "code_value": "ABCD..."),
        "issue_description": "Screen cracked after a week",
        "issue_category": "defect",
        "severity": "high",
        "customer_name": "Jane Doe",
        "customer_email": "jane@example.com",
        "customer_phone": "+15550100",  (optional)
        "pickup_address": {"street": "...", "city": "...", "postal_code": "..."}
    }

    Returns:
        201: Claim in status submitted
        404: Barcode not found (or not owned by this customer)
        409: Barcode not activated, expired, or already under an active claim
    """
    data = json_body()
    return ok(orchestrator().submit_claim(tenant, actor, data, deadline=deadline), 201)


@customer_warranty_bp.get("/claims")
@customer_endpoint
def list_own_claims_route(tenant, actor, deadline):
    args = request.args
    page = orchestrator().list_claims(
        tenant,
        actor,
        page_request=page_request_from_args(args),
        status=args.get("status") or None,
        deadline=deadline,
    )
    return paged(page)


@customer_warranty_bp.get("/claims/<claim_id>")
@customer_endpoint
def get_own_claim_route(claim_id, tenant, actor, deadline):
    return ok(orchestrator().get_claim(tenant, actor, claim_id, deadline=deadline))


@customer_warranty_bp.post("/claims/<claim_id>/cancel")
@customer_endpoint
def cancel_own_claim_route(claim_id, tenant, actor, deadline):
    """Allowed until repair begins; releases the barcode."""
    data = json_body()
    return ok(orchestrator().cancel_claim(
        tenant, actor, claim_id, reason=optional_str(data, "reason"), deadline=deadline
    ))


@customer_warranty_bp.get("/claims/<claim_id>/attachments")
@customer_endpoint
def list_own_attachments_route(claim_id, tenant, actor, deadline):
    """Rejected attachments are not listed."""
    return ok(orchestrator().list_attachments(tenant, actor, claim_id, deadline=deadline))


@customer_warranty_bp.post("/claims/<claim_id>/attachments/upload")
@customer_endpoint
def upload_own_attachment_route(claim_id, tenant, actor, deadline):
    data = json_body()
    return ok(orchestrator().upload_attachment(tenant, actor, claim_id, data, deadline=deadline), 201)


@customer_warranty_bp.get("/claims/<claim_id>/timeline")
@customer_endpoint
def own_claim_timeline_route(claim_id, tenant, actor, deadline):
    args = request.args
    page_request = page_request_from_args({"page": args.get("page"), "size": args.get("size") or 100})
    return paged(orchestrator().list_timeline(tenant, actor, claim_id, page_request=page_request, deadline=deadline))


# =============================================================================
# WARRANTY REGISTRATION
# =============================================================================

@customer_warranty_bp.post("/warranties/register")
@customer_endpoint
def register_warranty_route(tenant, actor, deadline):
    """
    Register a warranty code printed on a purchased product.

    Request body:
    {
        "code_value": "ABCD...",
        "purchase_date": "2026-01-15T00:00:00Z"
    }

    Returns:
        201: The activated warranty
        404: Code not found in this storefront
        409: Code already registered, claimed or revoked
    """
    data = json_body()
    require_fields(data, "code_value", "purchase_date")
    result = orchestrator().register_warranty(
        tenant,
        actor,
        code_value=str(data.get("code_value")),
        purchase_date=parse_datetime(data.get("purchase_date"), "purchase_date", required=True),
        deadline=deadline,
    )
    return ok(result, 201)


@customer_warranty_bp.get("/warranties")
@customer_endpoint
def list_own_warranties_route(tenant, actor, deadline):
    args = request.args
    page = orchestrator().list_own_warranties(
        tenant,
        actor,
        page_request=page_request_from_args(args),
        status=args.get("status") or None,
        deadline=deadline,
    )
    return paged(page)


@customer_warranty_bp.get("/warranties/<barcode_id>")
@customer_endpoint
def get_own_warranty_route(barcode_id, tenant, actor, deadline):
    return ok(orchestrator().get_own_warranty(tenant, actor, barcode_id, deadline=deadline))
