# Overview: Service-layer operations for repair tickets; encapsulates business logic and database work.

"""
Repair Ticket Service

STATE MACHINE:
    open -> diagnosing -> repairing -> qc_pending -> qc_passed -> closed
                              ^                   \\-> qc_failed
                              |________________________/   (reopen)

RULES:
1. At most one non-closed ticket per claim (partial unique index)
2. Submitting for QC and closing require labor_minutes, parts_used and cost
3. Technician assignment is idempotent; reassignment is allowed until
   the ticket reaches qc_pending
4. Ticket changes never append claim timeline events; the claim
   transitions that depend on ticket state do
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import update

from ..errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from ..extensions import db
from ..models import RepairTicket, WarrantyClaim
from ..models.claims import (
    CLAIM_STATUS_IN_REPAIR,
    CLAIM_STATUS_QC,
    TICKET_STATUS_CLOSED,
    TICKET_STATUS_DIAGNOSING,
    TICKET_STATUS_OPEN,
    TICKET_STATUS_QC_FAILED,
    TICKET_STATUS_QC_PASSED,
    TICKET_STATUS_QC_PENDING,
    TICKET_STATUS_REPAIRING,
)
from ..permissions import Actor, Role
from ..time_utils import utcnow
from .concurrency import translate_db_errors
from .tenant_service import BoundTenant, get_owned, require_tenant, scoped_query


VALID_TRANSITIONS = {
    (TICKET_STATUS_OPEN, TICKET_STATUS_DIAGNOSING),
    (TICKET_STATUS_DIAGNOSING, TICKET_STATUS_REPAIRING),
    (TICKET_STATUS_REPAIRING, TICKET_STATUS_QC_PENDING),
    (TICKET_STATUS_QC_PENDING, TICKET_STATUS_QC_PASSED),
    (TICKET_STATUS_QC_PENDING, TICKET_STATUS_QC_FAILED),
    (TICKET_STATUS_QC_FAILED, TICKET_STATUS_REPAIRING),
    (TICKET_STATUS_QC_PASSED, TICKET_STATUS_CLOSED),
}

REASSIGNABLE_STATUSES = {TICKET_STATUS_OPEN, TICKET_STATUS_DIAGNOSING, TICKET_STATUS_REPAIRING}


def can_transition(from_status: str, to_status: str) -> bool:
    return (from_status, to_status) in VALID_TRANSITIONS


def open_ticket(tenant: BoundTenant, claim: WarrantyClaim, *, technician_id: Optional[str]) -> RepairTicket:
    """
    Open the repair ticket for a claim.

    Raises:
        ConflictError: the claim already has a non-closed ticket
    """
    require_tenant(tenant)
    if get_open_ticket(tenant, claim.id) is not None:
        raise ConflictError("Claim already has an open repair ticket", details={"claim_id": str(claim.id)})
    ticket = RepairTicket(
        claim_id=claim.id,
        storefront_id=tenant.storefront_id,
        technician_id=technician_id,
        status=TICKET_STATUS_OPEN,
    )
    db.session.add(ticket)
    with translate_db_errors("open repair ticket"):
        db.session.flush()
    return ticket


def get_ticket(tenant: BoundTenant, ticket_id) -> RepairTicket:
    return get_owned(RepairTicket, tenant, ticket_id, label="Repair ticket")


def get_open_ticket(tenant: BoundTenant, claim_id) -> Optional[RepairTicket]:
    return (
        scoped_query(RepairTicket, tenant)
        .filter(RepairTicket.claim_id == claim_id, RepairTicket.status != TICKET_STATUS_CLOSED)
        .execution_options(populate_existing=True)
        .first()
    )


def get_current_ticket(tenant: BoundTenant, claim_id) -> RepairTicket:
    """Open ticket if any, otherwise the most recently closed one."""
    ticket = get_open_ticket(tenant, claim_id)
    if ticket is None:
        ticket = (
            scoped_query(RepairTicket, tenant)
            .filter(RepairTicket.claim_id == claim_id)
            .order_by(RepairTicket.created_at.desc())
            .first()
        )
    if ticket is None:
        raise NotFoundError("Repair ticket not found")
    return ticket


def _move(tenant: BoundTenant, ticket: RepairTicket, to_status: str, **values) -> RepairTicket:
    """Compare-and-set on the ticket's current status."""
    if not can_transition(ticket.status, to_status):
        raise ConflictError(
            f"Repair ticket cannot move from {ticket.status} to {to_status}",
            details={"from": ticket.status, "to": to_status},
        )
    result = db.session.execute(
        update(RepairTicket)
        .where(
            RepairTicket.id == ticket.id,
            RepairTicket.storefront_id == tenant.storefront_id,
            RepairTicket.status == ticket.status,
        )
        .values(status=to_status, updated_at=utcnow(), **values)
    )
    if result.rowcount != 1:
        raise ConflictError("Repair ticket changed concurrently")
    return get_ticket(tenant, ticket.id)


def _require_claim_status(tenant: BoundTenant, ticket: RepairTicket, *statuses: str) -> WarrantyClaim:
    claim = get_owned(WarrantyClaim, tenant, ticket.claim_id, label="Claim")
    if claim.status not in statuses:
        raise ConflictError(
            f"Claim is {claim.status}; ticket work requires {' or '.join(statuses)}",
            details={"claim_status": claim.status},
        )
    return claim


def _require_assigned(actor: Actor, ticket: RepairTicket) -> None:
    if actor.role == Role.TECHNICIAN and ticket.technician_id not in (None, actor.actor_id):
        raise ForbiddenError("Ticket is assigned to another technician")


def assign_technician(tenant: BoundTenant, ticket_id, technician_id: str) -> RepairTicket:
    """
    Assign (or reassign) the technician.

    Idempotent: assigning the current technician changes nothing. The claim
    mirrors the ticket's technician.
    """
    if not technician_id or not str(technician_id).strip():
        raise ValidationError("technician_id is required", details={"field": "technician_id"})
    technician_id = str(technician_id).strip()
    ticket = get_ticket(tenant, ticket_id)
    if ticket.technician_id == technician_id:
        return ticket
    if ticket.status not in REASSIGNABLE_STATUSES:
        raise ConflictError(
            f"Technician cannot be changed once the ticket is {ticket.status}",
            details={"status": ticket.status},
        )
    result = db.session.execute(
        update(RepairTicket)
        .where(
            RepairTicket.id == ticket.id,
            RepairTicket.storefront_id == tenant.storefront_id,
            RepairTicket.status.in_(REASSIGNABLE_STATUSES),
        )
        .values(technician_id=technician_id, updated_at=utcnow())
    )
    if result.rowcount != 1:
        raise ConflictError("Repair ticket changed concurrently")
    db.session.execute(
        update(WarrantyClaim)
        .where(WarrantyClaim.id == ticket.claim_id, WarrantyClaim.storefront_id == tenant.storefront_id)
        .values(technician_id=technician_id, updated_at=utcnow())
    )
    return get_ticket(tenant, ticket.id)


def start_diagnosis(tenant: BoundTenant, ticket_id, actor: Actor, *, diagnosis: Optional[str] = None) -> RepairTicket:
    ticket = get_ticket(tenant, ticket_id)
    _require_assigned(actor, ticket)
    _require_claim_status(tenant, ticket, CLAIM_STATUS_IN_REPAIR)
    values = {}
    if diagnosis is not None:
        values["diagnosis"] = diagnosis.strip() or None
    if ticket.technician_id is None and actor.role == Role.TECHNICIAN:
        values["technician_id"] = actor.actor_id
    return _move(tenant, ticket, TICKET_STATUS_DIAGNOSING, **values)


def start_repair(tenant: BoundTenant, ticket_id, actor: Actor, *, diagnosis: Optional[str] = None) -> RepairTicket:
    ticket = get_ticket(tenant, ticket_id)
    _require_assigned(actor, ticket)
    _require_claim_status(tenant, ticket, CLAIM_STATUS_IN_REPAIR)
    final_diagnosis = (diagnosis or ticket.diagnosis or "").strip()
    if not final_diagnosis:
        raise ValidationError("diagnosis is required before repair starts", details={"field": "diagnosis"})
    return _move(tenant, ticket, TICKET_STATUS_REPAIRING, diagnosis=final_diagnosis)


def normalize_completion(labor_minutes: Any, parts_used: Any, cost: Any) -> dict:
    """Validate the completion data required for QC submission and closing."""
    if isinstance(labor_minutes, bool) or not isinstance(labor_minutes, int) or labor_minutes < 0:
        raise ValidationError("labor_minutes must be a non-negative integer", details={"field": "labor_minutes"})
    if not isinstance(parts_used, list):
        raise ValidationError("parts_used must be a list (empty when no parts were used)", details={"field": "parts_used"})
    parts = []
    for index, part in enumerate(parts_used):
        if not isinstance(part, dict) or not str(part.get("name") or "").strip():
            raise ValidationError(f"parts_used[{index}].name is required", details={"field": "parts_used"})
        quantity = part.get("quantity", 1)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError(f"parts_used[{index}].quantity must be >= 1", details={"field": "parts_used"})
        parts.append({
            "part_number": part.get("part_number"),
            "name": str(part["name"]).strip(),
            "quantity": quantity,
            "unit_cost": str(_money(part.get("unit_cost", 0), f"parts_used[{index}].unit_cost")),
        })
    if cost is None:
        raise ValidationError("cost is required", details={"field": "cost"})
    return {"labor_minutes": labor_minutes, "parts_used": parts, "cost": _money(cost, "cost")}


def _money(value: Any, field: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a decimal amount", details={"field": field})
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{field} must be >= 0", details={"field": field})
    return amount.quantize(Decimal("0.01"))


def submit_for_qc(
    tenant: BoundTenant,
    ticket_id,
    actor: Actor,
    *,
    labor_minutes: Any,
    parts_used: Any,
    cost: Any,
) -> RepairTicket:
    ticket = get_ticket(tenant, ticket_id)
    _require_assigned(actor, ticket)
    _require_claim_status(tenant, ticket, CLAIM_STATUS_IN_REPAIR)
    completion = normalize_completion(labor_minutes, parts_used, cost)
    return _move(tenant, ticket, TICKET_STATUS_QC_PENDING, **completion)


def record_qc(tenant: BoundTenant, ticket_id, *, passed: bool, notes: Optional[str] = None) -> RepairTicket:
    ticket = get_ticket(tenant, ticket_id)
    _require_claim_status(tenant, ticket, CLAIM_STATUS_QC)
    values: dict[str, Any] = {"quality_notes": (notes or "").strip() or None}
    if passed:
        return _move(tenant, ticket, TICKET_STATUS_QC_PASSED, **values)
    values["qc_failures"] = RepairTicket.qc_failures + 1
    return _move(tenant, ticket, TICKET_STATUS_QC_FAILED, **values)


def reopen(tenant: BoundTenant, ticket: RepairTicket) -> RepairTicket:
    """QC failure sends the ticket back to repairing."""
    return _move(tenant, ticket, TICKET_STATUS_REPAIRING)


def close(tenant: BoundTenant, ticket: RepairTicket) -> RepairTicket:
    if not ticket.has_completion_data:
        raise ConflictError("Repair ticket is missing labor_minutes, parts_used or cost")
    return _move(tenant, ticket, TICKET_STATUS_CLOSED, closed_at=utcnow())
