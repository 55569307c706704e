# Overview: Service-layer operations for claim lifecycle; transition table, guards and side effects.

"""
Claim State Machine

    submitted -> validated -> assigned -> in_repair -> qc -> completed
        |                        |            ^        |
        v                        v            |________| (qc failed)
     rejected                cancelled

    any non-terminal -> on_hold -> (previous status)
    submitted | validated | assigned -> cancelled

RULES:
1. A (from, to) pair that is not in TRANSITIONS is a conflict; nothing is
   written. Legality is decided before permissions and guards.
2. Guards read fresh state inside the caller's transaction.
3. The status change is a compare-and-set on the expected status, so the
   loser of two concurrent transitions fails with ConflictError.
4. Every transition appends exactly one timeline event and one outbox row.

The caller (the orchestrator) owns the transaction: everything here either
commits together or not at all.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from ..config import WarrantySettings
from ..errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from ..models import WarrantyBarcode, WarrantyClaim
from ..models.barcodes import BARCODE_STATUS_ACTIVATED, BARCODE_STATUS_CLAIMED
from ..models.claims import (
    CLAIM_STATUS_ASSIGNED,
    CLAIM_STATUS_CANCELLED,
    CLAIM_STATUS_COMPLETED,
    CLAIM_STATUS_IN_REPAIR,
    CLAIM_STATUS_ON_HOLD,
    CLAIM_STATUS_QC,
    CLAIM_STATUS_REJECTED,
    CLAIM_STATUS_SUBMITTED,
    CLAIM_STATUS_VALIDATED,
    CLAIM_STATUSES,
    CLAIM_TERMINAL_STATUSES,
    TICKET_STATUS_QC_FAILED,
    TICKET_STATUS_QC_PASSED,
    TICKET_STATUS_QC_PENDING,
)
from ..permissions import Actor, Role, require_action
from ..time_utils import to_utc_z, utcnow
from . import barcode_repository, claim_repository, outbox_service, repair_ticket_service
from .tenant_service import BoundTenant, get_owned


PRE_REPAIR_STATUSES = (CLAIM_STATUS_SUBMITTED, CLAIM_STATUS_VALIDATED, CLAIM_STATUS_ASSIGNED)
HOLDABLE_STATUSES = tuple(
    s for s in CLAIM_STATUSES if s not in CLAIM_TERMINAL_STATUSES and s != CLAIM_STATUS_ON_HOLD
)


@dataclass(frozen=True)
class TransitionContext:
    """Everything a guard or side effect may look at."""

    tenant: BoundTenant
    claim: WarrantyClaim
    source: str
    actor: Actor
    settings: WarrantySettings
    reason: Optional[str] = None
    technician_id: Optional[str] = None
    estimated_completion_at: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class Transition:
    source: str
    target: str
    event_kind: str
    action: str
    guard: Optional[Callable[[TransitionContext], None]] = None
    # Returns extra column values for the compare-and-set and extra
    # timeline payload.
    effect: Optional[Callable[[TransitionContext], tuple[dict, dict]]] = None


# =============================================================================
# GUARDS
# =============================================================================

def _require_reason(ctx: TransitionContext) -> None:
    if not ctx.reason or not ctx.reason.strip():
        raise ValidationError("reason is required", details={"field": "reason"})


def _guard_validate(ctx: TransitionContext) -> None:
    barcode = get_owned(WarrantyBarcode, ctx.tenant, ctx.claim.barcode_id, label="Barcode")
    if barcode.status != BARCODE_STATUS_ACTIVATED:
        raise ConflictError(
            f"Barcode is {barcode.status}; only an activated barcode can back a claim",
            details={"barcode_status": barcode.status},
        )
    if barcode.is_expired(utcnow()):
        raise ConflictError("Warranty has expired", details={"expiry_date": to_utc_z(barcode.expiry_date)})
    if claim_repository.has_active_claim_on_barcode(ctx.tenant, barcode.id, exclude_claim_id=ctx.claim.id):
        raise ConflictError("Another active claim already references this barcode")


def _guard_assign(ctx: TransitionContext) -> None:
    if not ctx.technician_id or not str(ctx.technician_id).strip():
        raise ValidationError("technician_id is required", details={"field": "technician_id"})


def _guard_start_repair(ctx: TransitionContext) -> None:
    if ctx.actor.role == Role.TECHNICIAN and ctx.claim.technician_id != ctx.actor.actor_id:
        raise ForbiddenError("Claim is assigned to another technician")


def _ticket_in(status: str, description: str) -> Callable[[TransitionContext], None]:
    def guard(ctx: TransitionContext) -> None:
        ticket = repair_ticket_service.get_open_ticket(ctx.tenant, ctx.claim.id)
        current = ticket.status if ticket else None
        if current != status:
            raise ConflictError(
                f"Repair ticket must be {description}",
                details={"ticket_status": current},
            )
        if ctx.actor.role == Role.TECHNICIAN and ticket.technician_id != ctx.actor.actor_id:
            raise ForbiddenError("Ticket is assigned to another technician")
    return guard


# =============================================================================
# SIDE EFFECTS
# =============================================================================

def _effect_validate(ctx: TransitionContext) -> tuple[dict, dict]:
    barcode_repository.transition_status(
        ctx.tenant, ctx.claim.barcode_id, BARCODE_STATUS_ACTIVATED, BARCODE_STATUS_CLAIMED
    )
    return {"validated_by": ctx.actor.actor_id}, {}


def _effect_reject(ctx: TransitionContext) -> tuple[dict, dict]:
    reason = ctx.reason.strip()[:1000]
    return {"rejection_reason": reason, "resolved_at": utcnow()}, {"reason": reason}


def _effect_assign(ctx: TransitionContext) -> tuple[dict, dict]:
    technician_id = str(ctx.technician_id).strip()
    eta = ctx.estimated_completion_at or utcnow() + timedelta(days=ctx.settings.default_repair_days)
    values = {"technician_id": technician_id, "estimated_completion_at": eta}
    return values, {"technician_id": technician_id, "estimated_completion_at": to_utc_z(eta)}


def _effect_start_repair(ctx: TransitionContext) -> tuple[dict, dict]:
    ticket = repair_ticket_service.open_ticket(ctx.tenant, ctx.claim, technician_id=ctx.claim.technician_id)
    return {}, {"ticket_id": str(ticket.id)}


def _effect_complete(ctx: TransitionContext) -> tuple[dict, dict]:
    ticket = repair_ticket_service.get_open_ticket(ctx.tenant, ctx.claim.id)
    repair_ticket_service.close(ctx.tenant, ticket)
    outbox_service.enqueue(
        ctx.tenant,
        topic="repair_ticket.closed",
        aggregate_type="repair_ticket",
        aggregate_id=ticket.id,
        payload={"claim_id": str(ctx.claim.id), "cost": str(ticket.cost)},
    )
    return {"resolved_at": utcnow()}, {"ticket_id": str(ticket.id)}


def _effect_qc_fail(ctx: TransitionContext) -> tuple[dict, dict]:
    ticket = repair_ticket_service.get_open_ticket(ctx.tenant, ctx.claim.id)
    repair_ticket_service.reopen(ctx.tenant, ticket)
    payload = {"ticket_id": str(ticket.id)}
    if ctx.notes:
        payload["notes"] = ctx.notes
    return {}, payload


def _effect_hold(ctx: TransitionContext) -> tuple[dict, dict]:
    return {"held_from_status": ctx.source}, {"reason": ctx.reason.strip()}


def _effect_resume(ctx: TransitionContext) -> tuple[dict, dict]:
    return {"held_from_status": None}, {}


def _effect_cancel(ctx: TransitionContext) -> tuple[dict, dict]:
    barcode = get_owned(WarrantyBarcode, ctx.tenant, ctx.claim.barcode_id, label="Barcode")
    if barcode.status == BARCODE_STATUS_CLAIMED:
        barcode_repository.transition_status(
            ctx.tenant, barcode.id, BARCODE_STATUS_CLAIMED, BARCODE_STATUS_ACTIVATED
        )
    payload = {"reason": ctx.reason.strip()} if ctx.reason and ctx.reason.strip() else {}
    return {"held_from_status": None, "resolved_at": utcnow()}, payload


# =============================================================================
# TABLE
# =============================================================================

_FIXED = [
    Transition(CLAIM_STATUS_SUBMITTED, CLAIM_STATUS_VALIDATED, "validated", "VALIDATE_CLAIM",
               _guard_validate, _effect_validate),
    Transition(CLAIM_STATUS_SUBMITTED, CLAIM_STATUS_REJECTED, "rejected", "REJECT_CLAIM",
               _require_reason, _effect_reject),
    Transition(CLAIM_STATUS_VALIDATED, CLAIM_STATUS_ASSIGNED, "assigned", "ASSIGN_TECHNICIAN",
               _guard_assign, _effect_assign),
    Transition(CLAIM_STATUS_ASSIGNED, CLAIM_STATUS_IN_REPAIR, "repair_started", "START_REPAIR",
               _guard_start_repair, _effect_start_repair),
    Transition(CLAIM_STATUS_IN_REPAIR, CLAIM_STATUS_QC, "qc_requested", "REQUEST_QC",
               _ticket_in(TICKET_STATUS_QC_PENDING, "qc_pending")),
    Transition(CLAIM_STATUS_QC, CLAIM_STATUS_COMPLETED, "completed", "COMPLETE_CLAIM",
               _ticket_in(TICKET_STATUS_QC_PASSED, "qc_passed"), _effect_complete),
    Transition(CLAIM_STATUS_QC, CLAIM_STATUS_IN_REPAIR, "qc_failed", "FAIL_QC",
               _ticket_in(TICKET_STATUS_QC_FAILED, "qc_failed"), _effect_qc_fail),
]

TRANSITIONS: dict[tuple[str, str], Transition] = {(t.source, t.target): t for t in _FIXED}
for _status in HOLDABLE_STATUSES:
    TRANSITIONS[(_status, CLAIM_STATUS_ON_HOLD)] = Transition(
        _status, CLAIM_STATUS_ON_HOLD, "paused", "HOLD_CLAIM", _require_reason, _effect_hold
    )
for _status in PRE_REPAIR_STATUSES:
    TRANSITIONS[(_status, CLAIM_STATUS_CANCELLED)] = Transition(
        _status, CLAIM_STATUS_CANCELLED, "cancelled", "CANCEL_CLAIM", None, _effect_cancel
    )

_RESUME = Transition(CLAIM_STATUS_ON_HOLD, "*", "resumed", "RESUME_CLAIM", None, _effect_resume)
_CANCEL_HELD = Transition(
    CLAIM_STATUS_ON_HOLD, CLAIM_STATUS_CANCELLED, "cancelled", "CANCEL_CLAIM", None, _effect_cancel
)


def find_transition(claim: WarrantyClaim, target: str) -> Transition:
    """
    Look up the rule for moving `claim` to `target`.

    on_hold is special: it may only go back to the status it was held from,
    or to cancelled when it was held before repair began.

    Raises:
        ValidationError: target is not a claim status
        ConflictError: the pair is not in the table
    """
    if target not in CLAIM_STATUSES:
        raise ValidationError(f"Unknown claim status '{target}'", details={"field": "status"})
    if claim.status == CLAIM_STATUS_ON_HOLD:
        if target == claim.held_from_status:
            return _RESUME
        if target == CLAIM_STATUS_CANCELLED and claim.held_from_status in PRE_REPAIR_STATUSES:
            return _CANCEL_HELD
    else:
        rule = TRANSITIONS.get((claim.status, target))
        if rule is not None:
            return rule
    raise ConflictError(
        f"Illegal claim transition {claim.status} -> {target}",
        details={"from": claim.status, "to": target},
    )


def is_legal(claim: WarrantyClaim, target: str) -> bool:
    try:
        find_transition(claim, target)
    except ConflictError:
        return False
    return True


def apply(
    tenant: BoundTenant,
    claim_id,
    target: str,
    actor: Actor,
    *,
    settings: WarrantySettings,
    reason: Optional[str] = None,
    technician_id: Optional[str] = None,
    estimated_completion_at: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> WarrantyClaim:
    """
    Run one transition inside the caller's transaction.

    Order: fresh read, customer ownership, table lookup, permission, guard,
    compare-and-set, side effects, timeline event, outbox row. Any failure
    leaves the transaction to be rolled back by the caller.
    """
    claim = claim_repository.get_by_id(tenant, claim_id)
    if actor.role == Role.CUSTOMER and str(claim.customer_id) != actor.actor_id:
        # Customers never learn about claims they do not own.
        raise NotFoundError("Claim not found")
    rule = find_transition(claim, target)
    require_action(actor, rule.action)
    ctx = TransitionContext(
        tenant=tenant,
        claim=claim,
        source=claim.status,
        actor=actor,
        settings=settings,
        reason=reason,
        technician_id=technician_id,
        estimated_completion_at=estimated_completion_at,
        notes=notes,
    )
    if rule.guard is not None:
        rule.guard(ctx)

    source = ctx.source
    claim_repository.compare_and_set_status(tenant, claim.id, expected=source, target=target)
    values: dict[str, Any] = {}
    payload: dict[str, Any] = {}
    if rule.effect is not None:
        values, payload = rule.effect(ctx)
    claim = claim_repository.get_by_id(tenant, claim.id)
    for key, value in values.items():
        setattr(claim, key, value)

    claim_repository.append_timeline(
        tenant,
        claim,
        kind=rule.event_kind,
        actor=actor,
        payload={"from": source, "to": target, **payload},
    )
    outbox_service.enqueue(
        tenant,
        topic=f"claim.{rule.event_kind}",
        aggregate_type="claim",
        aggregate_id=claim.id,
        payload={"claim_number": claim.claim_number, "from": source, "to": target, "actor_id": actor.actor_id},
    )
    return claim
