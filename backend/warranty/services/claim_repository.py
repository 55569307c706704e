# Overview: Service-layer operations for warranty claims; persistence, claim numbers, timeline and attachment rows, statistics.

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select, update

from ..errors import ConflictError, InternalError, NotFoundError, ValidationError
from ..extensions import db
from ..models import (
    ClaimAttachment,
    ClaimSequence,
    ClaimTimelineEvent,
    RepairTicket,
    WarrantyClaim,
)
from ..models.claims import (
    CLAIM_STATUS_COMPLETED,
    CLAIM_STATUSES,
    CLAIM_TERMINAL_STATUSES,
    ISSUE_CATEGORIES,
    PRIORITIES,
    SEVERITIES,
    TICKET_STATUS_CLOSED,
)
from ..permissions import Actor
from ..time_utils import utcnow
from .pagination import Page, PageRequest, paginate
from .tenant_service import BoundTenant, get_owned, require_tenant, scoped_query


CLAIM_NUMBER_PREFIX = "CLM"
CLAIM_NUMBER_PAD = 6
# Counter values already taken (e.g. imported claims) are skipped, up to this many.
MAX_NUMBER_SKIPS = 100

UPDATABLE_FIELDS = {"admin_notes", "repair_notes", "priority", "estimated_completion_at"}


def generate_claim_number(tenant: BoundTenant, now: datetime | None = None) -> str:
    """
    Atomically allocate the next claim number for a storefront.

    Format: CLM-YYYYMM-000123. The counter is per storefront and never
    resets; the month part is informational. Uses a single UPDATE to bump
    the counter, so concurrent transactions serialize on the counter row.
    The (storefront_id, claim_number) unique constraint is the final guard.
    """
    require_tenant(tenant)
    now = now or utcnow()
    for _ in range(MAX_NUMBER_SKIPS):
        number = _next_counter_value(tenant)
        claim_number = f"{CLAIM_NUMBER_PREFIX}-{now:%Y%m}-{number:0{CLAIM_NUMBER_PAD}d}"
        taken = db.session.execute(
            select(WarrantyClaim.id).where(
                WarrantyClaim.storefront_id == tenant.storefront_id,
                WarrantyClaim.claim_number == claim_number,
            )
        ).first()
        if taken is None:
            return claim_number
    raise ConflictError("Could not allocate a free claim number")


def _next_counter_value(tenant: BoundTenant) -> int:
    stmt = (
        update(ClaimSequence)
        .where(ClaimSequence.storefront_id == tenant.storefront_id)
        .values(next_number=ClaimSequence.next_number + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        # First claim for this storefront; a concurrent first insert raises
        # IntegrityError on flush and the caller's optimistic loop retries.
        db.session.add(ClaimSequence(storefront_id=tenant.storefront_id, next_number=2))
        db.session.flush()
        return 1
    current = db.session.execute(
        select(ClaimSequence.next_number).where(ClaimSequence.storefront_id == tenant.storefront_id)
    ).scalar_one()
    return current - 1


def validate_claim_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Normalize and validate submission input. Returns the cleaned dict."""
    cleaned = dict(fields)

    description = (cleaned.get("issue_description") or "").strip()
    if len(description) < 10:
        raise ValidationError("issue_description must be at least 10 characters", details={"field": "issue_description"})
    if len(description) > 5000:
        raise ValidationError("issue_description must be at most 5000 characters", details={"field": "issue_description"})
    cleaned["issue_description"] = description

    category = (cleaned.get("issue_category") or "").strip().lower()
    if category not in ISSUE_CATEGORIES:
        raise ValidationError(
            f"issue_category must be one of: {', '.join(ISSUE_CATEGORIES)}", details={"field": "issue_category"}
        )
    cleaned["issue_category"] = category

    severity = (cleaned.get("severity") or "normal").strip().lower()
    if severity not in SEVERITIES:
        raise ValidationError(f"severity must be one of: {', '.join(SEVERITIES)}", details={"field": "severity"})
    cleaned["severity"] = severity

    priority = (cleaned.get("priority") or "normal").strip().lower()
    if priority not in PRIORITIES:
        raise ValidationError(f"priority must be one of: {', '.join(PRIORITIES)}", details={"field": "priority"})
    cleaned["priority"] = priority

    for name in ("customer_name", "customer_email"):
        value = (cleaned.get(name) or "").strip()
        if not value:
            raise ValidationError(f"{name} is required", details={"field": name})
        cleaned[name] = value
    if "@" not in cleaned["customer_email"]:
        raise ValidationError("customer_email must be a valid e-mail address", details={"field": "customer_email"})

    phone = cleaned.get("customer_phone")
    cleaned["customer_phone"] = phone.strip() if isinstance(phone, str) and phone.strip() else None

    address = cleaned.get("pickup_address")
    if not isinstance(address, dict) or not address:
        raise ValidationError("pickup_address is required", details={"field": "pickup_address"})
    return cleaned


def create(
    tenant: BoundTenant,
    *,
    barcode_id: uuid.UUID,
    customer_id: uuid.UUID,
    product_id: uuid.UUID,
    fields: dict[str, Any],
) -> WarrantyClaim:
    """Insert a submitted claim with a freshly minted claim number (caller owns the transaction)."""
    require_tenant(tenant)
    cleaned = validate_claim_fields(fields)
    claim = WarrantyClaim(
        storefront_id=tenant.storefront_id,
        claim_number=generate_claim_number(tenant),
        barcode_id=barcode_id,
        customer_id=customer_id,
        product_id=product_id,
        issue_description=cleaned["issue_description"],
        issue_category=cleaned["issue_category"],
        severity=cleaned["severity"],
        priority=cleaned["priority"],
        pickup_address=cleaned["pickup_address"],
        customer_name=cleaned["customer_name"],
        customer_email=cleaned["customer_email"],
        customer_phone=cleaned["customer_phone"],
    )
    db.session.add(claim)
    db.session.flush()
    return claim


def update_fields(tenant: BoundTenant, claim_id, patch: dict[str, Any]) -> WarrantyClaim:
    """
    Update non-status fields of a claim.

    Terminal claims are immutable; status, numbers and references can
    never be patched.
    """
    claim = get_by_id(tenant, claim_id)
    unknown = set(patch) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(sorted(unknown))}")
    if claim.is_terminal:
        raise ConflictError(f"Claim is {claim.status} and can no longer be modified")
    if "priority" in patch and patch["priority"] not in PRIORITIES:
        raise ValidationError(f"priority must be one of: {', '.join(PRIORITIES)}", details={"field": "priority"})
    for key, value in patch.items():
        setattr(claim, key, value)
    claim.updated_at = utcnow()
    db.session.flush()
    return claim


def compare_and_set_status(
    tenant: BoundTenant,
    claim_id: uuid.UUID,
    *,
    expected: str,
    target: str,
    **values,
) -> None:
    """
    UPDATE ... SET status = target WHERE id = ? AND status = expected.

    Raises:
        ConflictError: another writer changed the status first
    """
    require_tenant(tenant)
    result = db.session.execute(
        update(WarrantyClaim)
        .where(
            WarrantyClaim.id == claim_id,
            WarrantyClaim.storefront_id == tenant.storefront_id,
            WarrantyClaim.status == expected,
        )
        .values(status=target, updated_at=utcnow(), **values)
    )
    if result.rowcount != 1:
        raise ConflictError(
            "Claim status changed concurrently",
            details={"expected_status": expected, "target_status": target},
        )


def get_by_id(tenant: BoundTenant, claim_id) -> WarrantyClaim:
    return get_owned(WarrantyClaim, tenant, claim_id, label="Claim")


def get_by_claim_number(tenant: BoundTenant, claim_number: str) -> WarrantyClaim:
    require_tenant(tenant)
    claim = scoped_query(WarrantyClaim, tenant).filter(
        WarrantyClaim.claim_number == (claim_number or "").strip().upper()
    ).first()
    if claim is None:
        raise NotFoundError("Claim not found")
    return claim


def _filtered_query(
    tenant: BoundTenant,
    *,
    status: Optional[str] = None,
    severity: Optional[str] = None,
    priority: Optional[str] = None,
    customer_id: Optional[uuid.UUID] = None,
    technician_id: Optional[str] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
):
    query = scoped_query(WarrantyClaim, tenant)
    if status:
        if status not in CLAIM_STATUSES:
            raise ValidationError(f"Invalid claim status '{status}'", details={"field": "status"})
        query = query.filter(WarrantyClaim.status == status)
    if severity:
        if severity not in SEVERITIES:
            raise ValidationError(f"Invalid severity '{severity}'", details={"field": "severity"})
        query = query.filter(WarrantyClaim.severity == severity)
    if priority:
        if priority not in PRIORITIES:
            raise ValidationError(f"Invalid priority '{priority}'", details={"field": "priority"})
        query = query.filter(WarrantyClaim.priority == priority)
    if customer_id:
        query = query.filter(WarrantyClaim.customer_id == customer_id)
    if technician_id:
        query = query.filter(WarrantyClaim.technician_id == technician_id)
    if created_from:
        query = query.filter(WarrantyClaim.created_at >= created_from)
    if created_to:
        query = query.filter(WarrantyClaim.created_at <= created_to)
    if created_from and created_to and created_from > created_to:
        raise ValidationError("from must be before to", details={"field": "from"})
    return query


def list_claims(tenant: BoundTenant, *, page_request: PageRequest = PageRequest(), **filters) -> Page:
    query = _filtered_query(tenant, **filters).order_by(WarrantyClaim.created_at.desc(), WarrantyClaim.id)
    return paginate(query, page_request)


def count(tenant: BoundTenant, **filters) -> int:
    """Number of claims matching the list_claims filters."""
    return _filtered_query(tenant, **filters).count()


def has_active_claim_on_barcode(tenant: BoundTenant, barcode_id: uuid.UUID, *, exclude_claim_id=None) -> bool:
    query = scoped_query(WarrantyClaim, tenant).filter(
        WarrantyClaim.barcode_id == barcode_id,
        WarrantyClaim.status.not_in(CLAIM_TERMINAL_STATUSES),
    )
    if exclude_claim_id is not None:
        query = query.filter(WarrantyClaim.id != exclude_claim_id)
    return db.session.query(query.exists()).scalar()


# =============================================================================
# TIMELINE (append-only)
# =============================================================================

def append_timeline(
    tenant: BoundTenant,
    claim: WarrantyClaim,
    *,
    kind: str,
    actor: Actor,
    payload: dict | None = None,
) -> ClaimTimelineEvent:
    """
    Append one event with the next per-claim sequence.

    created_at is forced strictly after the previous event so ordering by
    created_at and by sequence always agree. Two concurrent appends collide
    on uq_timeline_claim_sequence and surface as ConflictError.
    """
    require_tenant(tenant)
    if claim.storefront_id != tenant.storefront_id:
        raise InternalError("timeline append for a claim outside the bound tenant")
    last = db.session.execute(
        select(ClaimTimelineEvent.sequence, ClaimTimelineEvent.created_at)
        .where(ClaimTimelineEvent.claim_id == claim.id)
        .order_by(ClaimTimelineEvent.sequence.desc())
        .limit(1)
    ).first()
    now = utcnow()
    sequence = 1
    if last is not None:
        sequence = last.sequence + 1
        if now <= last.created_at:
            now = last.created_at + timedelta(microseconds=1)
    event = ClaimTimelineEvent(
        claim_id=claim.id,
        storefront_id=tenant.storefront_id,
        sequence=sequence,
        kind=kind,
        actor_id=actor.actor_id,
        actor_role=actor.role,
        payload=payload or {},
        created_at=now,
    )
    db.session.add(event)
    db.session.flush()
    return event


def list_timeline(tenant: BoundTenant, claim_id, *, page_request: PageRequest = PageRequest(size=100)) -> Page:
    claim = get_by_id(tenant, claim_id)
    query = (
        scoped_query(ClaimTimelineEvent, tenant)
        .filter(ClaimTimelineEvent.claim_id == claim.id)
        .order_by(ClaimTimelineEvent.sequence)
    )
    return paginate(query, page_request)


# =============================================================================
# ATTACHMENTS (metadata only)
# =============================================================================

def add_attachment(tenant: BoundTenant, claim: WarrantyClaim, meta: dict[str, Any]) -> ClaimAttachment:
    require_tenant(tenant)
    attachment = ClaimAttachment(
        claim_id=claim.id,
        storefront_id=tenant.storefront_id,
        uploaded_by=meta["uploaded_by"],
        original_filename=meta["original_filename"],
        sanitized_path=meta["sanitized_path"],
        size_bytes=meta["size_bytes"],
        mime_type=meta["mime_type"],
        kind=meta["kind"],
        description=meta.get("description"),
        scan_status="pending",
        approval="pending",
    )
    db.session.add(attachment)
    db.session.flush()
    return attachment


def list_attachments(tenant: BoundTenant, claim_id, *, include_rejected: bool = True) -> list[ClaimAttachment]:
    claim = get_by_id(tenant, claim_id)
    query = scoped_query(ClaimAttachment, tenant).filter(ClaimAttachment.claim_id == claim.id)
    if not include_rejected:
        query = query.filter(ClaimAttachment.approval != "rejected")
    return query.order_by(ClaimAttachment.created_at, ClaimAttachment.id).all()


# =============================================================================
# STATISTICS
# =============================================================================

def claim_stats(tenant: BoundTenant, start: Optional[datetime] = None, end: Optional[datetime] = None) -> dict:
    """
    Aggregate claim counts for a created_at range.

    growth_rate and claims_this_month are part of the response shape but
    are not computed; they are always null.
    """
    require_tenant(tenant)
    filters = [WarrantyClaim.storefront_id == tenant.storefront_id]
    if start:
        filters.append(WarrantyClaim.created_at >= start)
    if end:
        filters.append(WarrantyClaim.created_at <= end)

    def _grouped(column) -> dict[str, int]:
        rows = db.session.query(column, func.count(WarrantyClaim.id)).filter(*filters).group_by(column).all()
        return {key: n for key, n in rows}

    by_status = {status: 0 for status in CLAIM_STATUSES}
    by_status.update(_grouped(WarrantyClaim.status))
    by_severity = {severity: 0 for severity in SEVERITIES}
    by_severity.update(_grouped(WarrantyClaim.severity))
    by_category = _grouped(WarrantyClaim.issue_category)

    resolved = db.session.query(WarrantyClaim.created_at, WarrantyClaim.resolved_at).filter(
        *filters,
        WarrantyClaim.status == CLAIM_STATUS_COMPLETED,
        WarrantyClaim.resolved_at.is_not(None),
    ).all()
    avg_resolution_hours = None
    if resolved:
        total_seconds = sum((r.resolved_at - r.created_at).total_seconds() for r in resolved)
        avg_resolution_hours = round(total_seconds / len(resolved) / 3600, 2)

    avg_cost = (
        db.session.query(func.avg(RepairTicket.cost))
        .join(WarrantyClaim, WarrantyClaim.id == RepairTicket.claim_id)
        .filter(*filters, RepairTicket.status == TICKET_STATUS_CLOSED, RepairTicket.cost.is_not(None))
        .scalar()
    )

    return {
        "total": count(tenant, created_from=start, created_to=end),
        "by_status": by_status,
        "by_severity": by_severity,
        "by_category": by_category,
        "completed": by_status[CLAIM_STATUS_COMPLETED],
        "avg_resolution_hours": avg_resolution_hours,
        "avg_repair_cost": str(Decimal(avg_cost).quantize(Decimal("0.01"))) if avg_cost is not None else None,
        "growth_rate": None,
        "claims_this_month": None,
        "range": {
            "from": start.isoformat() if start else None,
            "to": end.isoformat() if end else None,
        },
    }
