# Overview: Service-layer operations for warranty barcodes; encapsulates business logic and database work.

"""
Barcode Repository

STATE MACHINE:
    generated -> activated -> claimed
                          \\-> expired
    claimed -> activated            (claim cancelled before repair)
    any (except revoked) -> revoked (administrative, immediate)

RULES:
1. code_value is unique system-wide; the storage layer enforces it
2. bulk_insert skips conflicting rows and reports them instead of failing
3. Status changes are compare-and-set on the expected current status
4. Every function takes the BoundTenant first and filters by it
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, update

from ..errors import ConflictError, InternalError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Customer, WarrantyBarcode
from ..models.barcodes import (
    BARCODE_STATUS_ACTIVATED,
    BARCODE_STATUS_CLAIMED,
    BARCODE_STATUS_EXPIRED,
    BARCODE_STATUS_GENERATED,
    BARCODE_STATUS_REVOKED,
    BARCODE_STATUSES,
)
from ..time_utils import add_months, utcnow
from .pagination import Page, PageRequest, paginate
from .tenant_service import BoundTenant, get_owned, require_tenant, scoped_query


ALLOWED_TRANSITIONS = {
    (BARCODE_STATUS_GENERATED, BARCODE_STATUS_ACTIVATED),
    (BARCODE_STATUS_ACTIVATED, BARCODE_STATUS_CLAIMED),
    (BARCODE_STATUS_ACTIVATED, BARCODE_STATUS_EXPIRED),
    (BARCODE_STATUS_CLAIMED, BARCODE_STATUS_ACTIVATED),
} | {
    (status, BARCODE_STATUS_REVOKED) for status in BARCODE_STATUSES if status != BARCODE_STATUS_REVOKED
}


@dataclass
class BulkInsertResult:
    inserted: set[str] = field(default_factory=set)
    collided: list[str] = field(default_factory=list)

    @property
    def inserted_count(self) -> int:
        return len(self.inserted)


def can_transition(from_status: str, to_status: str) -> bool:
    return (from_status, to_status) in ALLOWED_TRANSITIONS


def _insert_ignoring_conflicts(table, column: str):
    dialect = db.session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise InternalError(f"skip-on-conflict insert is not supported on {dialect}")
    return insert(table).on_conflict_do_nothing(index_elements=[column])


def insert(tenant: BoundTenant, *, product_id: uuid.UUID, code_value: str, batch_id: uuid.UUID | None = None) -> WarrantyBarcode:
    """Insert a single barcode. Raises ConflictError (on flush) if code_value exists."""
    require_tenant(tenant)
    barcode = WarrantyBarcode(
        storefront_id=tenant.storefront_id,
        product_id=product_id,
        code_value=code_value,
        batch_id=batch_id,
        status=BARCODE_STATUS_GENERATED,
    )
    db.session.add(barcode)
    db.session.flush()
    return barcode


def bulk_insert(
    tenant: BoundTenant,
    *,
    product_id: uuid.UUID,
    codes: Iterable[str],
    batch_id: uuid.UUID | None = None,
) -> BulkInsertResult:
    """
    Insert many codes in one statement, skipping any that already exist.

    Duplicates inside `codes` and values already present in the table are
    both reported as collided; the surrounding transaction is not aborted.
    """
    require_tenant(tenant)
    codes = list(codes)
    unique_codes = list(dict.fromkeys(codes))
    result = BulkInsertResult()
    if not unique_codes:
        return result

    now = utcnow()
    rows = [
        {
            "id": uuid.uuid4(),
            "storefront_id": tenant.storefront_id,
            "product_id": product_id,
            "code_value": code,
            "batch_id": batch_id,
            "status": BARCODE_STATUS_GENERATED,
            "created_at": now,
            "updated_at": now,
        }
        for code in unique_codes
    ]
    table = WarrantyBarcode.__table__
    stmt = _insert_ignoring_conflicts(table, "code_value").returning(table.c.code_value)
    result.inserted = set(db.session.execute(stmt, rows).scalars())

    seen: set[str] = set()
    for code in codes:
        if code in result.inserted and code not in seen:
            seen.add(code)
            continue
        result.collided.append(code)
    return result


def get_by_id(tenant: BoundTenant, barcode_id) -> WarrantyBarcode:
    return get_owned(WarrantyBarcode, tenant, barcode_id, label="Barcode")


def get_by_code_value(tenant: BoundTenant, code_value: str) -> Optional[WarrantyBarcode]:
    """Tenant-scoped lookup; a code owned by another storefront returns None."""
    require_tenant(tenant)
    return (
        scoped_query(WarrantyBarcode, tenant)
        .filter(WarrantyBarcode.code_value == code_value.strip().upper())
        .first()
    )


def list_by_tenant(
    tenant: BoundTenant,
    *,
    status: str | None = None,
    product_id: uuid.UUID | None = None,
    batch_id: uuid.UUID | None = None,
    customer_id: uuid.UUID | None = None,
    page_request: PageRequest = PageRequest(),
) -> Page:
    query = scoped_query(WarrantyBarcode, tenant)
    if status:
        if status not in BARCODE_STATUSES:
            raise ValidationError(f"Invalid barcode status '{status}'", details={"field": "status"})
        query = query.filter(WarrantyBarcode.status == status)
    if product_id:
        query = query.filter(WarrantyBarcode.product_id == product_id)
    if batch_id:
        query = query.filter(WarrantyBarcode.batch_id == batch_id)
    if customer_id:
        query = query.filter(WarrantyBarcode.customer_id == customer_id)
    query = query.order_by(WarrantyBarcode.created_at.desc(), WarrantyBarcode.id)
    return paginate(query, page_request)


def count_by_status(tenant: BoundTenant) -> dict[str, int]:
    require_tenant(tenant)
    rows = (
        db.session.query(WarrantyBarcode.status, func.count(WarrantyBarcode.id))
        .filter(WarrantyBarcode.storefront_id == tenant.storefront_id)
        .group_by(WarrantyBarcode.status)
        .all()
    )
    counts = {status: 0 for status in BARCODE_STATUSES}
    counts.update({status: count for status, count in rows})
    return counts


def transition_status(
    tenant: BoundTenant,
    barcode_id: uuid.UUID,
    from_status: str,
    to_status: str,
    **values,
) -> None:
    """
    Compare-and-set status change.

    Raises:
        ConflictError: transition not allowed, or the row is no longer in
            from_status (a concurrent writer won)
    """
    require_tenant(tenant)
    if not can_transition(from_status, to_status):
        raise ConflictError(
            f"Barcode cannot move from {from_status} to {to_status}",
            details={"from": from_status, "to": to_status},
        )
    stmt = (
        update(WarrantyBarcode)
        .where(
            WarrantyBarcode.id == barcode_id,
            WarrantyBarcode.storefront_id == tenant.storefront_id,
            WarrantyBarcode.status == from_status,
        )
        .values(status=to_status, updated_at=utcnow(), **values)
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        raise ConflictError(
            "Barcode status changed concurrently",
            details={"expected": from_status, "to": to_status},
        )


def activate(
    tenant: BoundTenant,
    barcode_id,
    *,
    customer_id,
    purchase_date: datetime,
    warranty_months: int,
) -> WarrantyBarcode:
    """
    Register a generated barcode to a customer.

    expiry_date = purchase_date + warranty_months (calendar months).

    Only generated barcodes activate; claimed -> activated is reserved for
    releasing a barcode when its claim is cancelled.
    """
    barcode = get_by_id(tenant, barcode_id)
    if barcode.status != BARCODE_STATUS_GENERATED:
        raise ConflictError(
            f"Barcode is {barcode.status}; only generated barcodes can be activated",
            details={"barcode_status": barcode.status},
        )
    customer = get_owned(Customer, tenant, customer_id, label="Customer")
    if warranty_months is None or warranty_months <= 0:
        raise ValidationError("warranty_months must be > 0", details={"field": "warranty_months"})
    if purchase_date > utcnow():
        raise ValidationError("purchase_date cannot be in the future", details={"field": "purchase_date"})
    transition_status(
        tenant,
        barcode.id,
        BARCODE_STATUS_GENERATED,
        BARCODE_STATUS_ACTIVATED,
        customer_id=customer.id,
        activated_at=utcnow(),
        purchase_date=purchase_date,
        warranty_months=warranty_months,
        expiry_date=add_months(purchase_date, warranty_months),
    )
    return get_by_id(tenant, barcode.id)


def revoke(tenant: BoundTenant, barcode_id, *, reason: str) -> WarrantyBarcode:
    if not reason or not reason.strip():
        raise ValidationError("reason is required", details={"field": "reason"})
    barcode = get_by_id(tenant, barcode_id)
    if barcode.status == BARCODE_STATUS_REVOKED:
        raise ConflictError("Barcode is already revoked")
    transition_status(
        tenant, barcode.id, barcode.status, BARCODE_STATUS_REVOKED, revoked_reason=reason.strip()[:255]
    )
    return get_by_id(tenant, barcode.id)


def expire_due(tenant: BoundTenant, now: datetime | None = None) -> int:
    """Move activated barcodes past their expiry_date to expired. Returns the count."""
    require_tenant(tenant)
    now = now or utcnow()
    stmt = (
        update(WarrantyBarcode)
        .where(
            WarrantyBarcode.storefront_id == tenant.storefront_id,
            WarrantyBarcode.status == BARCODE_STATUS_ACTIVATED,
            WarrantyBarcode.expiry_date.is_not(None),
            WarrantyBarcode.expiry_date < now,
        )
        .values(status=BARCODE_STATUS_EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount


def require_activated_for(tenant: BoundTenant, barcode_id, customer_id) -> WarrantyBarcode:
    """Barcode the customer may open a claim on: owned by them and activated."""
    barcode = get_by_id(tenant, barcode_id)
    if barcode.customer_id != customer_id:
        raise NotFoundError("Barcode not found")
    if barcode.status != BARCODE_STATUS_ACTIVATED:
        raise ConflictError(
            f"Barcode is {barcode.status}; only activated barcodes can be claimed",
            details={"barcode_status": barcode.status},
        )
    if barcode.is_expired(utcnow()):
        raise ConflictError("Warranty has expired", details={"expiry_date": str(barcode.expiry_date)})
    return barcode
