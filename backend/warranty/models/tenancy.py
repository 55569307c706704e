from __future__ import annotations

import uuid

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


STOREFRONT_STATUS_ACTIVE = "active"
STOREFRONT_STATUS_SUSPENDED = "suspended"
STOREFRONT_STATUS_DELETED = "deleted"
STOREFRONT_STATUSES = {STOREFRONT_STATUS_ACTIVE, STOREFRONT_STATUS_SUSPENDED, STOREFRONT_STATUS_DELETED}


class Storefront(db.Model):
    """
    Multi-tenant root: every tenant is a Storefront.

    WHY: Shared-database multi-tenancy with strict isolation. Barcodes,
    batches, claims and everything a claim owns carry storefront_id, and
    every query filters by it.

    DESIGN:
    - Created out of band (CLI / seller onboarding); read-only for the core
    - Resolved from host (custom_domain or <slug>.<base domain>), path
      prefix, gateway claim or explicit slug
    """
    __tablename__ = "storefronts"

    id = db.Column(db.Uuid, primary_key=True, default=uuid.uuid4)
    slug = db.Column(db.String(64), nullable=False, unique=True, index=True)
    name = db.Column(db.String(255), nullable=False)
    custom_domain = db.Column(db.String(255), nullable=True, unique=True, index=True)
    status = db.Column(db.String(16), nullable=False, default=STOREFRONT_STATUS_ACTIVE, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Storefront id={self.id} slug={self.slug!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "slug": self.slug,
            "name": self.name,
            "custom_domain": self.custom_domain,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """Catalog product. Referenced by barcodes and claims; read-only for the core."""
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("storefront_id", "sku", name="uq_products_storefront_sku"),
    )

    id = db.Column(db.Uuid, primary_key=True, default=uuid.uuid4)
    storefront_id = db.Column(db.Uuid, db.ForeignKey("storefronts.id"), nullable=False, index=True)
    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    base_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default="active")
    warranty_months = db.Column(db.Integer, nullable=False, default=12)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "sku": self.sku,
            "name": self.name,
            "base_price": str(self.base_price) if self.base_price is not None else None,
            "status": self.status,
            "warranty_months": self.warranty_months,
        }

    def to_public_dict(self) -> dict:
        return {"id": str(self.id), "sku": self.sku, "name": self.name}


class Customer(db.Model):
    """
    Storefront customer. Read-only for the core.

    MULTI-TENANT: the same e-mail may exist once per storefront.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("storefront_id", "email", name="uq_customers_storefront_email"),
    )

    id = db.Column(db.Uuid, primary_key=True, default=uuid.uuid4)
    storefront_id = db.Column(db.Uuid, db.ForeignKey("storefronts.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="active")

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "status": self.status,
        }
