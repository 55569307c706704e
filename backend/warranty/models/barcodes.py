from __future__ import annotations

import uuid

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


BARCODE_STATUS_GENERATED = "generated"
BARCODE_STATUS_ACTIVATED = "activated"
BARCODE_STATUS_CLAIMED = "claimed"
BARCODE_STATUS_EXPIRED = "expired"
BARCODE_STATUS_REVOKED = "revoked"
BARCODE_STATUSES = (
    BARCODE_STATUS_GENERATED,
    BARCODE_STATUS_ACTIVATED,
    BARCODE_STATUS_CLAIMED,
    BARCODE_STATUS_EXPIRED,
    BARCODE_STATUS_REVOKED,
)

BATCH_STATUS_QUEUED = "queued"
BATCH_STATUS_RUNNING = "running"
BATCH_STATUS_CANCELLED = "cancelled"
BATCH_STATUS_COMPLETED = "completed"
BATCH_STATUS_FAILED = "failed"
BATCH_ACTIVE_STATUSES = (BATCH_STATUS_QUEUED, BATCH_STATUS_RUNNING)
BATCH_TERMINAL_STATUSES = (BATCH_STATUS_CANCELLED, BATCH_STATUS_COMPLETED, BATCH_STATUS_FAILED)


class BarcodeBatch(db.Model):
    """
    Long-running generation job minting barcodes for one product.

    INVARIANTS:
    - minted_count <= requested_count
    - status == completed implies minted_count == requested_count
    - progress columns only move forward, and only while status is running

    Barcodes reference the batch weakly (batch_id SET NULL on delete).
    """
    __tablename__ = "barcode_batches"
    __table_args__ = (
        db.CheckConstraint("minted_count <= requested_count", name="ck_batches_minted_le_requested"),
        db.Index("ix_batches_storefront_status", "storefront_id", "status"),
    )

    id = db.Column(db.Uuid, primary_key=True, default=uuid.uuid4)
    storefront_id = db.Column(db.Uuid, db.ForeignKey("storefronts.id"), nullable=False, index=True)
    product_id = db.Column(db.Uuid, db.ForeignKey("products.id"), nullable=False)

    requested_count = db.Column(db.Integer, nullable=False)
    minted_count = db.Column(db.Integer, nullable=False, default=0)
    collision_count = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default=BATCH_STATUS_QUEUED)

    prefix = db.Column(db.String(4), nullable=True)
    code_length = db.Column(db.Integer, nullable=False)
    failure_reason = db.Column(db.String(64), nullable=True)
    annotations = db.Column(db.JSON, nullable=False, default=list)

    requested_by = db.Column(db.String(64), nullable=False)
    started_at = db.Column(db.DateTime, nullable=True)
    finished_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<BarcodeBatch id={self.id} {self.minted_count}/{self.requested_count} {self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "product_id": str(self.product_id),
            "requested_count": self.requested_count,
            "minted_count": self.minted_count,
            "collision_count": self.collision_count,
            "status": self.status,
            "prefix": self.prefix,
            "code_length": self.code_length,
            "failure_reason": self.failure_reason,
            "annotations": list(self.annotations or []),
            "requested_by": self.requested_by,
            "started_at": to_utc_z(self.started_at),
            "finished_at": to_utc_z(self.finished_at),
            "created_at": to_utc_z(self.created_at),
        }


class WarrantyBarcode(db.Model):
    """
    Warranty entitlement for one product unit.

    INVARIANTS:
    - code_value is unique across the whole system (not per storefront)
    - customer_id is set once the barcode has been activated
    - at most one non-terminal claim references a barcode at a time
      (enforced by the claimed status: validation requires activated)
    """
    __tablename__ = "warranty_barcodes"
    __table_args__ = (
        db.UniqueConstraint("code_value", name="uq_barcodes_code_value"),
        db.Index("ix_barcodes_storefront_status", "storefront_id", "status"),
        db.Index("ix_barcodes_batch", "batch_id"),
    )

    id = db.Column(db.Uuid, primary_key=True, default=uuid.uuid4)
    storefront_id = db.Column(db.Uuid, db.ForeignKey("storefronts.id"), nullable=False, index=True)
    product_id = db.Column(db.Uuid, db.ForeignKey("products.id"), nullable=False)
    code_value = db.Column(db.String(80), nullable=False)
    batch_id = db.Column(db.Uuid, db.ForeignKey("barcode_batches.id", ondelete="SET NULL"), nullable=True)
    customer_id = db.Column(db.Uuid, db.ForeignKey("customers.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default=BARCODE_STATUS_GENERATED)
    activated_at = db.Column(db.DateTime, nullable=True)
    purchase_date = db.Column(db.DateTime, nullable=True)
    warranty_months = db.Column(db.Integer, nullable=True)
    expiry_date = db.Column(db.DateTime, nullable=True)
    revoked_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<WarrantyBarcode id={self.id} status={self.status}>"

    def is_expired(self, now) -> bool:
        return self.expiry_date is not None and now >= self.expiry_date

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "product_id": str(self.product_id),
            "code_value": self.code_value,
            "batch_id": str(self.batch_id) if self.batch_id else None,
            "customer_id": str(self.customer_id) if self.customer_id else None,
            "status": self.status,
            "activated_at": to_utc_z(self.activated_at),
            "purchase_date": to_utc_z(self.purchase_date),
            "warranty_months": self.warranty_months,
            "expiry_date": to_utc_z(self.expiry_date),
            "revoked_reason": self.revoked_reason,
            "created_at": to_utc_z(self.created_at),
        }

    def to_customer_dict(self) -> dict:
        """Registration view for the owning customer; no batch or revocation internals."""
        return {
            "id": str(self.id),
            "product_id": str(self.product_id),
            "code_value": self.code_value,
            "status": self.status,
            "activated_at": to_utc_z(self.activated_at),
            "purchase_date": to_utc_z(self.purchase_date),
            "warranty_months": self.warranty_months,
            "expiry_date": to_utc_z(self.expiry_date),
        }
