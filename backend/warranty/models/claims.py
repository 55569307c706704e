from __future__ import annotations

import uuid

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


CLAIM_STATUS_SUBMITTED = "submitted"
CLAIM_STATUS_VALIDATED = "validated"
CLAIM_STATUS_ASSIGNED = "assigned"
CLAIM_STATUS_IN_REPAIR = "in_repair"
CLAIM_STATUS_QC = "qc"
CLAIM_STATUS_COMPLETED = "completed"
CLAIM_STATUS_REJECTED = "rejected"
CLAIM_STATUS_CANCELLED = "cancelled"
CLAIM_STATUS_ON_HOLD = "on_hold"

CLAIM_STATUSES = (
    CLAIM_STATUS_SUBMITTED,
    CLAIM_STATUS_VALIDATED,
    CLAIM_STATUS_ASSIGNED,
    CLAIM_STATUS_IN_REPAIR,
    CLAIM_STATUS_QC,
    CLAIM_STATUS_COMPLETED,
    CLAIM_STATUS_REJECTED,
    CLAIM_STATUS_CANCELLED,
    CLAIM_STATUS_ON_HOLD,
)
CLAIM_TERMINAL_STATUSES = (CLAIM_STATUS_COMPLETED, CLAIM_STATUS_REJECTED, CLAIM_STATUS_CANCELLED)

SEVERITIES = ("low", "normal", "high", "critical")
PRIORITIES = ("low", "normal", "high", "urgent")
ISSUE_CATEGORIES = ("defect", "damage", "malfunction", "wear", "other")

TICKET_STATUS_OPEN = "open"
TICKET_STATUS_DIAGNOSING = "diagnosing"
TICKET_STATUS_REPAIRING = "repairing"
TICKET_STATUS_QC_PENDING = "qc_pending"
TICKET_STATUS_QC_PASSED = "qc_passed"
TICKET_STATUS_QC_FAILED = "qc_failed"
TICKET_STATUS_CLOSED = "closed"

ATTACHMENT_KINDS = ("photo", "invoice", "video", "other")
SCAN_STATUSES = ("pending", "clean", "infected", "failed")
APPROVAL_STATUSES = ("pending", "approved", "rejected")


class ClaimSequence(db.Model):
    """
    Atomic per-storefront claim number counter.

    WHY: Prevent race conditions when minting claim numbers. The counter is
    bumped with a single UPDATE; the (storefront_id, claim_number) unique
    constraint on claims is the final guard.
    """
    __tablename__ = "claim_sequences"

    storefront_id = db.Column(db.Uuid, db.ForeignKey("storefronts.id"), primary_key=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class WarrantyClaim(db.Model):
    """
    Customer request to exercise the warranty on one barcode.

    INVARIANTS:
    - claim_number unique per storefront
    - status only changes through the claim state machine (compare-and-set
      on the expected current status)
    - terminal statuses (completed, rejected, cancelled) are immutable
      except for timeline appends
    """
    __tablename__ = "warranty_claims"
    __table_args__ = (
        db.UniqueConstraint("storefront_id", "claim_number", name="uq_claims_storefront_number"),
        db.Index("ix_claims_storefront_status", "storefront_id", "status"),
        db.Index("ix_claims_storefront_created", "storefront_id", "created_at"),
        db.Index("ix_claims_barcode", "barcode_id"),
    )

    id = db.Column(db.Uuid, primary_key=True, default=uuid.uuid4)
    storefront_id = db.Column(db.Uuid, db.ForeignKey("storefronts.id"), nullable=False)
    claim_number = db.Column(db.String(32), nullable=False)

    barcode_id = db.Column(db.Uuid, db.ForeignKey("warranty_barcodes.id"), nullable=False)
    customer_id = db.Column(db.Uuid, db.ForeignKey("customers.id"), nullable=False, index=True)
    product_id = db.Column(db.Uuid, db.ForeignKey("products.id"), nullable=False)

    issue_description = db.Column(db.Text, nullable=False)
    issue_category = db.Column(db.String(32), nullable=False)
    severity = db.Column(db.String(16), nullable=False, default="normal")
    priority = db.Column(db.String(16), nullable=False, default="normal")
    status = db.Column(db.String(16), nullable=False, default=CLAIM_STATUS_SUBMITTED)
    held_from_status = db.Column(db.String(16), nullable=True)

    pickup_address = db.Column(db.JSON, nullable=False)
    customer_name = db.Column(db.String(255), nullable=False)
    customer_email = db.Column(db.String(255), nullable=False)
    customer_phone = db.Column(db.String(32), nullable=True)

    technician_id = db.Column(db.String(64), nullable=True, index=True)
    validated_by = db.Column(db.String(64), nullable=True)
    rejection_reason = db.Column(db.String(1000), nullable=True)
    estimated_completion_at = db.Column(db.DateTime, nullable=True)
    repair_notes = db.Column(db.Text, nullable=True)
    admin_notes = db.Column(db.Text, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<WarrantyClaim {self.claim_number} status={self.status}>"

    @property
    def is_terminal(self) -> bool:
        return self.status in CLAIM_TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "claim_number": self.claim_number,
            "barcode_id": str(self.barcode_id),
            "customer_id": str(self.customer_id),
            "product_id": str(self.product_id),
            "issue_description": self.issue_description,
            "issue_category": self.issue_category,
            "severity": self.severity,
            "priority": self.priority,
            "status": self.status,
            "held_from_status": self.held_from_status,
            "pickup_address": self.pickup_address,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "technician_id": self.technician_id,
            "validated_by": self.validated_by,
            "rejection_reason": self.rejection_reason,
            "estimated_completion_at": to_utc_z(self.estimated_completion_at),
            "repair_notes": self.repair_notes,
            "admin_notes": self.admin_notes,
            "resolved_at": to_utc_z(self.resolved_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }

    def to_customer_dict(self) -> dict:
        """Customer-facing view: staff-only fields removed."""
        data = self.to_dict()
        for key in ("admin_notes", "validated_by", "technician_id", "held_from_status"):
            data.pop(key, None)
        return data


class ClaimTimelineEvent(db.Model):
    """
    Immutable audit record attached to a claim.

    APPEND-ONLY: rows are inserted, never updated or deleted. sequence is
    per claim, strictly increasing, and unique with claim_id.
    """
    __tablename__ = "claim_timeline_events"
    __table_args__ = (
        db.UniqueConstraint("claim_id", "sequence", name="uq_timeline_claim_sequence"),
        db.Index("ix_timeline_claim_created", "claim_id", "created_at"),
    )

    id = db.Column(db.Uuid, primary_key=True, default=uuid.uuid4)
    claim_id = db.Column(db.Uuid, db.ForeignKey("warranty_claims.id"), nullable=False)
    storefront_id = db.Column(db.Uuid, db.ForeignKey("storefronts.id"), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)
    kind = db.Column(db.String(32), nullable=False)
    actor_id = db.Column(db.String(64), nullable=False)
    actor_role = db.Column(db.String(16), nullable=False)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "claim_id": str(self.claim_id),
            "sequence": self.sequence,
            "kind": self.kind,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "payload": self.payload or {},
            "created_at": to_utc_z(self.created_at),
        }

    def to_customer_dict(self) -> dict:
        """Staff identities are not shown to customers."""
        data = self.to_dict()
        del data["actor_id"]
        return data


class ClaimAttachment(db.Model):
    """
    Attachment metadata. File bytes live in the external blob store;
    sanitized_path is the key there.
    """
    __tablename__ = "claim_attachments"
    __table_args__ = (
        db.Index("ix_attachments_claim", "claim_id", "created_at"),
    )

    id = db.Column(db.Uuid, primary_key=True, default=uuid.uuid4)
    claim_id = db.Column(db.Uuid, db.ForeignKey("warranty_claims.id"), nullable=False)
    storefront_id = db.Column(db.Uuid, db.ForeignKey("storefronts.id"), nullable=False, index=True)
    uploaded_by = db.Column(db.String(64), nullable=False)
    original_filename = db.Column(db.String(255), nullable=False)
    sanitized_path = db.Column(db.String(512), nullable=False)
    size_bytes = db.Column(db.BigInteger, nullable=False)
    mime_type = db.Column(db.String(128), nullable=False)
    kind = db.Column(db.String(16), nullable=False)
    description = db.Column(db.String(500), nullable=True)

    scan_status = db.Column(db.String(16), nullable=False, default="pending")
    scanned_at = db.Column(db.DateTime, nullable=True)
    approval = db.Column(db.String(16), nullable=False, default="pending")
    approved_by = db.Column(db.String(64), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "claim_id": str(self.claim_id),
            "uploaded_by": self.uploaded_by,
            "original_filename": self.original_filename,
            "sanitized_path": self.sanitized_path,
            "size_bytes": self.size_bytes,
            "mime_type": self.mime_type,
            "kind": self.kind,
            "description": self.description,
            "scan_status": self.scan_status,
            "scanned_at": to_utc_z(self.scanned_at),
            "approval": self.approval,
            "approved_by": self.approved_by,
            "approved_at": to_utc_z(self.approved_at),
            "created_at": to_utc_z(self.created_at),
        }


class RepairTicket(db.Model):
    """
    Workshop-side sub-process of a claim.

    INVARIANT: at most one non-closed ticket per claim, enforced by the
    partial unique index below (SQLite and PostgreSQL both honour it).
    """
    __tablename__ = "repair_tickets"
    __table_args__ = (
        db.Index(
            "uq_repair_tickets_open_claim",
            "claim_id",
            unique=True,
            sqlite_where=db.text("status != 'closed'"),
            postgresql_where=db.text("status != 'closed'"),
        ),
    )

    id = db.Column(db.Uuid, primary_key=True, default=uuid.uuid4)
    claim_id = db.Column(db.Uuid, db.ForeignKey("warranty_claims.id"), nullable=False, index=True)
    storefront_id = db.Column(db.Uuid, db.ForeignKey("storefronts.id"), nullable=False, index=True)
    technician_id = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(16), nullable=False, default=TICKET_STATUS_OPEN)

    diagnosis = db.Column(db.Text, nullable=True)
    parts_used = db.Column(db.JSON, nullable=True)
    labor_minutes = db.Column(db.Integer, nullable=True)
    cost = db.Column(db.Numeric(12, 2), nullable=True)
    quality_notes = db.Column(db.Text, nullable=True)
    qc_failures = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    closed_at = db.Column(db.DateTime, nullable=True)

    @property
    def has_completion_data(self) -> bool:
        return self.labor_minutes is not None and self.parts_used is not None and self.cost is not None

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "claim_id": str(self.claim_id),
            "technician_id": self.technician_id,
            "status": self.status,
            "diagnosis": self.diagnosis,
            "parts_used": self.parts_used,
            "labor_minutes": self.labor_minutes,
            "cost": str(self.cost) if self.cost is not None else None,
            "quality_notes": self.quality_notes,
            "qc_failures": self.qc_failures,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "closed_at": to_utc_z(self.closed_at),
        }
