# Overview: Service-layer operations for claim timeline and attachment metadata.

"""
Timeline & Attachment Service

TIMELINE: append-only. Events are written by claim transitions (see
claim_state_machine) and by attachment uploads; nothing here updates or
deletes an event.

ATTACHMENTS: metadata only, the bytes live in the blob store.
- Inserted with scan_status=pending and approval=pending
- Scan status is set by the external scanner: pending -> clean | infected | failed.
  Repeating the same value is a no-op; changing a decided value is a conflict.
- Approval is advanced by admins: pending -> approved | rejected.
  Rejected attachments stay visible to staff and are hidden from customers.
"""

from __future__ import annotations

import posixpath
from typing import Any

from sqlalchemy import update

from ..config import WarrantySettings
from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import ClaimAttachment, WarrantyClaim
from ..models.claims import APPROVAL_STATUSES, ATTACHMENT_KINDS, SCAN_STATUSES
from ..permissions import Actor, Role
from ..time_utils import utcnow
from . import claim_repository, outbox_service
from .tenant_service import BoundTenant, get_owned


IMAGE_TYPES = {"image/jpeg", "image/png", "image/webp", "image/heic"}
DOCUMENT_TYPES = {"application/pdf", "text/plain"}
VIDEO_TYPES = {"video/mp4", "video/quicktime", "video/webm"}

ALLOWED_MIME_TYPES = {
    "photo": IMAGE_TYPES,
    "invoice": {"application/pdf", "image/jpeg", "image/png"},
    "video": VIDEO_TYPES,
    "other": IMAGE_TYPES | DOCUMENT_TYPES,
}

EXTENSIONS_BY_MIME = {
    "image/jpeg": {".jpg", ".jpeg"},
    "image/png": {".png"},
    "image/webp": {".webp"},
    "image/heic": {".heic"},
    "application/pdf": {".pdf"},
    "text/plain": {".txt"},
    "video/mp4": {".mp4"},
    "video/quicktime": {".mov"},
    "video/webm": {".webm"},
}

SCAN_PENDING = "pending"
APPROVAL_PENDING = "pending"


def max_bytes_for(mime_type: str, settings: WarrantySettings) -> int:
    if mime_type in VIDEO_TYPES:
        return settings.max_video_bytes
    if mime_type in IMAGE_TYPES:
        return settings.max_image_bytes
    return settings.max_document_bytes


def validate_attachment_meta(meta: dict[str, Any], settings: WarrantySettings) -> dict[str, Any]:
    """Check kind, MIME type, extension, size and storage path. Returns the cleaned dict."""
    kind = (meta.get("kind") or "").strip().lower()
    if kind not in ATTACHMENT_KINDS:
        raise ValidationError(f"kind must be one of: {', '.join(ATTACHMENT_KINDS)}", details={"field": "kind"})

    mime_type = (meta.get("mime_type") or "").strip().lower()
    if mime_type not in ALLOWED_MIME_TYPES[kind]:
        raise ValidationError(
            f"mime_type {mime_type or '(empty)'} is not allowed for {kind}",
            details={"field": "mime_type", "allowed": sorted(ALLOWED_MIME_TYPES[kind])},
        )

    filename = (meta.get("original_filename") or "").strip()
    if not filename or len(filename) > 255:
        raise ValidationError("original_filename is required (max 255 chars)", details={"field": "original_filename"})
    extension = posixpath.splitext(filename.lower())[1]
    if extension not in EXTENSIONS_BY_MIME[mime_type]:
        raise ValidationError(
            f"File extension {extension or '(none)'} does not match {mime_type}",
            details={"field": "original_filename"},
        )

    size = meta.get("size_bytes")
    if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
        raise ValidationError("size_bytes must be a positive integer", details={"field": "size_bytes"})
    limit = max_bytes_for(mime_type, settings)
    if size > limit:
        raise ValidationError(
            f"File exceeds the {limit} byte limit for {mime_type}",
            details={"field": "size_bytes", "max_bytes": limit},
        )

    path = (meta.get("sanitized_path") or "").strip()
    # SECURITY: the path is a blob-store key; never absolute, never escaping.
    if not path or path.startswith("/") or "\\" in path or ".." in path.split("/"):
        raise ValidationError("sanitized_path must be a relative path without '..'", details={"field": "sanitized_path"})

    description = meta.get("description")
    if description is not None:
        description = str(description).strip()[:500] or None

    return {
        "kind": kind,
        "mime_type": mime_type,
        "original_filename": filename,
        "size_bytes": size,
        "sanitized_path": path,
        "description": description,
    }


def upload(
    tenant: BoundTenant,
    claim_id,
    actor: Actor,
    meta: dict[str, Any],
    *,
    settings: WarrantySettings,
) -> ClaimAttachment:
    """
    Record attachment metadata and append an attachment_uploaded event.
    Caller owns the transaction.
    """
    claim = claim_repository.get_by_id(tenant, claim_id)
    if actor.role == Role.CUSTOMER and str(claim.customer_id) != actor.actor_id:
        raise NotFoundError("Claim not found")
    if claim.is_terminal:
        raise ConflictError(f"Claim is {claim.status}; attachments can no longer be added")

    cleaned = validate_attachment_meta(meta, settings)
    cleaned["uploaded_by"] = actor.actor_id
    attachment = claim_repository.add_attachment(tenant, claim, cleaned)
    claim_repository.append_timeline(
        tenant,
        claim,
        kind="attachment_uploaded",
        actor=actor,
        payload={
            "attachment_id": str(attachment.id),
            "kind": attachment.kind,
            "original_filename": attachment.original_filename,
        },
    )
    outbox_service.enqueue(
        tenant,
        topic="claim.attachment_uploaded",
        aggregate_type="claim",
        aggregate_id=claim.id,
        payload={"attachment_id": str(attachment.id), "sanitized_path": attachment.sanitized_path},
    )
    return attachment


def get_attachment(tenant: BoundTenant, attachment_id) -> ClaimAttachment:
    return get_owned(ClaimAttachment, tenant, attachment_id, label="Attachment")


def set_scan_status(tenant: BoundTenant, attachment_id, scan_status: str) -> ClaimAttachment:
    """Idempotent by attachment id: the scanner may deliver its verdict more than once."""
    if scan_status not in SCAN_STATUSES or scan_status == SCAN_PENDING:
        raise ValidationError(
            "scan_status must be one of: clean, infected, failed", details={"field": "scan_status"}
        )
    attachment = get_attachment(tenant, attachment_id)
    if attachment.scan_status == scan_status:
        return attachment
    if attachment.scan_status != SCAN_PENDING:
        raise ConflictError(
            f"Scan status already {attachment.scan_status}",
            details={"scan_status": attachment.scan_status},
        )
    result = db.session.execute(
        update(ClaimAttachment)
        .where(
            ClaimAttachment.id == attachment.id,
            ClaimAttachment.storefront_id == tenant.storefront_id,
            ClaimAttachment.scan_status == SCAN_PENDING,
        )
        .values(scan_status=scan_status, scanned_at=utcnow())
    )
    if result.rowcount != 1:
        raise ConflictError("Scan status changed concurrently")
    return get_attachment(tenant, attachment.id)


def set_approval(tenant: BoundTenant, attachment_id, approval: str, actor: Actor) -> ClaimAttachment:
    if approval not in APPROVAL_STATUSES or approval == APPROVAL_PENDING:
        raise ValidationError("approval must be approved or rejected", details={"field": "approval"})
    attachment = get_attachment(tenant, attachment_id)
    if attachment.approval != APPROVAL_PENDING:
        raise ConflictError(
            f"Attachment already {attachment.approval}", details={"approval": attachment.approval}
        )
    result = db.session.execute(
        update(ClaimAttachment)
        .where(
            ClaimAttachment.id == attachment.id,
            ClaimAttachment.storefront_id == tenant.storefront_id,
            ClaimAttachment.approval == APPROVAL_PENDING,
        )
        .values(approval=approval, approved_by=actor.actor_id, approved_at=utcnow())
    )
    if result.rowcount != 1:
        raise ConflictError("Attachment approval changed concurrently")
    return get_attachment(tenant, attachment.id)


def list_for_actor(tenant: BoundTenant, claim_id, actor: Actor) -> list[ClaimAttachment]:
    """Staff see everything; a customer sees non-rejected attachments of their own claim."""
    if actor.role != Role.CUSTOMER:
        return claim_repository.list_attachments(tenant, claim_id)
    claim = get_owned(WarrantyClaim, tenant, claim_id, label="Claim")
    if str(claim.customer_id) != actor.actor_id:
        raise NotFoundError("Claim not found")
    return claim_repository.list_attachments(tenant, claim.id, include_rejected=False)
