# Overview: Service-layer operations for the transactional outbox.

from __future__ import annotations

import uuid

from ..extensions import db
from ..models import OutboxEvent
from .tenant_service import BoundTenant, require_tenant


def enqueue(
    tenant: BoundTenant,
    *,
    topic: str,
    aggregate_type: str,
    aggregate_id: uuid.UUID,
    payload: dict,
) -> OutboxEvent:
    """
    Stage a notification in the caller's transaction.

    WHY: The row commits or rolls back together with the business change,
    so a relay never announces something that did not happen.
    """
    require_tenant(tenant)
    event = OutboxEvent(
        storefront_id=tenant.storefront_id,
        topic=topic,
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        payload=payload,
    )
    db.session.add(event)
    return event


def pending(limit: int = 100) -> list[OutboxEvent]:
    """Undispatched rows across storefronts, oldest first (relay side)."""
    return (
        db.session.query(OutboxEvent)
        .filter(OutboxEvent.dispatched_at.is_(None))
        .order_by(OutboxEvent.created_at, OutboxEvent.id)
        .limit(limit)
        .all()
    )
