from __future__ import annotations

import uuid

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class OutboxEvent(db.Model):
    """
    Transactional outbox row.

    WHY: Notifications (e-mail, webhooks) must not fire from business logic.
    The row is written in the same transaction as the change it describes;
    a separate relay reads undispatched rows and marks them dispatched.
    """
    __tablename__ = "outbox_events"
    __table_args__ = (
        db.Index("ix_outbox_undispatched", "dispatched_at", "created_at"),
    )

    id = db.Column(db.Uuid, primary_key=True, default=uuid.uuid4)
    storefront_id = db.Column(db.Uuid, db.ForeignKey("storefronts.id"), nullable=False, index=True)
    topic = db.Column(db.String(64), nullable=False)
    aggregate_type = db.Column(db.String(32), nullable=False)
    aggregate_id = db.Column(db.Uuid, nullable=False)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    dispatched_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "topic": self.topic,
            "aggregate_type": self.aggregate_type,
            "aggregate_id": str(self.aggregate_id),
            "payload": self.payload or {},
            "created_at": to_utc_z(self.created_at),
            "dispatched_at": to_utc_z(self.dispatched_at),
        }
