"""
Notification Model
Priority: high | normal | low
"""

import uuid
from fulfillment_service.extensions import db
from fulfillment_service.timeutils import isoformat, utcnow

NOTIFICATION_TYPES = (
    "invite",
    "message",
    "purchase",
    "purchase_completed",
    "purchase_failed",
    "purchase_update",
    "purchase_refunded",
    "dispute",
    "dispute_filed",
    "dispute_created",
    "payment",
    "access",
    "sale_completed",
)

PRIORITIES = ("high", "normal", "low")


class Notification(db.Model):
    __tablename__ = "notifications"
    __table_args__ = (
        db.Index(
            "ix_notifications_dedup",
            "user_id", "type", "related_entity_type", "related_entity_id", "created_at"
        ),
    )

    id = db.Column(db.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = db.Column(db.Uuid(as_uuid=True), nullable=False, index=True)
    type = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text, nullable=False)
    related_entity_type = db.Column(db.String(40), nullable=True)
    related_entity_id = db.Column(db.Uuid(as_uuid=True), nullable=True)
    priority = db.Column(
        db.Enum(*PRIORITIES, name="notification_priority"),
        nullable=False,
        default="normal"
    )
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "type": self.type,
            "title": self.title,
            "content": self.content,
            "related_entity_type": self.related_entity_type,
            "related_entity_id": str(self.related_entity_id) if self.related_entity_id else None,
            "priority": self.priority,
            "is_read": self.is_read,
            "created_at": isoformat(self.created_at),
        }
