"""
Offer Model: one shared subscription with a finite number of slots.
Status: active | inactive | paused
"""

import uuid
from fulfillment_service.extensions import db
from fulfillment_service.timeutils import isoformat, utcnow


class Group(db.Model):
    __tablename__ = "groups"

    id = db.Column(db.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = db.Column(db.String(255), nullable=False)
    owner_id = db.Column(db.Uuid(as_uuid=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class GroupMember(db.Model):
    __tablename__ = "group_members"
    __table_args__ = (db.UniqueConstraint("group_id", "user_id", name="uq_group_member"),)

    id = db.Column(db.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    group_id = db.Column(db.Uuid(as_uuid=True), db.ForeignKey("groups.id"), nullable=False)
    user_id = db.Column(db.Uuid(as_uuid=True), nullable=False)
    role = db.Column(db.String(20), nullable=False, default="member")
    status = db.Column(db.String(20), nullable=False, default="active")
    joined_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Offer(db.Model):
    __tablename__ = "group_subs"
    __table_args__ = (
        db.CheckConstraint("slots_available >= 0", name="check_slots_available_non_negative"),
        db.CheckConstraint("slots_available <= slots_total", name="check_slots_available_within_total"),
    )

    id = db.Column(db.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    group_id = db.Column(db.Uuid(as_uuid=True), db.ForeignKey("groups.id"), nullable=True)
    owner_id = db.Column(db.Uuid(as_uuid=True), nullable=False)
    platform_name = db.Column(db.String(100), nullable=False)
    slots_total = db.Column(db.Integer, nullable=False)
    # Only written by services.slot_allocator
    slots_available = db.Column(db.Integer, nullable=True)
    status = db.Column(
        db.Enum("active", "inactive", "paused", name="offer_status"),
        nullable=False,
        default="active"
    )
    price_per_slot = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="PLN")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    group = db.relationship("Group", backref=db.backref("offers", lazy=True))

    def to_dict(self):
        return {
            "id": str(self.id),
            "group_id": str(self.group_id) if self.group_id else None,
            "owner_id": str(self.owner_id),
            "platform_name": self.platform_name,
            "slots_total": self.slots_total,
            "slots_available": self.slots_available,
            "status": self.status,
            "price_per_slot": float(self.price_per_slot),
            "currency": self.currency,
            "updated_at": isoformat(self.updated_at),
        }
