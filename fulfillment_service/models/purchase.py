"""
Purchase Model: one buyer's claim on one slot, plus its payment transaction.
Status: pending_payment | payment_processing | completed | failed | refunded
"""

import uuid
from fulfillment_service.extensions import db
from fulfillment_service.timeutils import isoformat, utcnow


class PurchaseRecord(db.Model):
    __tablename__ = "purchase_records"

    id = db.Column(db.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = db.Column(db.Uuid(as_uuid=True), nullable=False, index=True)
    offer_id = db.Column(db.Uuid(as_uuid=True), db.ForeignKey("group_subs.id"), nullable=False)
    status = db.Column(
        db.Enum(
            "pending_payment", "payment_processing", "completed", "failed", "refunded",
            name="purchase_status"
        ),
        nullable=False,
        default="pending_payment"
    )
    access_provided = db.Column(db.Boolean, nullable=False, default=False)
    access_provided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    access_confirmed = db.Column(db.Boolean, nullable=False, default=False)
    access_confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    slots_decremented = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    offer = db.relationship("Offer")

    def to_dict(self):
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "offer_id": str(self.offer_id),
            "status": self.status,
            "access_provided": self.access_provided,
            "access_provided_at": isoformat(self.access_provided_at),
            "access_confirmed": self.access_confirmed,
            "access_confirmed_at": isoformat(self.access_confirmed_at),
            "slots_decremented": self.slots_decremented,
            "created_at": isoformat(self.created_at),
        }


class PurchaseStep(db.Model):
    """One row per completed fulfillment step of a purchase."""

    __tablename__ = "purchase_saga_steps"
    __table_args__ = (db.UniqueConstraint("purchase_id", "step", name="uq_purchase_step"),)

    id = db.Column(db.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    purchase_id = db.Column(
        db.Uuid(as_uuid=True), db.ForeignKey("purchase_records.id"), nullable=False, index=True
    )
    step = db.Column(db.String(40), nullable=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class Transaction(db.Model):
    __tablename__ = "transactions"

    id = db.Column(db.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    buyer_id = db.Column(db.Uuid(as_uuid=True), nullable=False)
    seller_id = db.Column(db.Uuid(as_uuid=True), nullable=False)
    offer_id = db.Column(db.Uuid(as_uuid=True), db.ForeignKey("group_subs.id"), nullable=False)
    purchase_id = db.Column(
        db.Uuid(as_uuid=True), db.ForeignKey("purchase_records.id"), nullable=False, index=True
    )
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    platform_fee = db.Column(db.Numeric(10, 2), nullable=False)
    seller_amount = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="PLN")
    payment_method = db.Column(db.String(50))
    payment_provider = db.Column(db.String(50))
    payment_id = db.Column(db.String(100))
    status = db.Column(
        db.Enum("pending", "completed", "failed", name="transaction_status"),
        nullable=False,
        default="pending"
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    purchase = db.relationship("PurchaseRecord")
    offer = db.relationship("Offer")

    def to_dict(self):
        return {
            "id": str(self.id),
            "buyer_id": str(self.buyer_id),
            "seller_id": str(self.seller_id),
            "offer_id": str(self.offer_id),
            "purchase_id": str(self.purchase_id),
            "amount": float(self.amount),
            "platform_fee": float(self.platform_fee),
            "seller_amount": float(self.seller_amount),
            "currency": self.currency,
            "payment_id": self.payment_id,
            "status": self.status,
            "completed_at": isoformat(self.completed_at),
        }
