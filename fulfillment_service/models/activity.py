import uuid
from fulfillment_service.extensions import db
from fulfillment_service.timeutils import utcnow


class PaymentActivity(db.Model):
    """Audit trail of payment and access operations."""

    __tablename__ = "payment_activity_logs"

    id = db.Column(db.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = db.Column(db.Uuid(as_uuid=True), nullable=True)
    action_type = db.Column(db.String(50), nullable=False)
    resource_type = db.Column(db.String(40), nullable=False, default="purchase_record")
    resource_id = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="success")
    details = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
