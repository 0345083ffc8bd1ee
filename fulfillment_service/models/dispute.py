import uuid
from fulfillment_service.extensions import db
from fulfillment_service.timeutils import isoformat, utcnow


class Dispute(db.Model):
    __tablename__ = "disputes"

    id = db.Column(db.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    reporter_id = db.Column(db.Uuid(as_uuid=True), nullable=False)
    reported_entity_type = db.Column(db.String(40), nullable=False)
    reported_entity_id = db.Column(db.Uuid(as_uuid=True), nullable=False)
    transaction_id = db.Column(db.Uuid(as_uuid=True), db.ForeignKey("transactions.id"), nullable=True)
    dispute_type = db.Column(db.String(40), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default="open")
    evidence_required = db.Column(db.Boolean, nullable=False, default=False)
    resolution_deadline = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": str(self.id),
            "reporter_id": str(self.reporter_id),
            "reported_entity_type": self.reported_entity_type,
            "reported_entity_id": str(self.reported_entity_id),
            "transaction_id": str(self.transaction_id) if self.transaction_id else None,
            "dispute_type": self.dispute_type,
            "status": self.status,
            "resolution_deadline": isoformat(self.resolution_deadline),
        }
