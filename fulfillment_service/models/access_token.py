import uuid
from fulfillment_service.extensions import db
from fulfillment_service.timeutils import utcnow


class AccessToken(db.Model):
    """Hashed, single-use access credential. The raw token is never stored."""

    __tablename__ = "access_tokens"

    id = db.Column(db.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    purchase_id = db.Column(
        db.Uuid(as_uuid=True), db.ForeignKey("purchase_records.id"), nullable=False, index=True
    )
    token_hash = db.Column(db.String(64), nullable=False, unique=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    used = db.Column(db.Boolean, nullable=False, default=False)
    used_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by = db.Column(db.Uuid(as_uuid=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
