import uuid
from fulfillment_service.extensions import db
from fulfillment_service.timeutils import isoformat, utcnow


class UserProfile(db.Model):
    __tablename__ = "user_profiles"

    id = db.Column(db.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    display_name = db.Column(db.String(120))
    email = db.Column(db.String(255), unique=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "id": str(self.id),
            "display_name": self.display_name,
            "email": self.email,
            "created_at": isoformat(self.created_at),
        }
