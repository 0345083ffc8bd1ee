import uuid
from flask_jwt_extended import get_jwt_identity
from fulfillment_service.errors import ValidationError


def parse_uuid(value, field="id"):
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}: {value!r}") from None


def current_user_id():
    return parse_uuid(get_jwt_identity(), "user identity")
