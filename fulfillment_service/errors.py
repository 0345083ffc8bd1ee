"""
Fulfillment errors
Raised by the services, rendered as JSON by the handlers registered in create_app.
"""


class FulfillmentError(Exception):
    status_code = 500
    error_code = "FULFILLMENT_ERROR"

    def __init__(self, message, error_code=None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code

    def to_dict(self):
        return {
            "success": False,
            "error_code": self.error_code,
            "message": self.message,
        }


class ValidationError(FulfillmentError):
    status_code = 400
    error_code = "VALIDATION_ERROR"


class PermissionDeniedError(FulfillmentError):
    status_code = 403
    error_code = "PERMISSION_DENIED"


class NotFoundError(FulfillmentError):
    status_code = 404
    error_code = "NOT_FOUND"


class InvalidStateError(FulfillmentError):
    status_code = 409
    error_code = "INVALID_STATE"


class PaymentProcessingError(FulfillmentError):
    """The purchase failed before payment completed and was marked failed."""

    status_code = 502
    error_code = "PAYMENT_FAILED"


class AccessTokenError(FulfillmentError):
    error_code = "ACCESS_TOKEN_ERROR"


class TokenNotFound(AccessTokenError):
    status_code = 404
    error_code = "TOKEN_NOT_FOUND"


class TokenAlreadyUsed(AccessTokenError):
    status_code = 409
    error_code = "TOKEN_ALREADY_USED"


class TokenExpired(AccessTokenError):
    status_code = 410
    error_code = "TOKEN_EXPIRED"
