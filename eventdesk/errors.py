class EventDeskError(Exception):
    """Base for errors rendered as ``{"status": "error", "message": ...}``."""

    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message=None, *, cause=None):
        self.message = message or self.default_message
        self.cause = cause
        super().__init__(self.message)


class ValidationError(EventDeskError):
    status_code = 400
    default_message = "Invalid input"


class NotFoundError(EventDeskError):
    status_code = 404
    default_message = "Resource not found"


class AuthorizationError(EventDeskError):
    status_code = 403
    default_message = "Not authorized to access this resource"


class InvalidSignature(EventDeskError):
    status_code = 400
    default_message = "Invalid payment signature"


class InvalidWebhookSignature(EventDeskError):
    status_code = 401
    default_message = "Invalid webhook signature"


class InvalidToken(EventDeskError):
    status_code = 400
    default_message = "Invalid QR code"


class ExpiredToken(EventDeskError):
    status_code = 400
    default_message = "QR code has expired"


class InvalidState(EventDeskError):
    status_code = 400
    default_message = "Operation not allowed in the current state"


class GatewayError(EventDeskError):
    """A payment gateway call failed.

    ``inconclusive`` is set when the gateway could not be reached or timed out,
    so the real outcome on the gateway side is unknown.
    """

    status_code = 502
    default_message = "Payment gateway request failed"

    def __init__(self, message=None, *, cause=None, inconclusive=False):
        super().__init__(message, cause=cause)
        self.inconclusive = inconclusive


class PersistenceError(EventDeskError):
    status_code = 500
    default_message = "Failed to persist changes"
