import json


class PaymentError(Exception):
    """Base class for errors the API turns into a JSON response."""

    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class ConfigurationError(PaymentError):
    status_code = 500
    public_message = "Payment service configuration error"


class CourseNotFound(PaymentError):
    status_code = 404
    public_message = "Course not found"


class TransactionNotFound(PaymentError):
    status_code = 404
    public_message = "Transaction not found"


class AlreadyEnrolled(PaymentError):
    status_code = 409
    public_message = "You are already enrolled in this course"


class InvalidAmount(PaymentError):
    status_code = 400
    public_message = "Invalid course price"


class FreeCourseRequired(PaymentError):
    status_code = 400
    public_message = "Free courses should use the free enrollment endpoint"


class PaidCourseRequired(PaymentError):
    status_code = 400
    public_message = "Course not found or is not free"


class UnsupportedMethod(PaymentError):
    status_code = 400
    public_message = "Unsupported payment method"


class InvalidStateTransition(PaymentError):
    status_code = 409
    public_message = "Transaction cannot change to the requested status"


class NotDeletable(PaymentError):
    status_code = 403
    public_message = "Only cancelled transactions can be deleted"


class PaymentGatewayUnavailable(PaymentError):
    status_code = 502
    public_message = "Payment service error. Please try again later."


class GatewayError(Exception):
    """An outbound gateway call failed.

    ``payload`` holds the provider's error body. It is logged and kept in
    transaction notes, never returned to API callers.
    """

    def __init__(self, message: str, status_code: int | None = None, payload=None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class TransientGatewayError(GatewayError):
    """Timeouts, connection failures, rate limiting and 5xx responses."""


class GatewayRejectedError(GatewayError):
    """A 4xx response other than rate limiting. Never retried."""


def failure_notes(exc: Exception) -> str:
    """Error text for transaction notes, with the provider payload when there is one."""
    if isinstance(exc, GatewayError) and exc.payload is not None:
        payload = exc.payload if isinstance(exc.payload, str) else json.dumps(exc.payload, default=str)
        return f"{exc}: {payload}"[:2000]
    return str(exc)
