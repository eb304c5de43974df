"""Error taxonomy shared by the order and payment flow."""
from typing import Optional


class StorefrontError(Exception):
    """Base exception for order/payment processing errors."""

    status_code = 500
    kind = "internal_error"


class ValidationError(StorefrontError):
    """Bad input the caller can fix."""

    status_code = 400
    kind = "validation_error"


class MalformedCallbackError(ValidationError):
    """Gateway callback could not be parsed; the gateway should retry."""

    kind = "malformed_callback"


class NotFoundError(StorefrontError):
    """Raised when an order or payment does not exist (or is not visible)."""

    status_code = 404
    kind = "not_found"


class ConflictError(StorefrontError):
    """Raised when an order already has an active payment attempt."""

    status_code = 409
    kind = "conflict"


class InvalidTransitionError(StorefrontError):
    """Raised when a status change is not reachable from the current status."""

    status_code = 409
    kind = "invalid_transition"

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot transition from '{current}' to '{target}'")
        self.current = current
        self.target = target


class SignatureError(StorefrontError):
    """Callback signature did not verify. Never mutates state."""

    status_code = 401
    kind = "invalid_signature"


class GatewayError(StorefrontError):
    """Gateway rejected the request or could not be reached."""

    status_code = 502
    kind = "gateway_error"


class UpstreamTimeoutError(StorefrontError):
    """Gateway did not answer in time; the payment stays pending."""

    status_code = 504
    kind = "upstream_timeout"

    def __init__(self, message: str, payment_id: Optional[str] = None):
        super().__init__(message)
        self.payment_id = payment_id


class AttemptsBlockedError(StorefrontError):
    """Raised when a guarded key has too many recent failures."""

    status_code = 429
    kind = "too_many_attempts"

    def __init__(self, message: str, retry_after_seconds: int):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds
