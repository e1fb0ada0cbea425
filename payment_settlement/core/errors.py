"""
Error taxonomy for the settlement core.

Every error carries an HTTP status, a stable machine code, a public message
that is deliberately less specific than the internal class, and flags for
retryability and whether the condition is a fraud signal.
"""
from datetime import datetime
from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base class for settlement errors."""

    code = "PAYMENT_ERROR"
    status_code = 500
    public_message = "Payment processing failed"
    retryable = False
    fraud_signal = False

    def __init__(self, message: Optional[str] = None, **context: Any) -> None:
        """
        Initialize error.

        Args:
            message: Internal message for logs (never sent to clients)
            **context: Structured fields for logging and auditing
        """
        self.message = message or self.public_message
        self.context = context
        super().__init__(self.message)

    def to_response(self) -> Dict[str, Any]:
        """Client-facing error body."""
        return {
            "success": False,
            "error": self.public_message,
            "code": self.code,
            "retryable": self.retryable,
        }


class Unauthorized(PaymentError):
    code = "UNAUTHORIZED"
    status_code = 401
    public_message = "Authentication required"


class NotFound(PaymentError):
    code = "NOT_FOUND"
    status_code = 404
    public_message = "Order not found or unauthorized"

    def __init__(
        self,
        message: Optional[str] = None,
        public_message: Optional[str] = None,
        **context: Any,
    ) -> None:
        if public_message:
            self.public_message = public_message
        super().__init__(message, **context)


class AmountMismatch(PaymentError):
    code = "AMOUNT_MISMATCH"
    status_code = 400
    public_message = "Payment amount mismatch"
    fraud_signal = True


class AlreadyPaid(PaymentError):
    code = "ALREADY_PAID"
    status_code = 409
    public_message = "Order has already been paid"


class MalformedRequest(PaymentError):
    code = "MALFORMED_REQUEST"
    status_code = 400
    public_message = "Invalid payment request"


class VerificationExpired(PaymentError):
    code = "VERIFICATION_EXPIRED"
    status_code = 400
    public_message = "Payment verification window expired. Please try again."


class SignatureInvalid(PaymentError):
    code = "SIGNATURE_INVALID"
    status_code = 400
    public_message = "Payment verification failed"
    fraud_signal = True


class TransactionFailed(PaymentError):
    code = "TRANSACTION_FAILED"
    status_code = 409
    public_message = "Payment was already marked as failed. Please start a new payment."


class GatewayError(PaymentError):
    code = "GATEWAY_ERROR"
    status_code = 502
    public_message = "Failed to create payment order. Please retry."
    retryable = True

    def __init__(
        self,
        message: Optional[str] = None,
        retryable: bool = True,
        upstream_status: Optional[int] = None,
        **context: Any,
    ) -> None:
        """
        Initialize gateway error.

        Args:
            message: Internal message
            retryable: Whether the caller may retry with the same idempotency key
            upstream_status: HTTP status returned by the gateway, if any
        """
        self.retryable = retryable
        self.upstream_status = upstream_status
        super().__init__(message, upstream_status=upstream_status, **context)


class GatewayTimeout(GatewayError):
    code = "GATEWAY_TIMEOUT"
    status_code = 504
    public_message = "Payment gateway timed out. Please retry."

    def __init__(self, message: Optional[str] = None, **context: Any) -> None:
        super().__init__(message, retryable=True, **context)


class StoreConflict(PaymentError):
    """Uniqueness violation on insert; resolved internally by fetching the existing row."""

    code = "STORE_CONFLICT"
    status_code = 409
    public_message = "Conflicting payment request"
    retryable = True


class RateLimited(PaymentError):
    code = "RATE_LIMITED"
    status_code = 429
    public_message = "Too many attempts. Please try again later."

    def __init__(
        self,
        message: Optional[str] = None,
        blocked_until: Optional[datetime] = None,
        **context: Any,
    ) -> None:
        self.blocked_until = blocked_until
        super().__init__(message, **context)

    def to_response(self) -> Dict[str, Any]:
        body = super().to_response()
        if self.blocked_until is not None:
            body["blocked_until"] = self.blocked_until.isoformat()
        return body


class ConfigurationError(PaymentError):
    code = "CONFIGURATION_ERROR"
    status_code = 500
    public_message = "Payment service configuration error"


class TrackingError(PaymentError):
    code = "TRACKING_ERROR"
    status_code = 500
    public_message = "Failed to track payment. Please retry."
    retryable = True
