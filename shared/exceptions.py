"""
shared/exceptions.py
Domain exceptions raised by the booking core.

Each error carries a stable machine-readable `code` so clients can tell
"you're not allowed" apart from "not possible right now" and "that window
has closed". main.py maps them onto HTTP responses.
"""

from typing import Any, Dict, Optional

from fastapi import status


class DomainException(Exception):
    """Base exception for all booking-core errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code: str = "domain_error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, "details": self.details}


# ── Taxonomy ──────────────────────────────────────────────────

class ValidationError(DomainException):
    """Malformed or missing input. Never retried."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "validation_error"


class MissingField(ValidationError):
    """A field required by the current operation was not supplied."""
    default_code = "missing_field"

    def __init__(self, field: str, message: Optional[str] = None):
        super().__init__(
            message or f"{field} is required for this request",
            details={"field": field},
        )


class NotAuthenticated(DomainException):
    """No usable bearer credential."""
    status_code = status.HTTP_401_UNAUTHORIZED
    default_code = "not_authenticated"


class PermissionDenied(DomainException):
    """Actor or role does not match the resource."""
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "permission_denied"


class NotFound(DomainException):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = "not_found"


class InvalidState(DomainException):
    """The transition is not legal from the current persisted status."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "invalid_state"


class Conflict(DomainException):
    """A uniqueness-style invariant would be violated."""
    status_code = status.HTTP_409_CONFLICT
    default_code = "conflict"


class WindowExpired(DomainException):
    """The action was requested outside its allowed time window."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "window_expired"


class GatewayUnavailable(DomainException):
    """The payment gateway could not be reached or did not answer in time."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = "gateway_unavailable"


class SchemaError(DomainException):
    """The database schema is missing or incomplete."""
    default_code = "schema_error"


# ── Specific errors ───────────────────────────────────────────

class PaymentNotFound(NotFound):
    default_code = "no_payment"

    def __init__(self, message: str = "No payment found for this booking"):
        super().__init__(message)


class PaymentAlreadyCompleted(Conflict):
    default_code = "payment_already_completed"

    def __init__(self, payment_id: Any = None):
        super().__init__(
            "Payment already completed for this booking",
            details={"payment_id": str(payment_id)} if payment_id else None,
        )


class AlreadyRefunded(Conflict):
    default_code = "already_refunded"

    def __init__(self):
        super().__init__("Payment has already been refunded")


class RefundAlreadyRequested(Conflict):
    default_code = "refund_already_requested"

    def __init__(self):
        super().__init__("Refund request already submitted")


class ChangeRequestPending(Conflict):
    default_code = "change_request_pending"

    def __init__(self):
        super().__init__("You already have a pending change request for this booking")
