"""
Exception taxonomy for the billing engine.

Every error carries a machine-readable code and the HTTP status the API
boundary should answer with. Webhook callers only ever see 2xx for benign
duplicates: DuplicateDeliveryError is raised by the intent ledger and always
absorbed by the reconciliation engine.
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base exception for all billing errors."""

    http_status = 500
    default_code = "billing_error"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        http_status: Optional[int] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        if http_status is not None:
            self.http_status = http_status
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
            }
        }


class ValidationError(BillingError):
    """Malformed payload, unknown plan, amount below minimum."""

    http_status = 400
    default_code = "validation_error"


class AuthenticationError(BillingError):
    """Provider signature verification failed or caller identity is missing."""

    http_status = 401
    default_code = "authentication_failed"


class AuthorizationError(BillingError):
    """Caller is authenticated but lacks the required role."""

    http_status = 403
    default_code = "forbidden"


class NotFoundError(BillingError):
    """Reference, user, or withdrawal is unknown."""

    http_status = 404
    default_code = "not_found"


class ConflictError(BillingError):
    """Operation collides with existing state (e.g. a pending withdrawal)."""

    http_status = 409
    default_code = "conflict"


class DuplicateDeliveryError(ConflictError):
    """A compare-and-swap on a payment intent matched nothing: already resolved."""

    default_code = "duplicate_delivery"

    def __init__(self, reference: str, current_status: str):
        super().__init__(
            f"Intent {reference} already {current_status}",
            reference=reference,
            current_status=current_status,
        )
        self.reference = reference
        self.current_status = current_status


class StateError(BillingError):
    """Transition attempted from a terminal state."""

    http_status = 409
    default_code = "invalid_state"


class UpstreamError(BillingError):
    """A provider API call failed; the caller may retry later."""

    http_status = 502
    default_code = "upstream_error"
