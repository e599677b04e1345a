"""Core reconciliation, subscription and partner payout logic."""
from .exceptions import (
    AuthenticationError,
    AuthorizationError,
    BillingError,
    ConflictError,
    DuplicateDeliveryError,
    NotFoundError,
    StateError,
    UpstreamError,
    ValidationError,
)

__all__ = [
    "AuthenticationError",
    "AuthorizationError",
    "BillingError",
    "ConflictError",
    "DuplicateDeliveryError",
    "NotFoundError",
    "StateError",
    "UpstreamError",
    "ValidationError",
]
