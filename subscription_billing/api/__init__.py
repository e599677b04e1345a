"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    CheckoutRequest,
    CheckoutResponse,
    PartnerDashboardResponse,
    SubscriptionResponse,
    WithdrawalRequest,
    WithdrawalResponse,
)

__all__ = [
    "create_app",
    "CheckoutRequest",
    "CheckoutResponse",
    "PartnerDashboardResponse",
    "SubscriptionResponse",
    "WithdrawalRequest",
    "WithdrawalResponse",
]
