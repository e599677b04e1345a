"""Database models and connection management."""
from .connection import Database, get_db
from .models import (
    Base,
    PaymentIntent,
    ReferralProfile,
    Subscription,
    User,
    WebhookAttempt,
    Withdrawal,
    utcnow,
)

__all__ = [
    "Base",
    "Database",
    "PaymentIntent",
    "ReferralProfile",
    "Subscription",
    "User",
    "WebhookAttempt",
    "Withdrawal",
    "get_db",
    "utcnow",
]
