"""SQLAlchemy database models for subscription billing."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")
Money = Numeric(12, 2)
REFERENCE_LENGTH = 64
EVENT_LENGTH = 100
PROVIDER_TXN_ID_LENGTH = 255


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class User(Base):
    """
    Users known to the billing engine.

    Identity is issued by the external auth service; the row carries only what
    reconciliation and commission need. ``referred_by_code`` is written once at
    registration.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="regular")
    referred_by_code: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "role IN ('regular', 'affiliate', 'partner', 'admin')",
            name="valid_role",
        ),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, role={self.role})>"


class ReferralProfile(Base):
    """Partner/affiliate profile: referral code and revenue share."""

    __tablename__ = "referral_profiles"

    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    referral_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    revenue_share: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False, default=0)
    is_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "revenue_share >= 0 AND revenue_share <= 1", name="valid_revenue_share"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<ReferralProfile(user_id={self.user_id}, code={self.referral_code}, "
            f"approved={self.is_approved})>"
        )


class PaymentIntent(Base):
    """
    Checkout attempts awaiting a provider's terminal outcome.

    ``status`` leaves ``pending`` exactly once, through a conditional update.
    Rows are never deleted.
    """

    __tablename__ = "payment_intents"

    reference: Mapped[str] = mapped_column(String(REFERENCE_LENGTH), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    plan_id: Mapped[str] = mapped_column(String(32), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    provider_txn_id: Mapped[str | None] = mapped_column(
        String(PROVIDER_TXN_ID_LENGTH), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="non_negative_amount"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'declined')",
            name="valid_intent_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_payment_intents_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentIntent(reference={self.reference}, user_id={self.user_id}, "
            f"plan={self.plan_id}, status={self.status})>"
        )


class Subscription(Base):
    """
    One subscription per user, with a single-slot queue for the next plan.

    ``end_date`` is null only for the permanent free tier.
    """

    __tablename__ = "subscriptions"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    plan_id: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=0)
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    pending_plan_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    pending_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    pending_duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pending_scheduled_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("status IN ('active', 'inactive')", name="valid_subscription_status"),
        CheckConstraint(
            "(pending_plan_id IS NULL) = (pending_duration_days IS NULL)",
            name="pending_slot_complete",
        ),
        Index("idx_subscriptions_status_end", "status", "end_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(user_id={self.user_id}, plan={self.plan_id}, "
            f"status={self.status}, end={self.end_date})>"
        )


class Withdrawal(Base):
    """
    Partner payout requests.

    At most one ``pending`` row per partner, enforced by a partial unique index.
    Immutable once approved or denied.
    """

    __tablename__ = "withdrawals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    partner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    processed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_withdrawal"),
        CheckConstraint(
            "status IN ('pending', 'approved', 'denied')",
            name="valid_withdrawal_status",
        ),
        Index(
            "uq_withdrawals_one_pending",
            "partner_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Withdrawal(id={self.id}, partner_id={self.partner_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class WebhookAttempt(Base):
    """
    Append-only audit trail of inbound notifications.

    A row is written when the notification arrives and finalized once with its
    outcome (``processed_at`` set); it is never touched again.
    """

    __tablename__ = "webhook_audit_log"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    event: Mapped[str] = mapped_column(String(EVENT_LENGTH), nullable=False)
    reference: Mapped[str | None] = mapped_column(
        String(REFERENCE_LENGTH), nullable=True, index=True
    )
    payload: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ignored: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    note: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<WebhookAttempt(id={self.id}, provider={self.provider}, "
            f"event={self.event}, processed={self.processed})>"
        )
