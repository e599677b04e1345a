"""
Pydantic schemas for API request/response models.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CheckoutRequest(BaseModel):
    """Request schema for starting a checkout."""

    plan_id: str = Field(..., description="Plan to purchase (weekly, monthly, 3months)")
    provider: str = Field(..., description="Payment provider (stripe, binance, paystack, pesapal, whop)")

    @field_validator("plan_id", "provider")
    @classmethod
    def normalize(cls, v: str) -> str:
        return v.strip().lower()

    model_config = {
        "json_schema_extra": {"examples": [{"plan_id": "monthly", "provider": "stripe"}]}
    }


class CheckoutResponse(BaseModel):
    """Response schema for checkout creation."""

    reference: str = Field(..., description="Payment intent reference")
    checkout_url: str = Field(..., description="Provider checkout URL")
    provider: str
    plan_id: str
    amount: Decimal
    currency: str

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "reference": "7d1f1b7e-8a53-4d5e-9f0e-4d1c5c2a9b11",
                    "checkout_url": "https://checkout.stripe.com/c/pay/cs_test_123",
                    "provider": "stripe",
                    "plan_id": "monthly",
                    "amount": "49.89",
                    "currency": "USD",
                }
            ]
        }
    }


class PendingSubscriptionSchema(BaseModel):
    plan_id: str
    amount: Decimal
    duration_days: int
    scheduled_start: datetime


class SubscriptionResponse(BaseModel):
    """Subscription status as seen by UI collaborators."""

    user_id: str
    plan_id: str = Field(..., description="Current plan")
    status: str = Field(..., description="active or inactive")
    amount: Decimal
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = Field(default=None, description="Null for the free tier")
    pending_subscription: Optional[PendingSubscriptionSchema] = None


class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    referred_by_code: Optional[str] = Field(default=None, description="Partner referral code")


class ReferralProfileSchema(BaseModel):
    referral_code: str
    revenue_share: Decimal
    is_approved: bool
    applied_at: datetime
    approved_at: Optional[datetime] = None


class AccountResponse(BaseModel):
    user_id: str
    email: str
    role: Literal["regular", "affiliate", "partner", "admin"]
    referred_by_code: Optional[str] = None
    created_at: datetime
    profile: Optional[ReferralProfileSchema] = None


class ApprovePartnerRequest(BaseModel):
    revenue_share: Optional[Decimal] = Field(
        default=None, ge=0, le=1, description="Fraction of referred revenue; defaults to policy"
    )


class ReferralSchema(BaseModel):
    user_id: str
    email: str
    plan_id: Optional[str] = None
    subscription_amount: Decimal
    is_paid: bool
    commission_generated: Decimal


class RevenuePoint(BaseModel):
    date: date
    commission: Decimal


class PartnerDashboardResponse(BaseModel):
    """Commission projection for the calling partner."""

    partner_id: str
    referral_code: str
    revenue_share: Decimal
    total: Decimal = Field(..., description="Total commission generated")
    available_balance: Decimal = Field(..., description="Commission not yet paid out")
    total_referrals: int
    paid_referrals: int
    conversion_rate: float = Field(..., description="Paying referrals, percent")
    referrals: List[ReferralSchema]
    revenue_by_day: List[RevenuePoint]


class WithdrawalRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, description="Gross amount requested")

    model_config = {"json_schema_extra": {"examples": [{"amount": "100.00"}]}}


class WithdrawalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    partner_id: str
    amount: Decimal
    fee: Decimal
    net_amount: Decimal
    status: str
    created_at: datetime
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None


class PaymentIntentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    reference: str
    user_id: str
    plan_id: str
    provider: str
    amount: Decimal
    currency: str
    status: str
    provider_txn_id: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


class ResolveIntentRequest(BaseModel):
    action: Literal["approve", "reject"]


class ResolveIntentResponse(BaseModel):
    reference: str
    status: str = Field(..., description="activated, queued or declined")
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    end_date: Optional[datetime] = None
    scheduled_start: Optional[datetime] = None


class WebhookAttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    provider: str
    event: str
    reference: Optional[str] = None
    processed: bool
    ignored: bool
    note: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
    payload: Optional[Dict[str, Any]] = None


class WebhookAttemptPage(BaseModel):
    items: List[WebhookAttemptResponse]
    total: int
    page: int
    limit: int


class SweepResponse(BaseModel):
    started_at: datetime
    examined: int
    promoted: int
    reverted: int
    skipped: int
    failed: List[str]


class ExpiryPreviewResponse(BaseModel):
    expiring_soon: int
    already_expired: int
    within_days: int


class HealthCheckResponse(BaseModel):
    status: str = Field(..., description="Overall health status")
    checks: Dict[str, Any] = Field(..., description="Individual service checks")
