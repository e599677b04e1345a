"""
Commission aggregator.

Commission is a projection recomputed on every read: each referred user's
current subscription amount times the partner's current revenue share. Nothing
is persisted, so a rate change re-prices every past referral.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.config import FREE_PLAN_ID
from subscription_billing.core.exceptions import NotFoundError
from subscription_billing.database.models import ReferralProfile, Subscription, User

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ReferralCommission:
    user_id: str
    email: str
    plan_id: Optional[str]
    subscription_amount: Decimal
    is_paid: bool
    commission_generated: Decimal
    start_date: Optional[date] = None


@dataclass
class CommissionReport:
    partner_id: str
    referral_code: str
    revenue_share: Decimal
    referrals: List[ReferralCommission] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return quantize(sum((r.commission_generated for r in self.referrals), ZERO))

    @property
    def total_referrals(self) -> int:
        return len(self.referrals)

    @property
    def paid_referrals(self) -> int:
        return sum(1 for r in self.referrals if r.is_paid)

    @property
    def conversion_rate(self) -> float:
        """Percentage of referrals that pay, one decimal place."""
        if not self.referrals:
            return 0.0
        return round(self.paid_referrals / self.total_referrals * 100, 1)

    @property
    def revenue_by_day(self) -> List[Dict[str, object]]:
        """Commission grouped by subscription start date, oldest first."""
        buckets: Dict[date, Decimal] = defaultdict(lambda: ZERO)
        for referral in self.referrals:
            if referral.is_paid and referral.start_date is not None:
                buckets[referral.start_date] += referral.commission_generated
        return [
            {"date": day, "commission": quantize(amount)}
            for day, amount in sorted(buckets.items())
        ]


class CommissionAggregator:
    """Read-only commission projection for a partner."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def compute(self, partner_id: str) -> CommissionReport:
        """
        Compute a partner's commission from their referred users.

        Raises:
            NotFoundError: If the user has no referral profile
        """
        profile = await self.session.get(ReferralProfile, partner_id)
        if profile is None:
            raise NotFoundError(
                f"No referral profile for {partner_id}", error_code="partner_not_found"
            )

        rows = await self.session.execute(
            select(User, Subscription)
            .outerjoin(Subscription, Subscription.user_id == User.id)
            .where(User.referred_by_code == profile.referral_code)
            .order_by(User.created_at.asc())
        )

        report = CommissionReport(
            partner_id=partner_id,
            referral_code=profile.referral_code,
            revenue_share=profile.revenue_share,
        )
        for user, subscription in rows.all():
            amount = self._paying_amount(subscription)
            report.referrals.append(
                ReferralCommission(
                    user_id=user.id,
                    email=user.email,
                    plan_id=subscription.plan_id if subscription else None,
                    subscription_amount=amount,
                    is_paid=amount > 0,
                    commission_generated=quantize(amount * profile.revenue_share),
                    start_date=subscription.start_date.date() if subscription else None,
                )
            )

        logger.info(
            "commission_computed",
            partner_id=partner_id,
            referrals=report.total_referrals,
            total=str(report.total),
        )
        return report

    @staticmethod
    def _paying_amount(subscription: Optional[Subscription]) -> Decimal:
        if (
            subscription is None
            or subscription.status != "active"
            or subscription.plan_id == FREE_PLAN_ID
        ):
            return ZERO
        return quantize(subscription.amount)
