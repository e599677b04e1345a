"""
Tests for commission aggregation.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from subscription_billing.core.commission import CommissionAggregator, quantize
from subscription_billing.core.exceptions import NotFoundError

from tests.helpers import NOW


class TestCommissionAggregator:
    """Test suite for the partner commission projection."""

    @pytest.mark.unit
    def test_quantize_rounds_half_up(self) -> None:
        assert quantize(Decimal("2.345")) == Decimal("2.35")
        assert quantize(Decimal("9.978")) == Decimal("9.98")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_commission_from_active_referral(self, database, seed) -> None:
        await seed.partner("partner-abc123", referral_code="rp-abc123", revenue_share=Decimal("0.20"))
        await seed.user("referred-paying", referred_by_code="rp-abc123")
        await seed.user("referred-free", referred_by_code="rp-abc123")
        await seed.subscription(
            "referred-paying",
            "monthly",
            Decimal("50.00"),
            start_date=NOW,
            end_date=NOW + timedelta(days=30),
        )
        await seed.subscription(
            "referred-free", "free", Decimal("0.00"), start_date=NOW, end_date=None
        )

        async with database.session_factory() as session:
            report = await CommissionAggregator(session).compute("partner-abc123")

        assert report.total == Decimal("10.00")
        assert report.total_referrals == 2
        assert report.paid_referrals == 1
        assert report.conversion_rate == 50.0
        assert report.revenue_by_day == [{"date": NOW.date(), "commission": Decimal("10.00")}]

        paying = next(r for r in report.referrals if r.user_id == "referred-paying")
        assert paying.is_paid
        assert paying.commission_generated == Decimal("10.00")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_inactive_and_unsubscribed_referrals_earn_nothing(self, database, seed) -> None:
        await seed.partner("partner-abc123", referral_code="rp-abc123")
        await seed.user("referred-inactive", referred_by_code="rp-abc123")
        await seed.user("referred-new", referred_by_code="rp-abc123")
        await seed.subscription(
            "referred-inactive",
            "monthly",
            Decimal("49.89"),
            start_date=NOW - timedelta(days=40),
            end_date=NOW - timedelta(days=10),
            status="inactive",
        )

        async with database.session_factory() as session:
            report = await CommissionAggregator(session).compute("partner-abc123")

        assert report.total == Decimal("0.00")
        assert report.paid_referrals == 0
        assert report.conversion_rate == 0.0
        assert report.revenue_by_day == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rate_change_reprices_past_referrals(self, database, seed) -> None:
        profile = await seed.partner("partner-abc123", referral_code="rp-abc123")
        await seed.user("referred-1", referred_by_code="rp-abc123")
        await seed.subscription(
            "referred-1", "monthly", Decimal("49.89"), start_date=NOW, end_date=NOW + timedelta(days=30)
        )

        async with database.session_factory() as session:
            async with session.begin():
                row = await session.get(type(profile), "partner-abc123")
                row.revenue_share = Decimal("0.30")

        async with database.session_factory() as session:
            report = await CommissionAggregator(session).compute("partner-abc123")

        assert report.total == Decimal("14.97")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_partner(self, database, seed) -> None:
        await seed.user("plain-user")

        async with database.session_factory() as session:
            with pytest.raises(NotFoundError) as exc_info:
                await CommissionAggregator(session).compute("plain-user")

        assert exc_info.value.error_code == "partner_not_found"
