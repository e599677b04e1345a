"""
Tests for the expiry sweeper.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from subscription_billing.core.exceptions import ConflictError
from subscription_billing.core.subscriptions import PendingSubscription, SubscriptionStore
from subscription_billing.core.sweeper import ExpirySweeper
from subscription_billing.database import Subscription

from tests.helpers import NOW


class BusyLock:
    async def __aenter__(self) -> "BusyLock":
        raise ConflictError("Expiry sweep already running", error_code="sweep_in_progress")

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None


@pytest.fixture
def sweeper(database) -> ExpirySweeper:
    return ExpirySweeper(database.session_factory)


class TestExpirySweeper:
    """Test suite for promotion and reversion of expired subscriptions."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expired_with_pending_is_promoted(self, sweeper, seed) -> None:
        ended = NOW - timedelta(hours=1)
        await seed.subscription(
            "user-1",
            "weekly",
            Decimal("19.89"),
            start_date=ended - timedelta(days=7),
            end_date=ended,
            pending=PendingSubscription(
                plan_id="monthly",
                amount=Decimal("49.89"),
                duration_days=30,
                scheduled_start=ended,
            ),
        )

        report = await sweeper.run(now=NOW)

        assert report.promoted == 1
        assert report.reverted == 0
        subscription = await seed.fetch(Subscription, "user-1")
        assert subscription.plan_id == "monthly"
        assert subscription.amount == Decimal("49.89")
        assert subscription.start_date == NOW
        assert subscription.end_date == NOW + timedelta(days=30)
        assert subscription.pending_plan_id is None
        assert subscription.pending_scheduled_start is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expired_without_pending_reverts_to_free(self, sweeper, seed) -> None:
        await seed.subscription(
            "user-1",
            "monthly",
            Decimal("49.89"),
            start_date=NOW - timedelta(days=31),
            end_date=NOW - timedelta(days=1),
        )

        report = await sweeper.run(now=NOW)

        assert report.reverted == 1
        subscription = await seed.fetch(Subscription, "user-1")
        assert subscription.plan_id == "free"
        assert subscription.status == "active"
        assert subscription.amount == Decimal("0.00")
        assert subscription.end_date is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_running_and_free_subscriptions_untouched(self, sweeper, seed) -> None:
        await seed.subscription(
            "user-running",
            "monthly",
            Decimal("49.89"),
            start_date=NOW - timedelta(days=1),
            end_date=NOW + timedelta(days=29),
        )
        await seed.subscription(
            "user-free", "free", Decimal("0.00"), start_date=NOW - timedelta(days=60), end_date=None
        )

        report = await sweeper.run(now=NOW)

        assert report.examined == 0
        running = await seed.fetch(Subscription, "user-running")
        assert running.plan_id == "monthly"
        assert running.end_date == NOW + timedelta(days=29)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_second_sweep_is_a_no_op(self, sweeper, seed) -> None:
        await seed.subscription(
            "user-1",
            "weekly",
            Decimal("19.89"),
            start_date=NOW - timedelta(days=8),
            end_date=NOW - timedelta(days=1),
        )

        first = await sweeper.run(now=NOW)
        second = await sweeper.run(now=NOW)

        assert first.reverted == 1
        assert second.examined == 0
        assert second.to_dict()["reverted"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stale_observation_is_skipped(self, sweeper, seed) -> None:
        await seed.subscription(
            "user-1",
            "weekly",
            Decimal("19.89"),
            start_date=NOW - timedelta(days=8),
            end_date=NOW - timedelta(days=1),
        )

        # A reconciliation moved the end date after the sweep read the row
        outcome = await sweeper.sweep_user("user-1", NOW - timedelta(days=2), NOW)

        assert outcome is None
        subscription = await seed.fetch(Subscription, "user-1")
        assert subscription.plan_id == "weekly"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_busy_lock_stops_the_sweep(self, database) -> None:
        sweeper = ExpirySweeper(database.session_factory, lock=BusyLock())

        with pytest.raises(ConflictError) as exc_info:
            await sweeper.run(now=NOW)

        assert exc_info.value.error_code == "sweep_in_progress"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expiry_preview_counts(self, database, seed) -> None:
        await seed.subscription(
            "user-soon", "weekly", Decimal("19.89"), start_date=NOW, end_date=NOW + timedelta(days=3)
        )
        await seed.subscription(
            "user-later", "monthly", Decimal("49.89"), start_date=NOW, end_date=NOW + timedelta(days=20)
        )
        await seed.subscription(
            "user-expired",
            "weekly",
            Decimal("19.89"),
            start_date=NOW - timedelta(days=10),
            end_date=NOW - timedelta(days=3),
        )

        async with database.session_factory() as session:
            counts = await SubscriptionStore(session).expiry_preview(NOW, within_days=7)

        assert counts == {"expiring_soon": 1, "already_expired": 1}
