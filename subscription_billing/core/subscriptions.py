"""
Subscription store.

Plain data access over the ``subscriptions`` table. Callers (the reconciliation
engine and the expiry sweeper) own every business rule; this module only reads
and writes rows.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.core.exceptions import NotFoundError
from subscription_billing.database.models import Subscription, utcnow

logger = structlog.get_logger(__name__)

ACTIVE = "active"


@dataclass(frozen=True)
class PendingSubscription:
    """Single queued plan waiting for the current one to end."""

    plan_id: str
    amount: Decimal
    duration_days: int
    scheduled_start: datetime

    @classmethod
    def from_row(cls, row: Subscription) -> Optional["PendingSubscription"]:
        if row.pending_plan_id is None:
            return None
        return cls(
            plan_id=row.pending_plan_id,
            amount=row.pending_amount,
            duration_days=row.pending_duration_days,
            scheduled_start=row.pending_scheduled_start,
        )

    def to_values(self) -> Dict[str, Any]:
        return {
            "pending_plan_id": self.plan_id,
            "pending_amount": self.amount,
            "pending_duration_days": self.duration_days,
            "pending_scheduled_start": self.scheduled_start,
        }


CLEARED_PENDING: Dict[str, Any] = {
    "pending_plan_id": None,
    "pending_amount": None,
    "pending_duration_days": None,
    "pending_scheduled_start": None,
}


class SubscriptionStore:
    """Data access for per-user subscriptions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, user_id: str, for_update: bool = False) -> Optional[Subscription]:
        """
        Load a user's subscription.

        ``for_update`` takes a row lock on databases that support it so the
        reconciliation engine's overlap decision cannot interleave with a sweep.
        """
        query = select(Subscription).where(Subscription.user_id == user_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def upsert_active(
        self,
        user_id: str,
        plan_id: str,
        amount: Decimal,
        start_date: datetime,
        end_date: Optional[datetime],
    ) -> Subscription:
        """Make ``plan_id`` the active plan and clear the queue."""
        row = await self.get(user_id)
        if row is None:
            row = Subscription(user_id=user_id, created_at=utcnow())
            self.session.add(row)

        row.status = ACTIVE
        row.plan_id = plan_id
        row.amount = amount
        row.start_date = start_date
        row.end_date = end_date
        for column, value in CLEARED_PENDING.items():
            setattr(row, column, value)

        await self.session.flush()
        return row

    async def set_pending(
        self, user_id: str, pending: Optional[PendingSubscription]
    ) -> Optional[PendingSubscription]:
        """
        Write (or clear, with ``None``) the queued plan.

        Returns:
            The entry that was replaced, if any.
        """
        row = await self.get(user_id)
        if row is None:
            raise NotFoundError(
                f"No subscription for {user_id}", error_code="subscription_not_found"
            )

        replaced = PendingSubscription.from_row(row)
        values = pending.to_values() if pending is not None else CLEARED_PENDING
        for column, value in values.items():
            setattr(row, column, value)

        await self.session.flush()
        return replaced

    async def transition_if_unchanged(
        self, user_id: str, observed_end_date: datetime, now: datetime, **values: Any
    ) -> bool:
        """
        Conditional write used by the sweeper.

        Succeeds only while the row is still active, still expired at ``now``,
        and still carries the end date the caller observed.
        """
        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == ACTIVE,
                Subscription.end_date.is_not(None),
                Subscription.end_date <= now,
                Subscription.end_date == observed_end_date,
            )
            .values(updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_expired(self, now: datetime, limit: Optional[int] = None) -> List[Subscription]:
        """Active subscriptions whose end date has passed."""
        query = (
            select(Subscription)
            .where(
                Subscription.status == ACTIVE,
                Subscription.end_date.is_not(None),
                Subscription.end_date <= now,
            )
            .order_by(Subscription.end_date.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def expiry_preview(self, now: datetime, within_days: int = 7) -> Dict[str, int]:
        """Counts of subscriptions expiring within ``within_days`` and already expired."""
        horizon = now + timedelta(days=within_days)
        active_with_end = (
            Subscription.status == ACTIVE,
            Subscription.end_date.is_not(None),
        )

        expiring = await self.session.scalar(
            select(func.count())
            .select_from(Subscription)
            .where(*active_with_end, Subscription.end_date > now, Subscription.end_date <= horizon)
        )
        expired = await self.session.scalar(
            select(func.count())
            .select_from(Subscription)
            .where(*active_with_end, Subscription.end_date <= now)
        )
        return {"expiring_soon": expiring or 0, "already_expired": expired or 0}
