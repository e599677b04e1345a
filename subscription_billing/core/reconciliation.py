"""
Reconciliation engine.

Turns a verified notification into subscription state:

1. CAS the intent out of ``pending``. A miss is a duplicate delivery and a
   no-op; an unknown reference is a NotFoundError for operator review.
2. Resolve the plan duration.
3. If the user's subscription is active and ends in the future, queue the new
   plan in the single pending slot, scheduled to start when the current one ends.
4. Otherwise activate immediately for ``duration_days`` from now.

Declined/cancelled outcomes only move the intent to ``declined``.

All of this runs in one database transaction, so a failure after the CAS
(e.g. an unknown plan, or an intent created for a different provider) rolls
the intent back to ``pending``.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_billing.config import PlanCatalog
from subscription_billing.core.exceptions import DuplicateDeliveryError, ValidationError
from subscription_billing.core.intents import IntentLedger
from subscription_billing.core.notifications import CanonicalNotification, Outcome
from subscription_billing.core.subscriptions import ACTIVE, PendingSubscription, SubscriptionStore
from subscription_billing.database.models import PaymentIntent, Subscription, utcnow
from subscription_billing.monitoring.metrics import MetricsCollector, metrics as default_metrics

logger = structlog.get_logger(__name__)

MANUAL_PROVIDER = "manual"


class ReconciliationStatus(str, Enum):
    ACTIVATED = "activated"
    QUEUED = "queued"
    DECLINED = "declined"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ReconciliationResult:
    status: ReconciliationStatus
    reference: Optional[str] = None
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    end_date: Optional[datetime] = None
    scheduled_start: Optional[datetime] = None
    replaced_plan_id: Optional[str] = None

    @property
    def changed_state(self) -> bool:
        return self.status not in (ReconciliationStatus.DUPLICATE, ReconciliationStatus.IGNORED)


class ReconciliationEngine:
    """
    Applies canonical notifications to the intent ledger and subscription store.

    Safe under duplicate and concurrent delivery: only the caller whose CAS
    succeeds touches the subscription.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        plans: PlanCatalog,
        metrics: MetricsCollector = default_metrics,
    ):
        self.session_factory = session_factory
        self.plans = plans
        self.metrics = metrics

    async def process(
        self, notification: CanonicalNotification, now: Optional[datetime] = None
    ) -> ReconciliationResult:
        """
        Reconcile one notification.

        Returns:
            ReconciliationResult describing what changed

        Raises:
            NotFoundError: If the reference matches no intent
            ValidationError: If the intent names an unknown plan or another provider
        """
        log = logger.bind(
            provider=notification.provider,
            event=notification.event,
            reference=notification.reference,
        )

        if not notification.is_terminal:
            log.info("notification_ignored", reason="no_terminal_outcome")
            return ReconciliationResult(
                status=ReconciliationStatus.IGNORED, reference=notification.reference
            )

        now = now or utcnow()
        start_time = time.time()

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    if notification.outcome is Outcome.CONFIRMED:
                        result = await self._confirm(session, notification, now)
                    else:
                        result = await self._decline(session, notification, now)
        except DuplicateDeliveryError as e:
            log.info("duplicate_delivery", current_status=e.current_status)
            return ReconciliationResult(
                status=ReconciliationStatus.DUPLICATE, reference=notification.reference
            )

        if result.status in (ReconciliationStatus.ACTIVATED, ReconciliationStatus.QUEUED):
            self.metrics.record_subscription_transition(result.status.value)

        log.info(
            "notification_reconciled",
            status=result.status.value,
            user_id=result.user_id,
            plan_id=result.plan_id,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return result

    async def _confirm(
        self, session: AsyncSession, notification: CanonicalNotification, now: datetime
    ) -> ReconciliationResult:
        ledger = IntentLedger(session)
        store = SubscriptionStore(session)

        intent = await ledger.complete(
            notification.reference, notification.provider_txn_id, now=now
        )
        self._check_provider(intent, notification)
        plan = self.plans.purchasable(intent.plan_id)
        current = await store.get(intent.user_id, for_update=True)

        if self._is_running(current, now):
            return await self._queue(store, intent, plan.duration_days, current)

        subscription = await store.upsert_active(
            intent.user_id,
            plan_id=intent.plan_id,
            amount=intent.amount,
            start_date=now,
            end_date=now + timedelta(days=plan.duration_days),
        )
        return ReconciliationResult(
            status=ReconciliationStatus.ACTIVATED,
            reference=intent.reference,
            user_id=intent.user_id,
            plan_id=intent.plan_id,
            end_date=subscription.end_date,
        )

    async def _queue(
        self,
        store: SubscriptionStore,
        intent: PaymentIntent,
        duration_days: int,
        current: Subscription,
    ) -> ReconciliationResult:
        pending = PendingSubscription(
            plan_id=intent.plan_id,
            amount=intent.amount,
            duration_days=duration_days,
            scheduled_start=current.end_date,
        )
        replaced = await store.set_pending(intent.user_id, pending)
        if replaced is not None:
            # Last write wins
            logger.warning(
                "pending_subscription_replaced",
                user_id=intent.user_id,
                reference=intent.reference,
                replaced_plan_id=replaced.plan_id,
                replaced_amount=str(replaced.amount),
                new_plan_id=intent.plan_id,
            )

        return ReconciliationResult(
            status=ReconciliationStatus.QUEUED,
            reference=intent.reference,
            user_id=intent.user_id,
            plan_id=intent.plan_id,
            end_date=current.end_date,
            scheduled_start=current.end_date,
            replaced_plan_id=replaced.plan_id if replaced else None,
        )

    async def _decline(
        self, session: AsyncSession, notification: CanonicalNotification, now: datetime
    ) -> ReconciliationResult:
        intent = await IntentLedger(session).decline(
            notification.reference, notification.provider_txn_id, now=now
        )
        self._check_provider(intent, notification)
        return ReconciliationResult(
            status=ReconciliationStatus.DECLINED,
            reference=intent.reference,
            user_id=intent.user_id,
            plan_id=intent.plan_id,
        )

    @staticmethod
    def _check_provider(intent: PaymentIntent, notification: CanonicalNotification) -> None:
        """Only the provider an intent was created for, or an operator, may resolve it."""
        if notification.provider in (intent.provider, MANUAL_PROVIDER):
            return
        raise ValidationError(
            f"Payment intent {intent.reference} belongs to {intent.provider}, "
            f"not {notification.provider}",
            error_code="provider_mismatch",
            reference=intent.reference,
            intent_provider=intent.provider,
        )

    @staticmethod
    def _is_running(subscription: Optional[Subscription], now: datetime) -> bool:
        return (
            subscription is not None
            and subscription.status == ACTIVE
            and subscription.end_date is not None
            and subscription.end_date > now
        )
