"""
Intent ledger.

A payment intent leaves ``pending`` exactly once. Every terminal transition is a
single ``UPDATE ... WHERE status = 'pending'``; whoever sees ``rowcount == 1``
owns the downstream effects, everyone else gets DuplicateDeliveryError.
"""
import uuid
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.config import Plan
from subscription_billing.core.exceptions import DuplicateDeliveryError, NotFoundError
from subscription_billing.database.models import PaymentIntent, utcnow

logger = structlog.get_logger(__name__)

PENDING = "pending"
COMPLETED = "completed"
DECLINED = "declined"


class IntentLedger:
    """Durable store of payment intents bound to the caller's session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        user_id: str,
        plan: Plan,
        provider: str,
        reference: Optional[str] = None,
    ) -> PaymentIntent:
        """Record a new pending intent at the plan's current price."""
        intent = PaymentIntent(
            reference=reference or str(uuid.uuid4()),
            user_id=user_id,
            plan_id=plan.id,
            provider=provider,
            amount=plan.price,
            currency=plan.currency,
            status=PENDING,
            created_at=utcnow(),
        )
        self.session.add(intent)
        await self.session.flush()

        logger.info(
            "payment_intent_created",
            reference=intent.reference,
            user_id=user_id,
            plan_id=plan.id,
            provider=provider,
            amount=str(intent.amount),
        )
        return intent

    async def get(self, reference: str) -> PaymentIntent:
        intent = await self.session.get(PaymentIntent, reference, populate_existing=True)
        if intent is None:
            raise NotFoundError(
                f"Payment intent {reference} not found",
                error_code="intent_not_found",
                reference=reference,
            )
        return intent

    async def complete(
        self,
        reference: str,
        provider_txn_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PaymentIntent:
        """
        CAS ``pending -> completed``.

        Raises:
            NotFoundError: If no intent has this reference
            DuplicateDeliveryError: If the intent was already resolved
        """
        return await self._transition(reference, COMPLETED, provider_txn_id, now)

    async def decline(
        self,
        reference: str,
        provider_txn_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PaymentIntent:
        """CAS ``pending -> declined``."""
        return await self._transition(reference, DECLINED, provider_txn_id, now)

    async def _transition(
        self,
        reference: str,
        target: str,
        provider_txn_id: Optional[str],
        now: Optional[datetime],
    ) -> PaymentIntent:
        values = {"status": target, "processed_at": now or utcnow()}
        if provider_txn_id:
            values["provider_txn_id"] = provider_txn_id

        result = await self.session.execute(
            update(PaymentIntent)
            .where(PaymentIntent.reference == reference, PaymentIntent.status == PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            current = await self.get(reference)
            if target == COMPLETED and current.status == DECLINED:
                # Money may have moved after a decline; needs operator review
                logger.warning(
                    "confirmation_after_decline",
                    reference=reference,
                    provider_txn_id=provider_txn_id,
                )
            raise DuplicateDeliveryError(reference, current.status)

        intent = await self.get(reference)
        logger.info("payment_intent_resolved", reference=reference, status=target)
        return intent

    async def list_pending(
        self,
        older_than: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[PaymentIntent]:
        """Pending intents, oldest first, for operator review."""
        query = select(PaymentIntent).where(PaymentIntent.status == PENDING)
        if older_than is not None:
            query = query.where(PaymentIntent.created_at <= older_than)
        query = query.order_by(PaymentIntent.created_at.asc()).limit(limit).offset(offset)
        result = await self.session.execute(query)
        return list(result.scalars().all())

