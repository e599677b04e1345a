"""
Payout workflow.

Withdrawal state machine: ``pending -> approved | denied``, terminal once
transitioned. Decisions are compare-and-swap updates on ``status = 'pending'``
so two admins racing on the same request cannot both win.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.core.commission import ZERO, CommissionAggregator, quantize
from subscription_billing.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
)
from subscription_billing.database.models import ReferralProfile, Withdrawal, utcnow
from subscription_billing.monitoring.metrics import MetricsCollector, metrics as default_metrics

logger = structlog.get_logger(__name__)

PENDING = "pending"
APPROVED = "approved"
DENIED = "denied"


@dataclass(frozen=True)
class PayoutPolicy:
    minimum: Decimal = Decimal("50.00")
    fee_rate: Decimal = Decimal("0.06")
    enforce_balance: bool = True

    def fee_for(self, amount: Decimal) -> Decimal:
        return quantize(amount * self.fee_rate)


class PayoutWorkflow:
    """Partner withdrawal requests and admin decisions, bound to the caller's session."""

    def __init__(
        self,
        session: AsyncSession,
        policy: PayoutPolicy = PayoutPolicy(),
        metrics: MetricsCollector = default_metrics,
    ):
        self.session = session
        self.policy = policy
        self.metrics = metrics

    async def request(self, partner_id: str, amount: Decimal) -> Withdrawal:
        """
        Create a pending withdrawal.

        Raises:
            AuthorizationError: If the caller is not an approved partner
            ValidationError: If the amount is below the minimum or above the balance
            ConflictError: If a pending withdrawal already exists
        """
        amount = quantize(Decimal(amount))
        if amount < self.policy.minimum:
            raise ValidationError(
                f"Minimum withdrawal is {self.policy.minimum}",
                error_code="below_minimum",
                amount=str(amount),
            )

        profile = await self.session.get(ReferralProfile, partner_id)
        if profile is None or not profile.is_approved:
            raise AuthorizationError(
                f"User {partner_id} is not an approved partner", error_code="not_a_partner"
            )

        if await self._pending_for(partner_id) is not None:
            raise ConflictError(
                "A withdrawal request is already pending", error_code="withdrawal_pending"
            )

        if self.policy.enforce_balance:
            available = await self.available_balance(partner_id)
            if amount > available:
                raise ValidationError(
                    f"Requested {amount} exceeds available balance {available}",
                    error_code="insufficient_balance",
                    amount=str(amount),
                    available=str(available),
                )

        fee = self.policy.fee_for(amount)
        withdrawal = Withdrawal(
            id=uuid.uuid4(),
            partner_id=partner_id,
            amount=amount,
            fee=fee,
            net_amount=amount - fee,
            status=PENDING,
            created_at=utcnow(),
        )
        self.session.add(withdrawal)
        try:
            await self.session.flush()
        except IntegrityError as e:
            # Partial unique index caught a concurrent request
            raise ConflictError(
                "A withdrawal request is already pending", error_code="withdrawal_pending"
            ) from e

        self.metrics.record_withdrawal("requested")
        logger.info(
            "withdrawal_requested",
            withdrawal_id=str(withdrawal.id),
            partner_id=partner_id,
            amount=str(amount),
            fee=str(fee),
        )
        return withdrawal

    async def approve(
        self, withdrawal_id: uuid.UUID, admin_id: str, now: Optional[datetime] = None
    ) -> Withdrawal:
        return await self._decide(withdrawal_id, APPROVED, admin_id, now)

    async def deny(
        self, withdrawal_id: uuid.UUID, admin_id: str, now: Optional[datetime] = None
    ) -> Withdrawal:
        return await self._decide(withdrawal_id, DENIED, admin_id, now)

    async def _decide(
        self,
        withdrawal_id: uuid.UUID,
        target: str,
        admin_id: str,
        now: Optional[datetime],
    ) -> Withdrawal:
        result = await self.session.execute(
            update(Withdrawal)
            .where(Withdrawal.id == withdrawal_id, Withdrawal.status == PENDING)
            .values(status=target, processed_at=now or utcnow(), processed_by=admin_id)
            .execution_options(synchronize_session=False)
        )

        withdrawal = await self.session.get(Withdrawal, withdrawal_id, populate_existing=True)
        if withdrawal is None:
            raise NotFoundError(
                f"Withdrawal {withdrawal_id} not found", error_code="withdrawal_not_found"
            )
        if result.rowcount == 0:
            raise StateError(
                f"Withdrawal {withdrawal_id} already {withdrawal.status}",
                current_status=withdrawal.status,
            )

        self.metrics.record_withdrawal(target)
        logger.info(
            "withdrawal_decided",
            withdrawal_id=str(withdrawal_id),
            status=target,
            admin_id=admin_id,
        )
        return withdrawal

    async def available_balance(self, partner_id: str) -> Decimal:
        """Commission earned minus everything already approved for payout."""
        report = await CommissionAggregator(self.session).compute(partner_id)
        paid_out = await self.session.scalar(
            select(func.coalesce(func.sum(Withdrawal.amount), 0)).where(
                Withdrawal.partner_id == partner_id, Withdrawal.status == APPROVED
            )
        )
        return max(quantize(report.total - Decimal(str(paid_out or 0))), ZERO)

    async def list_withdrawals(
        self,
        partner_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Withdrawal]:
        """Withdrawals, newest first."""
        query = select(Withdrawal)
        if partner_id is not None:
            query = query.where(Withdrawal.partner_id == partner_id)
        if status is not None:
            query = query.where(Withdrawal.status == status)
        query = query.order_by(Withdrawal.created_at.desc()).limit(limit).offset(offset)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def _pending_for(self, partner_id: str) -> Optional[Withdrawal]:
        return await self.session.scalar(
            select(Withdrawal).where(
                Withdrawal.partner_id == partner_id, Withdrawal.status == PENDING
            )
        )
