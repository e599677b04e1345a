"""
Checkout creation.

The pending intent is committed before the provider is called, so a provider
failure leaves an intent that simply never completes.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Dict

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_billing.config import PlanCatalog
from subscription_billing.core.accounts import AccountService
from subscription_billing.core.exceptions import ValidationError
from subscription_billing.core.intents import IntentLedger
from subscription_billing.monitoring.metrics import MetricsCollector, metrics as default_metrics

if TYPE_CHECKING:
    from subscription_billing.integrations.providers import ProviderVerifier

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    reference: str
    checkout_url: str
    provider: str
    plan_id: str
    amount: Decimal
    currency: str


class CheckoutService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        plans: PlanCatalog,
        providers: Dict[str, "ProviderVerifier"],
        metrics: MetricsCollector = default_metrics,
    ):
        self.session_factory = session_factory
        self.plans = plans
        self.providers = providers
        self.metrics = metrics

    async def create_checkout(
        self, user_id: str, email: str, plan_id: str, provider: str
    ) -> CheckoutResult:
        """
        Create a pending intent and the provider checkout that pays it.

        Raises:
            ValidationError: If the plan or provider is unknown, or the plan is free
            NotFoundError: If the user is not registered
            UpstreamError: If the provider rejected the checkout
        """
        adapter = self.providers.get(provider)
        if adapter is None:
            raise ValidationError(f"Unknown provider: {provider}", error_code="unknown_provider")
        plan = self.plans.purchasable(plan_id)

        async with self.session_factory() as session:
            async with session.begin():
                await AccountService(session).get(user_id)
                intent = await IntentLedger(session).create(user_id, plan, provider)

        log = logger.bind(reference=intent.reference, provider=provider, user_id=user_id)
        try:
            url = await adapter.create_checkout(intent, plan, email)
        except Exception:
            log.error("checkout_provider_failed", exc_info=True)
            raise

        self.metrics.record_checkout(provider, plan.id)
        log.info("checkout_created", plan_id=plan.id)
        return CheckoutResult(
            reference=intent.reference,
            checkout_url=url,
            provider=provider,
            plan_id=plan.id,
            amount=intent.amount,
            currency=intent.currency,
        )
