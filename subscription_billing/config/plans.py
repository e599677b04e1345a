"""
Plan catalog: the single source of truth for subscription prices and durations.

Amounts are decimal currency units. The free tier has no duration: it never
expires through the sweeper.
"""
from decimal import Decimal
from typing import Dict, Iterable, Optional

from pydantic import BaseModel, ConfigDict

from subscription_billing.core.exceptions import ValidationError

FREE_PLAN_ID = "free"


class Plan(BaseModel):
    """A purchasable (or free) subscription plan."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    price: Decimal
    currency: str = "USD"
    duration_days: Optional[int] = None

    @property
    def is_free(self) -> bool:
        return self.id == FREE_PLAN_ID


DEFAULT_PLANS = (
    Plan(id=FREE_PLAN_ID, name="Free", price=Decimal("0.00")),
    Plan(id="weekly", name="Weekly", price=Decimal("19.89"), duration_days=7),
    Plan(id="monthly", name="Monthly", price=Decimal("49.89"), duration_days=30),
    Plan(id="3months", name="3 Months", price=Decimal("129.89"), duration_days=90),
)


class PlanCatalog:
    """Lookup of plans by id."""

    def __init__(self, plans: Iterable[Plan] = DEFAULT_PLANS):
        self._plans: Dict[str, Plan] = {plan.id: plan for plan in plans}

    def get(self, plan_id: str) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise ValidationError(f"Unknown plan: {plan_id}", error_code="unknown_plan")
        return plan

    def purchasable(self, plan_id: str) -> Plan:
        """Resolve a plan that can be bought (has a price and a duration)."""
        plan = self.get(plan_id)
        if plan.is_free or plan.duration_days is None:
            raise ValidationError(
                f"Plan {plan_id} cannot be purchased", error_code="plan_not_purchasable"
            )
        return plan

    def duration_days(self, plan_id: str) -> int:
        return self.purchasable(plan_id).duration_days

    def __iter__(self):
        return iter(self._plans.values())
