"""Configuration package for subscription billing."""
from .plans import FREE_PLAN_ID, Plan, PlanCatalog
from .settings import Settings, get_settings

__all__ = ["FREE_PLAN_ID", "Plan", "PlanCatalog", "Settings", "get_settings"]
