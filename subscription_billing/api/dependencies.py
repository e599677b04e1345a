"""
Service wiring and FastAPI dependencies.

Caller identity comes from the upstream auth gateway as ``X-User-Id`` /
``X-User-Email`` headers; roles are checked against the database.
"""
import hmac
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.config import PlanCatalog, Settings
from subscription_billing.core.accounts import Account, AccountService
from subscription_billing.core.audit import AuditLog
from subscription_billing.core.checkout import CheckoutService
from subscription_billing.core.exceptions import AuthenticationError
from subscription_billing.core.payouts import PayoutPolicy, PayoutWorkflow
from subscription_billing.core.reconciliation import ReconciliationEngine
from subscription_billing.core.sweeper import ExpirySweeper, RedisSweepLock
from subscription_billing.core.webhooks import WebhookService
from subscription_billing.database import Database, get_db
from subscription_billing.integrations.providers import ProviderVerifier
from subscription_billing.monitoring.health import HealthCheck


@dataclass
class BillingServices:
    """Everything the routes need, built once per application."""

    settings: Settings
    database: Database
    plans: PlanCatalog
    providers: Dict[str, ProviderVerifier]
    engine: ReconciliationEngine
    audit: AuditLog
    webhooks: WebhookService
    checkout: CheckoutService
    sweeper: ExpirySweeper
    health: HealthCheck
    payout_policy: PayoutPolicy


def build_services(
    settings: Settings,
    database: Database,
    providers: Dict[str, ProviderVerifier],
    plans: Optional[PlanCatalog] = None,
) -> BillingServices:
    plans = plans or PlanCatalog()
    session_factory = database.session_factory

    engine = ReconciliationEngine(session_factory, plans)
    audit = AuditLog(session_factory)
    lock = (
        RedisSweepLock(settings.redis_url, settings.sweep_lock_timeout)
        if settings.redis_url
        else None
    )
    return BillingServices(
        settings=settings,
        database=database,
        plans=plans,
        providers=providers,
        engine=engine,
        audit=audit,
        webhooks=WebhookService(providers, engine, audit),
        checkout=CheckoutService(session_factory, plans, providers),
        sweeper=ExpirySweeper(session_factory, lock=lock),
        health=HealthCheck(settings, database),
        payout_policy=PayoutPolicy(
            minimum=settings.withdrawal_minimum,
            fee_rate=settings.withdrawal_fee_rate,
            enforce_balance=settings.withdrawal_enforce_balance,
        ),
    )


def get_services(request: Request) -> BillingServices:
    return request.app.state.services


def get_accounts(
    db: AsyncSession = Depends(get_db),
    services: BillingServices = Depends(get_services),
) -> AccountService:
    return AccountService(db, services.settings.default_revenue_share)


def get_payouts(
    db: AsyncSession = Depends(get_db),
    services: BillingServices = Depends(get_services),
) -> PayoutWorkflow:
    return PayoutWorkflow(db, services.payout_policy)


async def current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Identity asserted by the auth gateway."""
    if not x_user_id:
        raise AuthenticationError("Missing caller identity", error_code="unauthenticated")
    return x_user_id


async def current_user_email(x_user_email: Optional[str] = Header(default=None)) -> str:
    if not x_user_email:
        raise AuthenticationError("Missing caller email", error_code="unauthenticated")
    return x_user_email


async def require_admin(
    user_id: str = Depends(current_user_id),
    accounts: AccountService = Depends(get_accounts),
) -> Account:
    return await accounts.require_role(user_id, "admin")


async def require_partner(
    user_id: str = Depends(current_user_id),
    accounts: AccountService = Depends(get_accounts),
) -> Account:
    return await accounts.require_role(user_id, "partner")


async def verify_cron_secret(
    authorization: Optional[str] = Header(default=None),
    services: BillingServices = Depends(get_services),
) -> None:
    """Bearer token check for the externally scheduled sweep trigger."""
    secret = services.settings.cron_secret
    token = ""
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):]
    if not secret or not hmac.compare_digest(token, secret):
        raise AuthenticationError("Invalid cron secret", error_code="invalid_cron_secret")
