"""
API routes for checkout, webhooks, subscriptions, partners and operators.
"""
from dataclasses import asdict
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.config import FREE_PLAN_ID
from subscription_billing.core.accounts import Account, AccountService
from subscription_billing.core.audit import MAX_PAGE_SIZE
from subscription_billing.core.commission import CommissionAggregator
from subscription_billing.core.intents import IntentLedger
from subscription_billing.core.payouts import PayoutWorkflow
from subscription_billing.core.subscriptions import PendingSubscription, SubscriptionStore
from subscription_billing.database import get_db, utcnow

from .dependencies import (
    BillingServices,
    current_user_email,
    current_user_id,
    get_accounts,
    get_payouts,
    get_services,
    require_admin,
    require_partner,
    verify_cron_secret,
)
from .schemas import (
    AccountResponse,
    ApprovePartnerRequest,
    CheckoutRequest,
    CheckoutResponse,
    ExpiryPreviewResponse,
    HealthCheckResponse,
    PartnerDashboardResponse,
    PaymentIntentResponse,
    RegisterRequest,
    ResolveIntentRequest,
    ResolveIntentResponse,
    SubscriptionResponse,
    SweepResponse,
    WebhookAttemptPage,
    WebhookAttemptResponse,
    WithdrawalRequest,
    WithdrawalResponse,
)

logger = structlog.get_logger(__name__)

checkout_router = APIRouter(prefix="/checkout", tags=["checkout"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
account_router = APIRouter(prefix="/accounts", tags=["accounts"])
subscription_router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
partner_router = APIRouter(prefix="/partners", tags=["partners"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
internal_router = APIRouter(prefix="/internal", tags=["internal"])
monitoring_router = APIRouter(tags=["monitoring"])


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse.model_validate(account.model_dump())


# Checkout


@checkout_router.post(
    "",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a checkout",
    description="Create a pending payment intent and the provider checkout that pays it",
)
async def create_checkout(
    request: CheckoutRequest,
    user_id: str = Depends(current_user_id),
    email: str = Depends(current_user_email),
    services: BillingServices = Depends(get_services),
) -> CheckoutResponse:
    result = await services.checkout.create_checkout(
        user_id=user_id,
        email=email,
        plan_id=request.plan_id,
        provider=request.provider,
    )
    return CheckoutResponse(
        reference=result.reference,
        checkout_url=result.checkout_url,
        provider=result.provider,
        plan_id=result.plan_id,
        amount=result.amount,
        currency=result.currency,
    )


# Webhooks


@webhook_router.post(
    "/{provider}",
    summary="Provider payment notification",
    description="Verify, reconcile and acknowledge a provider notification",
)
async def provider_webhook(
    provider: str,
    request: Request,
    services: BillingServices = Depends(get_services),
) -> JSONResponse:
    """Raw body is read untouched; signatures are computed over it."""
    body = await request.body()
    structlog.contextvars.bind_contextvars(provider=provider)
    response = await services.webhooks.handle(provider, body, request.headers)
    return JSONResponse(content=response.body, status_code=response.status_code)


# Accounts


@account_router.post(
    "/register",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register the calling user with billing",
)
async def register(
    request: RegisterRequest,
    user_id: str = Depends(current_user_id),
    accounts: AccountService = Depends(get_accounts),
) -> AccountResponse:
    account = await accounts.register(user_id, request.email, request.referred_by_code)
    return _account_response(account)


@account_router.get("/me", response_model=AccountResponse)
async def my_account(
    user_id: str = Depends(current_user_id),
    accounts: AccountService = Depends(get_accounts),
) -> AccountResponse:
    return _account_response(await accounts.get(user_id))


# Subscriptions


@subscription_router.get(
    "/me",
    response_model=SubscriptionResponse,
    summary="Current subscription",
    description="Current plan, expiry and any queued plan for the calling user",
)
async def my_subscription(
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> SubscriptionResponse:
    subscription = await SubscriptionStore(db).get(user_id)
    if subscription is None:
        return SubscriptionResponse(
            user_id=user_id, plan_id=FREE_PLAN_ID, status="active", amount=0
        )

    pending = PendingSubscription.from_row(subscription)
    return SubscriptionResponse(
        user_id=user_id,
        plan_id=subscription.plan_id,
        status=subscription.status,
        amount=subscription.amount,
        start_date=subscription.start_date,
        end_date=subscription.end_date,
        pending_subscription=asdict(pending) if pending else None,
    )


# Partners


@partner_router.post(
    "/apply",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Apply for the partner program",
)
async def apply_as_partner(
    user_id: str = Depends(current_user_id),
    accounts: AccountService = Depends(get_accounts),
) -> AccountResponse:
    return _account_response(await accounts.apply_as_partner(user_id))


@partner_router.get(
    "/me/dashboard",
    response_model=PartnerDashboardResponse,
    summary="Commission dashboard",
)
async def partner_dashboard(
    partner: Account = Depends(require_partner),
    db: AsyncSession = Depends(get_db),
    payouts: PayoutWorkflow = Depends(get_payouts),
) -> PartnerDashboardResponse:
    report = await CommissionAggregator(db).compute(partner.user_id)
    available = await payouts.available_balance(partner.user_id)
    return PartnerDashboardResponse(
        partner_id=report.partner_id,
        referral_code=report.referral_code,
        revenue_share=report.revenue_share,
        total=report.total,
        available_balance=available,
        total_referrals=report.total_referrals,
        paid_referrals=report.paid_referrals,
        conversion_rate=report.conversion_rate,
        referrals=[asdict(referral) for referral in report.referrals],
        revenue_by_day=report.revenue_by_day,
    )


@partner_router.post(
    "/me/withdrawals",
    response_model=WithdrawalResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a payout",
)
async def request_withdrawal(
    request: WithdrawalRequest,
    partner: Account = Depends(require_partner),
    payouts: PayoutWorkflow = Depends(get_payouts),
) -> WithdrawalResponse:
    withdrawal = await payouts.request(partner.user_id, request.amount)
    return WithdrawalResponse.model_validate(withdrawal)


@partner_router.get("/me/withdrawals", response_model=List[WithdrawalResponse])
async def my_withdrawals(
    partner: Account = Depends(require_partner),
    payouts: PayoutWorkflow = Depends(get_payouts),
) -> List[WithdrawalResponse]:
    withdrawals = await payouts.list_withdrawals(partner_id=partner.user_id)
    return [WithdrawalResponse.model_validate(w) for w in withdrawals]


# Admin


@admin_router.get("/withdrawals", response_model=List[WithdrawalResponse])
async def list_withdrawals(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    admin: Account = Depends(require_admin),
    payouts: PayoutWorkflow = Depends(get_payouts),
) -> List[WithdrawalResponse]:
    withdrawals = await payouts.list_withdrawals(status=status_filter, limit=limit, offset=offset)
    return [WithdrawalResponse.model_validate(w) for w in withdrawals]


@admin_router.post("/withdrawals/{withdrawal_id}/approve", response_model=WithdrawalResponse)
async def approve_withdrawal(
    withdrawal_id: UUID,
    admin: Account = Depends(require_admin),
    payouts: PayoutWorkflow = Depends(get_payouts),
) -> WithdrawalResponse:
    withdrawal = await payouts.approve(withdrawal_id, admin.user_id)
    return WithdrawalResponse.model_validate(withdrawal)


@admin_router.post("/withdrawals/{withdrawal_id}/deny", response_model=WithdrawalResponse)
async def deny_withdrawal(
    withdrawal_id: UUID,
    admin: Account = Depends(require_admin),
    payouts: PayoutWorkflow = Depends(get_payouts),
) -> WithdrawalResponse:
    withdrawal = await payouts.deny(withdrawal_id, admin.user_id)
    return WithdrawalResponse.model_validate(withdrawal)


@admin_router.post("/partners/{user_id}/approve", response_model=AccountResponse)
async def approve_partner(
    user_id: str,
    request: ApprovePartnerRequest,
    admin: Account = Depends(require_admin),
    accounts: AccountService = Depends(get_accounts),
) -> AccountResponse:
    account = await accounts.approve_partner(user_id, request.revenue_share)
    logger.info("admin_partner_approved", user_id=user_id, admin_id=admin.user_id)
    return _account_response(account)


@admin_router.post("/partners/{user_id}/reject", response_model=AccountResponse)
async def reject_partner(
    user_id: str,
    admin: Account = Depends(require_admin),
    accounts: AccountService = Depends(get_accounts),
) -> AccountResponse:
    account = await accounts.reject_partner(user_id)
    logger.info("admin_partner_rejected", user_id=user_id, admin_id=admin.user_id)
    return _account_response(account)


@admin_router.get(
    "/webhook-attempts",
    response_model=WebhookAttemptPage,
    summary="Search the webhook audit log",
)
async def webhook_attempts(
    search: Optional[str] = Query(default=None, description="Matches event or reference"),
    provider: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=MAX_PAGE_SIZE),
    include_payload: bool = Query(default=False),
    admin: Account = Depends(require_admin),
    services: BillingServices = Depends(get_services),
) -> WebhookAttemptPage:
    entries, total = await services.audit.search(
        search=search, provider=provider, page=page, limit=limit
    )
    items = []
    for entry in entries:
        item = WebhookAttemptResponse.model_validate(entry)
        if not include_payload:
            item.payload = None
        items.append(item)
    return WebhookAttemptPage(items=items, total=total, page=page, limit=limit)


@admin_router.get("/payment-intents/pending", response_model=List[PaymentIntentResponse])
async def pending_intents(
    limit: int = Query(default=100, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    admin: Account = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> List[PaymentIntentResponse]:
    intents = await IntentLedger(db).list_pending(limit=limit, offset=offset)
    return [PaymentIntentResponse.model_validate(intent) for intent in intents]


@admin_router.post(
    "/payment-intents/{reference}/resolve",
    response_model=ResolveIntentResponse,
    summary="Manually approve or reject a pending intent",
)
async def resolve_intent(
    reference: str,
    request: ResolveIntentRequest,
    admin: Account = Depends(require_admin),
    services: BillingServices = Depends(get_services),
) -> ResolveIntentResponse:
    result = await services.webhooks.resolve_manually(reference, request.action, admin.user_id)
    return ResolveIntentResponse(
        reference=reference,
        status=result.status.value,
        user_id=result.user_id,
        plan_id=result.plan_id,
        end_date=result.end_date,
        scheduled_start=result.scheduled_start,
    )


# Internal (cron)


@internal_router.post(
    "/subscriptions/sweep",
    response_model=SweepResponse,
    dependencies=[Depends(verify_cron_secret)],
    summary="Run the expiry sweep",
)
async def run_sweep(services: BillingServices = Depends(get_services)) -> Dict[str, Any]:
    report = await services.sweeper.run()
    return report.to_dict()


@internal_router.get(
    "/subscriptions/expiring",
    response_model=ExpiryPreviewResponse,
    dependencies=[Depends(verify_cron_secret)],
    summary="Preview upcoming expiries",
)
async def expiring_subscriptions(
    within_days: int = Query(default=7, ge=0, le=365),
    db: AsyncSession = Depends(get_db),
) -> ExpiryPreviewResponse:
    counts = await SubscriptionStore(db).expiry_preview(utcnow(), within_days)
    return ExpiryPreviewResponse(within_days=within_days, **counts)


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
)
async def health(services: BillingServices = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.check_all()


@monitoring_router.get("/health/live", summary="Liveness probe")
async def liveness(services: BillingServices = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get("/health/ready", summary="Readiness probe")
async def readiness(services: BillingServices = Depends(get_services)) -> JSONResponse:
    result = await services.health.readiness()
    code = status.HTTP_200_OK if result["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(content=result, status_code=code)


@monitoring_router.get("/metrics", summary="Prometheus metrics")
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
