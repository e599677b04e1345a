"""
Pytest configuration and fixtures.

Tests run against a file-backed SQLite database (aiosqlite) per test and an
in-process stand-in for the Paystack and Pesapal HTTP APIs.
"""
import hashlib
import hmac
import json
import time
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from subscription_billing.api.main import create_app
from subscription_billing.config import PlanCatalog, Settings
from subscription_billing.core.audit import AuditLog
from subscription_billing.core.intents import IntentLedger
from subscription_billing.core.reconciliation import ReconciliationEngine
from subscription_billing.core.subscriptions import PendingSubscription
from subscription_billing.database import (
    Database,
    ReferralProfile,
    Subscription,
    User,
)
from subscription_billing.integrations.providers import build_providers
from subscription_billing.integrations.providers.binance_pay import sign as binance_sign
from tests.helpers import NOW


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without a database")
    config.addinivalue_line("markers", "integration: tests against a real database")
    config.addinivalue_line("markers", "race: concurrent delivery and request scenarios")


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        redis_url=None,
        cron_secret="cron-secret-for-tests",
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret="whsec_test_fake_secret",
        binance_pay_secret="binance-test-secret",
        paystack_secret_key="sk_test_paystack_secret",
        pesapal_consumer_key="pesapal-consumer-key",
        pesapal_consumer_secret="pesapal-consumer-secret",
        pesapal_base_url="https://pesapal.test/api",
        pesapal_notification_id="ipn-test-id",
        whop_webhook_secret="whop-test-secret",
        whop_product_id="prod_test",
        app_name="subscription-billing-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database, Any]:
    """Fresh schema per test."""
    database = Database.from_settings(test_settings)
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def plans() -> PlanCatalog:
    return PlanCatalog()


@pytest.fixture
def engine(database: Database, plans: PlanCatalog) -> ReconciliationEngine:
    return ReconciliationEngine(database.session_factory, plans)


@pytest.fixture
def audit(database: Database) -> AuditLog:
    return AuditLog(database.session_factory)


class Seeder:
    """Writes fixture rows in committed transactions."""

    def __init__(self, database: Database, plans: PlanCatalog):
        self.database = database
        self.plans = plans

    async def user(
        self,
        user_id: str,
        email: Optional[str] = None,
        role: str = "regular",
        referred_by_code: Optional[str] = None,
    ) -> User:
        user = User(
            id=user_id,
            email=email or f"{user_id}@example.com",
            role=role,
            referred_by_code=referred_by_code,
            created_at=NOW,
        )
        async with self.database.session_factory() as session:
            async with session.begin():
                session.add(user)
        return user

    async def partner(
        self,
        user_id: str,
        referral_code: Optional[str] = None,
        revenue_share: Decimal = Decimal("0.20"),
    ) -> ReferralProfile:
        await self.user(user_id, role="partner")
        profile = ReferralProfile(
            user_id=user_id,
            referral_code=referral_code or f"rp-{user_id[-6:]}",
            revenue_share=revenue_share,
            is_approved=True,
            applied_at=NOW,
            approved_at=NOW,
        )
        async with self.database.session_factory() as session:
            async with session.begin():
                session.add(profile)
        return profile

    async def intent(
        self,
        user_id: str,
        plan_id: str = "monthly",
        provider: str = "stripe",
        plans: Optional[PlanCatalog] = None,
    ) -> str:
        plan = (plans or self.plans).get(plan_id)
        async with self.database.session_factory() as session:
            async with session.begin():
                intent = await IntentLedger(session).create(user_id, plan, provider)
        return intent.reference

    async def subscription(
        self,
        user_id: str,
        plan_id: str,
        amount: Decimal,
        start_date: datetime,
        end_date: Optional[datetime],
        status: str = "active",
        pending: Optional[PendingSubscription] = None,
    ) -> Subscription:
        row = Subscription(
            user_id=user_id,
            status=status,
            plan_id=plan_id,
            amount=amount,
            start_date=start_date,
            end_date=end_date,
            created_at=start_date,
            updated_at=start_date,
            **(pending.to_values() if pending else {}),
        )
        async with self.database.session_factory() as session:
            async with session.begin():
                session.add(row)
        return row

    async def fetch(self, model: Any, key: Any) -> Any:
        async with self.database.session_factory() as session:
            return await session.get(model, key)


@pytest.fixture
def seed(database: Database, plans: PlanCatalog) -> Seeder:
    return Seeder(database, plans)


# Provider signing helpers


@pytest.fixture
def stripe_signature(test_settings: Settings) -> Callable[[bytes], str]:
    """Build a ``Stripe-Signature`` header for a payload."""

    def _sign(payload: bytes, timestamp: Optional[int] = None, secret: Optional[str] = None) -> str:
        timestamp = timestamp or int(time.time())
        signed = f"{timestamp}.".encode() + payload
        digest = hmac.new(
            (secret or test_settings.stripe_webhook_secret).encode(), signed, hashlib.sha256
        ).hexdigest()
        return f"t={timestamp},v1={digest}"

    return _sign


@pytest.fixture
def binance_headers(test_settings: Settings) -> Callable[[bytes], Dict[str, str]]:
    def _headers(body: bytes, timestamp_ms: Optional[int] = None) -> Dict[str, str]:
        timestamp = str(timestamp_ms or int(time.time() * 1000))
        nonce = "5K8264ILTKCH16CQ2502SI8ZNMTM67VS"
        return {
            "BinancePay-Timestamp": timestamp,
            "BinancePay-Nonce": nonce,
            "BinancePay-Signature": binance_sign(
                test_settings.binance_pay_secret, timestamp, nonce, body
            ),
        }

    return _headers


@pytest.fixture
def paystack_signature(test_settings: Settings) -> Callable[[bytes], str]:
    def _sign(body: bytes) -> str:
        return hmac.new(
            test_settings.paystack_secret_key.encode(), body, hashlib.sha512
        ).hexdigest()

    return _sign


@pytest.fixture
def whop_signature(test_settings: Settings) -> Callable[[bytes], str]:
    def _sign(body: bytes) -> str:
        return hmac.new(
            test_settings.whop_webhook_secret.encode(), body, hashlib.sha256
        ).hexdigest()

    return _sign


# Provider HTTP APIs


class FakeProviderAPI:
    """In-process stand-in for the Paystack and Pesapal REST APIs."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.statuses: Dict[str, Dict[str, Any]] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/Auth/RequestToken"):
            return httpx.Response(200, json={"token": "pesapal-token", "status": "200"})

        if path.endswith("/Transactions/SubmitOrderRequest"):
            order = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "order_tracking_id": f"trk-{order['id']}",
                    "merchant_reference": order["id"],
                    "redirect_url": f"https://pay.pesapal.test/iframe/{order['id']}",
                    "status": "200",
                },
            )

        if path.endswith("/Transactions/GetTransactionStatus"):
            status = self.statuses.get(request.url.params.get("orderTrackingId", ""))
            if status is None:
                return httpx.Response(404, json={"error": {"code": "not_found"}})
            return httpx.Response(200, json=status)

        if path.endswith("/transaction/initialize"):
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "message": "Authorization URL created",
                    "data": {
                        "authorization_url": f"https://checkout.paystack.test/{body['reference']}",
                        "access_code": "access_test",
                        "reference": body["reference"],
                    },
                },
            )

        return httpx.Response(404, json={"error": "unknown route"})

    def pesapal_status(
        self,
        tracking_id: str,
        merchant_reference: str,
        status_code: int = 1,
        description: str = "Completed",
    ) -> None:
        self.statuses[tracking_id] = {
            "payment_method": "MpesaKE",
            "amount": 49.89,
            "confirmation_code": f"CONF-{tracking_id}",
            "payment_status_description": description,
            "status_code": status_code,
            "merchant_reference": merchant_reference,
            "currency": "USD",
            "status": "200",
        }


@pytest.fixture
def provider_api() -> FakeProviderAPI:
    return FakeProviderAPI()


@pytest_asyncio.fixture
async def http_client(provider_api: FakeProviderAPI) -> AsyncGenerator[httpx.AsyncClient, Any]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(provider_api)) as client:
        yield client


@pytest.fixture
def stripe_client(mocker: Any) -> Any:
    client = mocker.Mock()
    client.create_checkout_session = mocker.AsyncMock(
        return_value=SimpleNamespace(id="cs_test_123", url="https://checkout.stripe.test/cs_test_123")
    )
    return client


@pytest.fixture
def providers(
    test_settings: Settings, http_client: httpx.AsyncClient, stripe_client: Any
) -> Dict[str, Any]:
    return build_providers(test_settings, http_client=http_client, stripe_client=stripe_client)


@pytest_asyncio.fixture
async def client(
    test_settings: Settings, database: Database, providers: Dict[str, Any]
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(settings=test_settings, database=database, providers=providers)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
