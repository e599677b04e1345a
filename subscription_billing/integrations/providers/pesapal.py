"""
Pesapal (mobile money).

IPN notifications are unsigned. The body only tells us which order to look at;
the outcome comes from an authenticated GetTransactionStatus query, and the
notification is rejected if the order it names does not belong to the
reference it claims.
"""
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog

from subscription_billing.config import Plan, Settings
from subscription_billing.core.exceptions import AuthenticationError, ValidationError
from subscription_billing.core.notifications import CanonicalNotification, Outcome
from subscription_billing.database.models import PaymentIntent
from subscription_billing.integrations.pesapal_client import PesapalClient
from subscription_billing.integrations.providers.base import ProviderVerifier

logger = structlog.get_logger(__name__)

# GetTransactionStatus status_code values
STATUS_OUTCOMES = {
    1: Outcome.CONFIRMED,  # COMPLETED
    2: Outcome.DECLINED,  # FAILED
    3: Outcome.CANCELLED,  # REVERSED
}


class PesapalVerifier(ProviderVerifier):
    name = "pesapal"

    def __init__(
        self,
        settings: Settings,
        client: Optional[PesapalClient] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.client = client or PesapalClient(settings, http_client)

    @property
    def configured(self) -> bool:
        return self.client.configured

    async def verify(self, body: bytes, headers: Mapping[str, str]) -> CanonicalNotification:
        self.ensure_configured()
        ipn = self.parse_json(body)
        tracking_id = ipn.get("OrderTrackingId")
        merchant_reference = ipn.get("OrderMerchantReference")
        if not tracking_id or not merchant_reference:
            raise ValidationError(
                "Pesapal IPN missing OrderTrackingId or OrderMerchantReference",
                error_code="malformed_payload",
            )

        status = await self.client.get_transaction_status(tracking_id)
        if status.get("merchant_reference") != merchant_reference:
            logger.warning(
                "pesapal_reference_mismatch",
                order_tracking_id=tracking_id,
                claimed_reference=merchant_reference,
            )
            raise AuthenticationError(
                "Pesapal status does not match the notified reference",
                error_code="reference_mismatch",
                provider=self.name,
            )

        status_code = _as_int(status.get("status_code"))
        description = status.get("payment_status_description") or "unknown"
        return CanonicalNotification(
            provider=self.name,
            event=f"{ipn.get('OrderNotificationType') or 'IPNCHANGE'}:{description}",
            reference=merchant_reference,
            outcome=STATUS_OUTCOMES.get(status_code),
            provider_txn_id=status.get("confirmation_code") or tracking_id,
            raw_payload={"ipn": ipn, "status": status},
        )

    async def create_checkout(self, intent: PaymentIntent, plan: Plan, email: str) -> str:
        order = await self.client.submit_order(
            reference=intent.reference,
            amount=intent.amount,
            currency=intent.currency,
            description=f"{plan.name} subscription",
            email=email,
        )
        return order["redirect_url"]

    def acknowledgement(self, notification: CanonicalNotification) -> Dict[str, Any]:
        ipn = notification.raw_payload.get("ipn", {})
        return {
            "orderNotificationType": ipn.get("OrderNotificationType"),
            "orderTrackingId": ipn.get("OrderTrackingId"),
            "orderMerchantReference": ipn.get("OrderMerchantReference"),
            "status": 200,
        }


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
