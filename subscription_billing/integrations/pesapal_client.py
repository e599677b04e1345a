"""
Pesapal v3 API client.

Pesapal IPN calls carry no signature, so every notification is confirmed with an
authenticated GetTransactionStatus call before it is trusted.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog

from subscription_billing.config import Settings
from subscription_billing.core.exceptions import UpstreamError
from subscription_billing.integrations.http import ProviderAPI

logger = structlog.get_logger(__name__)


class PesapalClient(ProviderAPI):
    """Token-authenticated client for order submission and status queries."""

    provider = "pesapal"

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(settings.pesapal_base_url, http_client)
        self.settings = settings

    @property
    def configured(self) -> bool:
        return bool(self.settings.pesapal_consumer_key and self.settings.pesapal_consumer_secret)

    async def request_token(self) -> str:
        """Fetch a short-lived bearer token."""
        payload = await self.request(
            "request_token",
            "POST",
            "Auth/RequestToken",
            headers={"Accept": "application/json"},
            json={
                "consumer_key": self.settings.pesapal_consumer_key,
                "consumer_secret": self.settings.pesapal_consumer_secret,
            },
        )
        token = payload.get("token")
        if not token:
            raise UpstreamError(
                "Pesapal token request returned no token", error=str(payload.get("error"))
            )
        return token

    async def _authorized(self) -> Dict[str, str]:
        token = await self.request_token()
        return {"Accept": "application/json", "Authorization": f"Bearer {token}"}

    async def submit_order(
        self,
        reference: str,
        amount: Decimal,
        currency: str,
        description: str,
        email: str,
    ) -> Dict[str, Any]:
        """Submit an order whose merchant reference is the intent reference."""
        payload = await self.request(
            "submit_order",
            "POST",
            "Transactions/SubmitOrderRequest",
            headers=await self._authorized(),
            json={
                "id": reference,
                "currency": currency,
                "amount": float(amount),
                "description": description,
                "callback_url": self.settings.pesapal_callback_url,
                "notification_id": self.settings.pesapal_notification_id,
                "billing_address": {"email_address": email},
            },
        )
        if not payload.get("redirect_url"):
            raise UpstreamError("Pesapal order submission returned no redirect URL")

        logger.info(
            "pesapal_order_submitted",
            reference=reference,
            order_tracking_id=payload.get("order_tracking_id"),
        )
        return payload

    async def get_transaction_status(self, order_tracking_id: str) -> Dict[str, Any]:
        """
        Query the authoritative status of an order.

        Returns the raw status object (``status_code``, ``merchant_reference``,
        ``payment_status_description``, ``confirmation_code``, ...).
        """
        return await self.request(
            "get_transaction_status",
            "GET",
            "Transactions/GetTransactionStatus",
            headers=await self._authorized(),
            params={"orderTrackingId": order_tracking_id},
        )
