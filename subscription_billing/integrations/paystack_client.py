"""Paystack API client for transaction initialization."""
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog

from subscription_billing.config import Settings
from subscription_billing.core.exceptions import UpstreamError
from subscription_billing.integrations.http import ProviderAPI

logger = structlog.get_logger(__name__)


class PaystackClient(ProviderAPI):
    """Async wrapper for the Paystack operations checkout needs."""

    provider = "paystack"

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(settings.paystack_base_url, http_client)
        self.settings = settings
        self.headers = {
            "Authorization": f"Bearer {settings.paystack_secret_key}",
            "Content-Type": "application/json",
        }

    async def initialize_transaction(
        self,
        reference: str,
        email: str,
        amount: Decimal,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Initialize a one-off transaction carrying our reference.

        Amounts are sent in the currency's subunit.
        """
        payload = await self.request(
            "initialize_transaction",
            "POST",
            "transaction/initialize",
            headers=self.headers,
            json={
                "reference": reference,
                "email": email,
                "amount": int(amount * 100),
                "currency": currency,
                "callback_url": self.settings.paystack_callback_url,
                "metadata": metadata or {},
            },
        )
        data = payload.get("data") or {}
        if not payload.get("status") or not data.get("authorization_url"):
            raise UpstreamError(
                f"Paystack initialize failed: {payload.get('message', 'no authorization_url')}"
            )

        logger.info("paystack_transaction_initialized", reference=reference)
        return data
