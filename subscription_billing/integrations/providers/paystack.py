"""Paystack (mobile wallet / card). Signature: hex HMAC-SHA512 of the raw body."""
from typing import Mapping, Optional

import httpx

from subscription_billing.config import Plan, Settings
from subscription_billing.core.notifications import CanonicalNotification, Outcome
from subscription_billing.database.models import PaymentIntent
from subscription_billing.integrations.paystack_client import PaystackClient
from subscription_billing.integrations.providers.base import ProviderVerifier, hmac_hex

SIGNATURE_HEADER = "x-paystack-signature"

OUTCOMES = {
    "charge.success": Outcome.CONFIRMED,
    "charge.failed": Outcome.DECLINED,
}


class PaystackVerifier(ProviderVerifier):
    name = "paystack"

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.client = PaystackClient(settings, http_client)

    @property
    def configured(self) -> bool:
        return bool(self.settings.paystack_secret_key)

    async def verify(self, body: bytes, headers: Mapping[str, str]) -> CanonicalNotification:
        self.ensure_configured()
        self.check_hmac(
            hmac_hex(self.settings.paystack_secret_key, body),
            self.header(headers, SIGNATURE_HEADER),
        )

        payload = self.parse_json(body)
        event = payload.get("event") or "unknown"
        data = payload.get("data") or {}
        txn_id = data.get("id")

        return CanonicalNotification(
            provider=self.name,
            event=event,
            reference=data.get("reference"),
            outcome=OUTCOMES.get(event),
            provider_txn_id=str(txn_id) if txn_id is not None else None,
            raw_payload=payload,
        )

    async def create_checkout(self, intent: PaymentIntent, plan: Plan, email: str) -> str:
        data = await self.client.initialize_transaction(
            reference=intent.reference,
            email=email,
            amount=intent.amount,
            currency=intent.currency,
            metadata={"user_id": intent.user_id, "plan_id": intent.plan_id},
        )
        return data["authorization_url"]
