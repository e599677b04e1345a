"""
Whop (marketplace membership).

Signature: hex HMAC-SHA256 of the raw body in ``X-Whop-Signature`` (an optional
``sha256=`` prefix is accepted). The intent reference travels as
``data.custom_id``.
"""
import hashlib
from typing import Any, Dict, Mapping

from subscription_billing.config import Plan, Settings
from subscription_billing.core.notifications import CanonicalNotification, Outcome
from subscription_billing.database.models import PaymentIntent
from subscription_billing.integrations.providers.base import ProviderVerifier, hmac_hex

SIGNATURE_HEADER = "X-Whop-Signature"

SUCCESS_EVENTS = frozenset(
    {
        "membership.went_active",
        "membership.activated",
        "membership.reactivated",
        "membership.completed",
        "membership.processed",
        "membership.paid",
        "payment.succeeded",
        "payment.completed",
        "payment.processed",
        "payment.activated",
        "payment.paid",
        "payment.went_active",
        "subscription.activated",
        "subscription.went_active",
        "subscription.completed",
        "subscription.renewed",
        "subscription.reactivated",
        "subscription.processed",
        "subscription.paid",
        "order.completed",
        "order.paid",
        "order.processed",
        "order.activated",
        "order.succeeded",
        "order.went_active",
    }
)
FAILURE_EVENTS = frozenset({"payment.failed"})


class WhopVerifier(ProviderVerifier):
    name = "whop"

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def configured(self) -> bool:
        return bool(self.settings.whop_webhook_secret)

    async def verify(self, body: bytes, headers: Mapping[str, str]) -> CanonicalNotification:
        self.ensure_configured()
        signature = self.header(headers, SIGNATURE_HEADER)
        if signature.startswith("sha256="):
            signature = signature[len("sha256="):]
        self.check_hmac(
            hmac_hex(self.settings.whop_webhook_secret, body, hashlib.sha256), signature
        )

        payload = self.parse_json(body)
        event = payload.get("event") or payload.get("action") or "unknown"
        data = payload.get("data") or {}

        if event in SUCCESS_EVENTS:
            outcome = Outcome.CONFIRMED
        elif event in FAILURE_EVENTS:
            outcome = Outcome.DECLINED
        else:
            outcome = None

        return CanonicalNotification(
            provider=self.name,
            event=event,
            reference=data.get("custom_id"),
            outcome=outcome,
            provider_txn_id=data.get("id"),
            raw_payload=payload,
        )

    async def create_checkout(self, intent: PaymentIntent, plan: Plan, email: str) -> str:
        return self.settings.whop_checkout_url.format(
            product_id=self.settings.whop_product_id,
            reference=intent.reference,
            plan_id=intent.plan_id,
        )

    def acknowledgement(self, notification: CanonicalNotification) -> Dict[str, Any]:
        if notification.outcome is None:
            return {"ignored": True}
        return {"success": True}
