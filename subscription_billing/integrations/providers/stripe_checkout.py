"""Stripe Checkout (card payments)."""
from typing import Any, Dict, Mapping, Optional

import stripe
import structlog

from subscription_billing.config import Plan, Settings
from subscription_billing.core.exceptions import AuthenticationError, UpstreamError, ValidationError
from subscription_billing.core.notifications import CanonicalNotification, Outcome
from subscription_billing.database.models import PaymentIntent
from subscription_billing.integrations.providers.base import ProviderVerifier
from subscription_billing.integrations.stripe_client import StripeClient, StripeError

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"

# Events whose outcome does not depend on the object's fields
FIXED_OUTCOMES = {
    "checkout.session.async_payment_succeeded": Outcome.CONFIRMED,
    "checkout.session.async_payment_failed": Outcome.DECLINED,
    "checkout.session.expired": Outcome.CANCELLED,
    "payment_intent.payment_failed": Outcome.DECLINED,
}


class StripeVerifier(ProviderVerifier):
    """Signing-secret envelope verification via the Stripe library."""

    name = "stripe"

    def __init__(self, settings: Settings, client: Optional[StripeClient] = None):
        self.settings = settings
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.settings.stripe_webhook_secret)

    @property
    def client(self) -> StripeClient:
        if self._client is None:
            self._client = StripeClient(self.settings)
        return self._client

    async def verify(self, body: bytes, headers: Mapping[str, str]) -> CanonicalNotification:
        self.ensure_configured()
        try:
            stripe.Webhook.construct_event(
                payload=body,
                sig_header=self.header(headers, SIGNATURE_HEADER),
                secret=self.settings.stripe_webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe_signature_verification_failed", error=str(e))
            raise AuthenticationError(
                "Invalid stripe signature", error_code="invalid_signature", provider=self.name
            ) from e
        except ValueError as e:
            raise ValidationError(
                "stripe payload is not valid JSON", error_code="malformed_payload"
            ) from e

        event = self.parse_json(body)
        event_type = event.get("type") or "unknown"
        obj: Dict[str, Any] = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        if event_type == "checkout.session.completed":
            # Delayed payment methods complete the session before the money moves
            outcome = Outcome.CONFIRMED if obj.get("payment_status") == "paid" else None
        else:
            outcome = FIXED_OUTCOMES.get(event_type)

        if event_type.startswith("payment_intent."):
            reference = metadata.get("reference")
            txn_id = obj.get("id")
        else:
            reference = obj.get("client_reference_id") or metadata.get("reference")
            txn_id = obj.get("payment_intent") or obj.get("id")

        return CanonicalNotification(
            provider=self.name,
            event=event_type,
            reference=reference,
            outcome=outcome,
            provider_txn_id=txn_id,
            raw_payload=event,
        )

    async def create_checkout(self, intent: PaymentIntent, plan: Plan, email: str) -> str:
        try:
            session = await self.client.create_checkout_session(
                reference=intent.reference,
                amount=intent.amount,
                currency=intent.currency,
                product_name=f"{plan.name} subscription",
                customer_email=email,
                metadata={"user_id": intent.user_id, "plan_id": intent.plan_id},
            )
        except StripeError as e:
            raise UpstreamError(
                f"Stripe checkout failed: {e}", provider=self.name, reference=intent.reference
            ) from e
        return session.url
