"""
Provider adapter interface.

Each payment provider is one adapter selected by the webhook route, never by
inspecting the payload. An adapter:

- verifies an inbound notification and maps it to a CanonicalNotification
  (AuthenticationError if it cannot be trusted, ValidationError if it is
  malformed); verification has no side effects
- builds the checkout URL for a freshly created payment intent
- renders the acknowledgement body the provider expects
"""
import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping

from subscription_billing.config import Plan
from subscription_billing.core.exceptions import AuthenticationError, ValidationError
from subscription_billing.core.notifications import CanonicalNotification
from subscription_billing.database.models import PaymentIntent


class ProviderVerifier(ABC):
    """Authenticity check, payload mapping and checkout for one provider."""

    name: str = ""
    ack_status: int = 200

    @property
    @abstractmethod
    def configured(self) -> bool:
        """False when the provider's secret is missing."""

    @abstractmethod
    async def verify(self, body: bytes, headers: Mapping[str, str]) -> CanonicalNotification:
        """
        Authenticate ``body`` and extract the canonical notification.

        Raises:
            AuthenticationError: If the notification cannot be trusted
            ValidationError: If the payload is malformed
        """

    @abstractmethod
    async def create_checkout(self, intent: PaymentIntent, plan: Plan, email: str) -> str:
        """Return the URL the customer is sent to for paying ``intent``."""

    def acknowledgement(self, notification: CanonicalNotification) -> Dict[str, Any]:
        return {"received": True}

    def ensure_configured(self) -> None:
        if not self.configured:
            raise AuthenticationError(
                f"{self.name} webhooks are not configured",
                error_code="provider_not_configured",
                provider=self.name,
            )

    @staticmethod
    def header(headers: Mapping[str, str], name: str) -> str:
        """Case-insensitive header lookup; missing headers read as empty."""
        wanted = name.lower()
        for key, value in headers.items():
            if key.lower() == wanted:
                return value
        return ""

    def parse_json(self, body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, ValueError) as e:
            raise ValidationError(
                f"{self.name} payload is not valid JSON", error_code="malformed_payload"
            ) from e
        if not isinstance(payload, dict):
            raise ValidationError(
                f"{self.name} payload is not a JSON object", error_code="malformed_payload"
            )
        return payload

    def check_hmac(self, expected: str, provided: str) -> None:
        if not provided or not hmac.compare_digest(expected, provided):
            raise AuthenticationError(
                f"Invalid {self.name} signature",
                error_code="invalid_signature",
                provider=self.name,
            )


def hmac_hex(secret: str, message: bytes, digestmod: Any = hashlib.sha512) -> str:
    return hmac.new(secret.encode("utf-8"), message, digestmod).hexdigest()
