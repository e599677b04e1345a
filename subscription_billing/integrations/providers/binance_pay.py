"""
Binance Pay (crypto).

Signature: uppercase hex HMAC-SHA512 over ``timestamp\\nnonce\\nbody\\n`` sent in
``BinancePay-Signature``. The timestamp is in milliseconds and must be within
the configured tolerance.
"""
import json
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping

import structlog

from subscription_billing.config import Plan, Settings
from subscription_billing.core.exceptions import AuthenticationError, ValidationError
from subscription_billing.core.notifications import CanonicalNotification, Outcome
from subscription_billing.database.models import PaymentIntent
from subscription_billing.integrations.providers.base import ProviderVerifier, hmac_hex

logger = structlog.get_logger(__name__)

OUTCOMES = {
    "PAY_SUCCESS": Outcome.CONFIRMED,
    "PAY_CLOSED": Outcome.CANCELLED,
}


def sign(secret: str, timestamp: str, nonce: str, body: bytes) -> str:
    message = timestamp.encode() + b"\n" + nonce.encode() + b"\n" + body + b"\n"
    return hmac_hex(secret, message).upper()


class BinancePayVerifier(ProviderVerifier):
    name = "binance"

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time):
        self.settings = settings
        self.clock = clock

    @property
    def configured(self) -> bool:
        return bool(self.settings.binance_pay_secret)

    async def verify(self, body: bytes, headers: Mapping[str, str]) -> CanonicalNotification:
        self.ensure_configured()
        timestamp = self.header(headers, "BinancePay-Timestamp")
        nonce = self.header(headers, "BinancePay-Nonce")
        signature = self.header(headers, "BinancePay-Signature")

        if not timestamp or not nonce:
            raise AuthenticationError(
                "Missing Binance Pay timestamp or nonce", error_code="invalid_signature"
            )
        self._check_freshness(timestamp)
        self.check_hmac(sign(self.settings.binance_pay_secret, timestamp, nonce, body), signature)

        payload = self.parse_json(body)
        biz_status = payload.get("bizStatus") or "unknown"
        data = self._decode_data(payload.get("data"))

        return CanonicalNotification(
            provider=self.name,
            event=biz_status,
            reference=data.get("merchantTradeNo"),
            outcome=OUTCOMES.get(biz_status),
            provider_txn_id=data.get("transactionId") or _as_str(payload.get("bizId")),
            raw_payload=payload,
        )

    def _check_freshness(self, timestamp: str) -> None:
        try:
            sent_ms = int(timestamp)
        except ValueError as e:
            raise AuthenticationError(
                "Malformed Binance Pay timestamp", error_code="invalid_signature"
            ) from e

        skew = abs(self.clock() * 1000 - sent_ms) / 1000
        if skew > self.settings.binance_pay_timestamp_tolerance:
            logger.warning("binance_notification_stale", skew_seconds=round(skew, 1))
            raise AuthenticationError(
                "Binance Pay notification outside the accepted time window",
                error_code="stale_notification",
            )

    def _decode_data(self, data: Any) -> Dict[str, Any]:
        # ``data`` is a JSON document embedded as a string
        if isinstance(data, dict):
            return data
        if not isinstance(data, str):
            raise ValidationError("Binance Pay payload has no data", error_code="malformed_payload")
        try:
            decoded = json.loads(data)
        except ValueError as e:
            raise ValidationError(
                "Binance Pay data is not valid JSON", error_code="malformed_payload"
            ) from e
        if not isinstance(decoded, dict):
            raise ValidationError("Binance Pay data is not an object", error_code="malformed_payload")
        return decoded

    async def create_checkout(self, intent: PaymentIntent, plan: Plan, email: str) -> str:
        return self.settings.binance_pay_checkout_url.format(
            reference=intent.reference,
            amount=Decimal(intent.amount).quantize(Decimal("0.01")),
            currency=intent.currency,
        )

    def acknowledgement(self, notification: CanonicalNotification) -> Dict[str, Any]:
        return {"returnCode": "SUCCESS", "returnMessage": None}


def _as_str(value: Any) -> Any:
    return str(value) if value is not None else None
