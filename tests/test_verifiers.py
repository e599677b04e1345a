"""
Tests for provider verifiers.

Each verifier must reject anything it cannot authenticate and map what it can
onto a canonical notification, without touching the database.
"""
import json
import time

import pytest

from subscription_billing.core.exceptions import AuthenticationError, ValidationError
from subscription_billing.core.notifications import Outcome
from subscription_billing.integrations.providers import (
    BinancePayVerifier,
    PaystackVerifier,
    PesapalVerifier,
    StripeVerifier,
    WhopVerifier,
)


def stripe_event(event_type: str, obj: dict) -> bytes:
    return json.dumps(
        {
            "id": "evt_test_123",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }
    ).encode()


class TestStripeVerifier:
    """Test suite for Stripe webhook verification."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_session_is_confirmed(self, test_settings, stripe_signature) -> None:
        body = stripe_event(
            "checkout.session.completed",
            {
                "id": "cs_test_123",
                "object": "checkout.session",
                "client_reference_id": "ref-123",
                "payment_intent": "pi_test_123",
                "payment_status": "paid",
            },
        )
        verifier = StripeVerifier(test_settings)

        result = await verifier.verify(body, {"Stripe-Signature": stripe_signature(body)})

        assert result.outcome is Outcome.CONFIRMED
        assert result.reference == "ref-123"
        assert result.provider_txn_id == "pi_test_123"
        assert result.event == "checkout.session.completed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unpaid_session_has_no_outcome(self, test_settings, stripe_signature) -> None:
        body = stripe_event(
            "checkout.session.completed",
            {"id": "cs_test_123", "client_reference_id": "ref-123", "payment_status": "unpaid"},
        )

        result = await StripeVerifier(test_settings).verify(
            body, {"stripe-signature": stripe_signature(body)}
        )

        assert result.outcome is None
        assert not result.is_terminal

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_payment_intent_uses_metadata_reference(
        self, test_settings, stripe_signature
    ) -> None:
        body = stripe_event(
            "payment_intent.payment_failed",
            {"id": "pi_test_456", "metadata": {"reference": "ref-456"}},
        )

        result = await StripeVerifier(test_settings).verify(
            body, {"Stripe-Signature": stripe_signature(body)}
        )

        assert result.outcome is Outcome.DECLINED
        assert result.reference == "ref-456"
        assert result.provider_txn_id == "pi_test_456"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_session_is_cancelled(self, test_settings, stripe_signature) -> None:
        body = stripe_event(
            "checkout.session.expired", {"id": "cs_test_789", "client_reference_id": "ref-789"}
        )

        result = await StripeVerifier(test_settings).verify(
            body, {"Stripe-Signature": stripe_signature(body)}
        )

        assert result.outcome is Outcome.CANCELLED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, test_settings, stripe_signature) -> None:
        body = stripe_event("checkout.session.completed", {"payment_status": "paid"})
        header = stripe_signature(body, secret="whsec_someone_else")

        with pytest.raises(AuthenticationError) as exc_info:
            await StripeVerifier(test_settings).verify(body, {"Stripe-Signature": header})

        assert exc_info.value.error_code == "invalid_signature"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_timestamp_rejected(self, test_settings, stripe_signature) -> None:
        body = stripe_event("checkout.session.completed", {"payment_status": "paid"})
        header = stripe_signature(body, timestamp=int(time.time()) - 3600)

        with pytest.raises(AuthenticationError):
            await StripeVerifier(test_settings).verify(body, {"Stripe-Signature": header})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unconfigured_secret_rejects_everything(self, test_settings) -> None:
        settings = test_settings.model_copy(update={"stripe_webhook_secret": ""})
        verifier = StripeVerifier(settings)

        assert not verifier.configured
        with pytest.raises(AuthenticationError) as exc_info:
            await verifier.verify(b"{}", {"Stripe-Signature": "t=1,v1=abc"})

        assert exc_info.value.error_code == "provider_not_configured"


class TestBinancePayVerifier:
    """Test suite for Binance Pay webhook verification."""

    @staticmethod
    def body(biz_status: str = "PAY_SUCCESS", reference: str = "ref-123") -> bytes:
        data = json.dumps(
            {
                "merchantTradeNo": reference,
                "transactionId": "M_P_71505104267788288",
                "totalFee": 49.89,
                "currency": "USDT",
            }
        )
        return json.dumps(
            {"bizType": "PAY", "bizId": 29383937493038367292, "bizStatus": biz_status, "data": data}
        ).encode()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pay_success_is_confirmed(self, test_settings, binance_headers) -> None:
        body = self.body()

        result = await BinancePayVerifier(test_settings).verify(body, binance_headers(body))

        assert result.outcome is Outcome.CONFIRMED
        assert result.reference == "ref-123"
        assert result.provider_txn_id == "M_P_71505104267788288"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pay_closed_is_cancelled(self, test_settings, binance_headers) -> None:
        body = self.body("PAY_CLOSED")

        result = await BinancePayVerifier(test_settings).verify(body, binance_headers(body))

        assert result.outcome is Outcome.CANCELLED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, test_settings, binance_headers) -> None:
        headers = binance_headers(self.body(reference="ref-123"))
        tampered = self.body(reference="ref-999")

        with pytest.raises(AuthenticationError) as exc_info:
            await BinancePayVerifier(test_settings).verify(tampered, headers)

        assert exc_info.value.error_code == "invalid_signature"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_notification_rejected(self, test_settings, binance_headers) -> None:
        body = self.body()
        sent_ms = 1_700_000_000_000
        verifier = BinancePayVerifier(test_settings, clock=lambda: sent_ms / 1000 + 3600)

        with pytest.raises(AuthenticationError) as exc_info:
            await verifier.verify(body, binance_headers(body, timestamp_ms=sent_ms))

        assert exc_info.value.error_code == "stale_notification"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_acknowledgement_format(self, test_settings, binance_headers) -> None:
        body = self.body()
        verifier = BinancePayVerifier(test_settings)
        result = await verifier.verify(body, binance_headers(body))

        assert verifier.acknowledgement(result) == {"returnCode": "SUCCESS", "returnMessage": None}


class TestPaystackVerifier:
    """Test suite for Paystack webhook verification."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_charge_success_is_confirmed(self, test_settings, paystack_signature) -> None:
        body = json.dumps(
            {"event": "charge.success", "data": {"id": 302961, "reference": "ref-123"}}
        ).encode()

        result = await PaystackVerifier(test_settings).verify(
            body, {"x-paystack-signature": paystack_signature(body)}
        )

        assert result.outcome is Outcome.CONFIRMED
        assert result.reference == "ref-123"
        assert result.provider_txn_id == "302961"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_terminal_event(self, test_settings, paystack_signature) -> None:
        body = json.dumps({"event": "transfer.success", "data": {"reference": "ref-1"}}).encode()

        result = await PaystackVerifier(test_settings).verify(
            body, {"X-Paystack-Signature": paystack_signature(body)}
        )

        assert result.outcome is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, test_settings) -> None:
        body = json.dumps({"event": "charge.success", "data": {"reference": "ref-1"}}).encode()

        with pytest.raises(AuthenticationError):
            await PaystackVerifier(test_settings).verify(body, {})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_signed_garbage_is_malformed(self, test_settings, paystack_signature) -> None:
        body = b"not json"

        with pytest.raises(ValidationError) as exc_info:
            await PaystackVerifier(test_settings).verify(
                body, {"x-paystack-signature": paystack_signature(body)}
            )

        assert exc_info.value.error_code == "malformed_payload"


class TestPesapalVerifier:
    """Test suite for Pesapal IPN verification via status lookup."""

    @staticmethod
    def ipn(tracking_id: str = "trk-1", reference: str = "ref-123") -> bytes:
        return json.dumps(
            {
                "OrderTrackingId": tracking_id,
                "OrderMerchantReference": reference,
                "OrderNotificationType": "IPNCHANGE",
            }
        ).encode()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_completed_status_is_confirmed(
        self, test_settings, http_client, provider_api
    ) -> None:
        provider_api.pesapal_status("trk-1", "ref-123", status_code=1)
        verifier = PesapalVerifier(test_settings, http_client=http_client)

        result = await verifier.verify(self.ipn(), {})

        assert result.outcome is Outcome.CONFIRMED
        assert result.reference == "ref-123"
        assert result.provider_txn_id == "CONF-trk-1"
        assert result.event == "IPNCHANGE:Completed"
        assert verifier.acknowledgement(result) == {
            "orderNotificationType": "IPNCHANGE",
            "orderTrackingId": "trk-1",
            "orderMerchantReference": "ref-123",
            "status": 200,
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_status_is_declined(self, test_settings, http_client, provider_api) -> None:
        provider_api.pesapal_status("trk-1", "ref-123", status_code=2, description="Failed")

        result = await PesapalVerifier(test_settings, http_client=http_client).verify(
            self.ipn(), {}
        )

        assert result.outcome is Outcome.DECLINED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_for_other_reference_rejected(
        self, test_settings, http_client, provider_api
    ) -> None:
        provider_api.pesapal_status("trk-1", "someone-elses-order")

        with pytest.raises(AuthenticationError) as exc_info:
            await PesapalVerifier(test_settings, http_client=http_client).verify(self.ipn(), {})

        assert exc_info.value.error_code == "reference_mismatch"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_tracking_id_is_malformed(self, test_settings, http_client) -> None:
        body = json.dumps({"OrderMerchantReference": "ref-123"}).encode()

        with pytest.raises(ValidationError):
            await PesapalVerifier(test_settings, http_client=http_client).verify(body, {})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_lookup_uses_bearer_token(
        self, test_settings, http_client, provider_api
    ) -> None:
        provider_api.pesapal_status("trk-1", "ref-123")

        await PesapalVerifier(test_settings, http_client=http_client).verify(self.ipn(), {})

        status_call = provider_api.requests[-1]
        assert status_call.url.path.endswith("/Transactions/GetTransactionStatus")
        assert status_call.url.params["orderTrackingId"] == "trk-1"
        assert status_call.headers["Authorization"] == "Bearer pesapal-token"


class TestWhopVerifier:
    """Test suite for Whop webhook verification."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_event_with_prefixed_signature(self, test_settings, whop_signature) -> None:
        body = json.dumps(
            {"action": "payment.succeeded", "data": {"id": "pay_1", "custom_id": "ref-123"}}
        ).encode()

        result = await WhopVerifier(test_settings).verify(
            body, {"X-Whop-Signature": f"sha256={whop_signature(body)}"}
        )

        assert result.outcome is Outcome.CONFIRMED
        assert result.reference == "ref-123"
        assert result.provider_txn_id == "pay_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_event_is_acknowledged_as_ignored(
        self, test_settings, whop_signature
    ) -> None:
        body = json.dumps({"event": "membership.updated", "data": {"custom_id": "ref-1"}}).encode()
        verifier = WhopVerifier(test_settings)

        result = await verifier.verify(body, {"x-whop-signature": whop_signature(body)})

        assert result.outcome is None
        assert verifier.acknowledgement(result) == {"ignored": True}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_failed_is_declined(self, test_settings, whop_signature) -> None:
        body = json.dumps({"event": "payment.failed", "data": {"custom_id": "ref-1"}}).encode()

        result = await WhopVerifier(test_settings).verify(
            body, {"X-Whop-Signature": whop_signature(body)}
        )

        assert result.outcome is Outcome.DECLINED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, test_settings) -> None:
        body = json.dumps({"event": "payment.succeeded", "data": {"custom_id": "ref-1"}}).encode()

        with pytest.raises(AuthenticationError):
            await WhopVerifier(test_settings).verify(body, {"X-Whop-Signature": "deadbeef"})
