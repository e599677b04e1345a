"""
Stripe API client with retry logic and error classification.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Checkout Session creation carrying the intent reference
"""
import asyncio
import time
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from subscription_billing.config import Settings
from subscription_billing.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class StripeError(Exception):
    """Base exception for Stripe-related errors."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type is not StripeErrorType.PERMANENT


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Stops calling Stripe for ``timeout`` seconds after ``failure_threshold``
    consecutive failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Raises:
            StripeError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise StripeError("Circuit breaker is open", StripeErrorType.TRANSIENT)

    def on_success(self) -> None:
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold and self.state != "open":
            self._set_state("open")
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeError) and error.retryable


class StripeClient:
    """Wrapper for the Stripe API used by card checkout."""

    def __init__(self, settings: Settings, circuit_breaker: Optional[CircuitBreaker] = None):
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info("stripe_client_initialized", api_version=stripe.api_version)

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (stripe.CardError, stripe.InvalidRequestError, stripe.AuthenticationError),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    async def _call(self, operation: str, func: Any, **kwargs: Any) -> Any:
        self.circuit_breaker.before_call()
        start_time = time.time()
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, lambda: func(**kwargs))
        except stripe.StripeError as e:
            self.circuit_breaker.on_failure()
            error_type = self._classify_error(e)
            metrics.record_provider_api_call(
                "stripe", operation, error_type.value, time.time() - start_time
            )
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise StripeError(str(e), error_type, original_error=e) from e

        self.circuit_breaker.on_success()
        metrics.record_provider_api_call("stripe", operation, "success", time.time() - start_time)
        return result

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def create_checkout_session(
        self,
        reference: str,
        amount: Decimal,
        currency: str,
        product_name: str,
        customer_email: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Any:
        """
        Create a one-off Checkout Session for a payment intent.

        The reference travels as ``client_reference_id`` and in metadata so both
        session and payment intent events can be correlated.

        Raises:
            StripeError: If session creation fails
        """
        logger.info("creating_checkout_session", reference=reference, amount=str(amount))

        session = await self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            mode="payment",
            client_reference_id=reference,
            customer_email=customer_email,
            line_items=[
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": int(amount * 100),
                        "product_data": {"name": product_name},
                    },
                }
            ],
            metadata={"reference": reference, **(metadata or {})},
            payment_intent_data={"metadata": {"reference": reference}},
            success_url=self.settings.stripe_success_url,
            cancel_url=self.settings.stripe_cancel_url,
            idempotency_key=f"checkout-{reference}",
        )

        logger.info("checkout_session_created", reference=reference, session_id=session.id)
        return session
