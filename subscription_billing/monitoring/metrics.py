"""
Prometheus metrics for billing monitoring.

Tracks:
- Webhook notifications by provider and outcome
- Subscription transitions (activated, queued, promoted, reverted)
- Expiry sweep runs
- Withdrawal requests and decisions
- Provider API calls during checkout
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Webhook metrics
webhook_events_received_total = Counter(
    "billing_webhook_events_received_total",
    "Total webhook notifications received",
    ["provider"],
)

webhook_events_processed_total = Counter(
    "billing_webhook_events_processed_total",
    "Total webhook notifications processed",
    ["provider", "status"],  # activated, queued, declined, duplicate, ignored, rejected, error
)

webhook_processing_duration_seconds = Histogram(
    "billing_webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Subscription metrics
subscription_transitions_total = Counter(
    "billing_subscription_transitions_total",
    "Subscription state transitions",
    ["mode"],  # activated, queued, promoted, reverted
)

# Checkout metrics
checkouts_created_total = Counter(
    "billing_checkouts_created_total",
    "Payment intents created",
    ["provider", "plan"],
)

provider_api_requests_total = Counter(
    "billing_provider_api_requests_total",
    "Outbound provider API requests",
    ["provider", "operation", "status"],
)

provider_api_duration_seconds = Histogram(
    "billing_provider_api_duration_seconds",
    "Outbound provider API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

stripe_circuit_breaker_state = Gauge(
    "billing_stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Expiry sweep metrics
sweep_duration_seconds = Histogram(
    "billing_sweep_duration_seconds",
    "Expiry sweep duration in seconds",
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 300),
)

sweep_last_run_timestamp = Gauge(
    "billing_sweep_last_run_timestamp",
    "Timestamp of last expiry sweep",
)

sweep_lock_acquisitions_total = Counter(
    "billing_sweep_lock_acquisitions_total",
    "Sweep scheduling lock attempts",
    ["status"],  # acquired, busy, unlocked
)

# Withdrawal metrics
withdrawals_total = Counter(
    "billing_withdrawals_total",
    "Withdrawal requests and decisions",
    ["status"],  # requested, approved, denied
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_webhook_event(provider: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(provider=provider).inc()
        webhook_events_processed_total.labels(provider=provider, status=status).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(
            duration_seconds
        )

    @staticmethod
    def record_subscription_transition(mode: str, count: int = 1) -> None:
        if count > 0:
            subscription_transitions_total.labels(mode=mode).inc(count)

    @staticmethod
    def record_checkout(provider: str, plan_id: str) -> None:
        checkouts_created_total.labels(provider=provider, plan=plan_id).inc()

    @staticmethod
    def record_provider_api_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record an outbound provider API call."""
        provider_api_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        provider_api_duration_seconds.labels(
            provider=provider, operation=operation
        ).observe(duration_seconds)

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_sweep(promoted: int, reverted: int, duration_seconds: float) -> None:
        """Record an expiry sweep run."""
        MetricsCollector.record_subscription_transition("promoted", promoted)
        MetricsCollector.record_subscription_transition("reverted", reverted)
        sweep_duration_seconds.observe(duration_seconds)
        sweep_last_run_timestamp.set(time.time())

    @staticmethod
    def record_sweep_lock(status: str) -> None:
        sweep_lock_acquisitions_total.labels(status=status).inc()

    @staticmethod
    def record_withdrawal(status: str) -> None:
        withdrawals_total.labels(status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
