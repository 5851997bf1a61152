"""
Prometheus metrics for checkout monitoring.

Tracks:
- Orders created and fingerprint collisions
- Deposit webhook outcomes (matched, duplicate, unmatched)
- Payout outcomes
- Provider API calls and errors
- Withdrawal status refreshes
- Outbox queue depth
"""
from prometheus_client import Counter, Gauge, Histogram

# Checkout metrics
orders_created_total = Counter(
    "checkout_orders_created_total",
    "Total number of orders created",
)

order_total_micros = Histogram(
    "checkout_order_total_micros",
    "Order totals in micro-units",
    buckets=(
        500_000,
        1_000_000,
        5_000_000,
        10_000_000,
        50_000_000,
        100_000_000,
        500_000_000,
        1_000_000_000,
    ),
)

fingerprint_collisions_total = Counter(
    "checkout_fingerprint_collisions_total",
    "Total fingerprint collisions during allocation",
    ["stage"],  # precheck, insert
)

fingerprint_allocation_exhausted_total = Counter(
    "checkout_fingerprint_allocation_exhausted_total",
    "Checkouts that ran out of fingerprint attempts",
)

# Deposit metrics
deposits_total = Counter(
    "checkout_deposits_total",
    "Deposit events handled",
    ["outcome"],  # matched, duplicate, unmatched, race_lost
)

# Payout metrics
payouts_total = Counter(
    "checkout_payouts_total",
    "Payout conversions by outcome",
    ["outcome"],  # executing, failed, skipped, cancelled, stranded
)

withdrawal_refreshes_total = Counter(
    "checkout_withdrawal_refreshes_total",
    "Withdrawal status refreshes by resulting status",
    ["status"],  # completed, failed, unchanged, error
)

# Provider API metrics
provider_api_requests_total = Counter(
    "provider_api_requests_total",
    "Total payment provider API requests",
    ["operation", "status"],
)

provider_api_errors_total = Counter(
    "provider_api_errors_total",
    "Total payment provider API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

provider_api_duration_seconds = Histogram(
    "provider_api_duration_seconds",
    "Payment provider API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

provider_circuit_breaker_state = Gauge(
    "provider_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_total = Counter(
    "webhook_events_total",
    "Total webhook events received",
    ["event_type", "status"],
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(total_micros: int) -> None:
        orders_created_total.inc()
        order_total_micros.observe(total_micros)

    @staticmethod
    def record_fingerprint_collision(stage: str) -> None:
        fingerprint_collisions_total.labels(stage=stage).inc()

    @staticmethod
    def record_allocation_exhausted() -> None:
        fingerprint_allocation_exhausted_total.inc()

    @staticmethod
    def record_deposit(outcome: str) -> None:
        deposits_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_payout(outcome: str) -> None:
        payouts_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_withdrawal_refresh(status: str) -> None:
        withdrawal_refreshes_total.labels(status=status).inc()

    @staticmethod
    def record_provider_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record payment provider API call."""
        provider_api_requests_total.labels(operation=operation, status=status).inc()
        provider_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_provider_api_error(error_type: str) -> None:
        provider_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        outbox_events_published_total.labels(event_type=event_type).inc()


# Export singleton instance
metrics = MetricsCollector()
