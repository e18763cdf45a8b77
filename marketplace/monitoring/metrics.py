"""
Prometheus metrics for order and payment reconciliation monitoring.

Tracks:
- Orders created
- Payment intents created
- Reconciliation outcomes per completion channel
- Optimistic-concurrency conflicts
- Webhook events and rejections
- Payment gateway calls and errors
"""
from prometheus_client import Counter, Histogram

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total number of orders created",
    ["currency"],
)

order_total_cents = Histogram(
    "order_total_cents",
    "Order totals in cents",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

order_transitions_total = Counter(
    "order_transitions_total",
    "Order status transitions applied",
    ["from_status", "to_status"],
)

payment_intents_created_total = Counter(
    "payment_intents_created_total",
    "Total payment intents created for orders",
    ["currency"],
)

# Reconciliation metrics
reconciliation_outcomes_total = Counter(
    "reconciliation_outcomes_total",
    "Reconciliation results by channel",
    ["channel", "outcome"],  # channel: confirm, webhook; outcome: applied, duplicate, rejected
)

reconciliation_version_conflicts_total = Counter(
    "reconciliation_version_conflicts_total",
    "Versioned saves that lost to a concurrent writer",
)

double_payments_detected_total = Counter(
    "double_payments_detected_total",
    "Second distinct payment intents seen for an already bound order",
)

payments_for_cancelled_orders_total = Counter(
    "payments_for_cancelled_orders_total",
    "Succeeded payments reported for orders already cancelled (manual review)",
    ["channel"],
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # applied, duplicate, payment_failed, ignored, payment_for_cancelled_order
)

webhook_rejections_total = Counter(
    "webhook_rejections_total",
    "Webhook deliveries rejected without state change",
    ["reason"],  # invalid_signature, amount_mismatch, cancelled_order
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

payment_failures_total = Counter(
    "payment_failures_total",
    "Payment failure events reported by the gateway",
)

# Gateway API metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "status"],  # operation: create_intent, retrieve_intent, verify_webhook
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total payment gateway errors",
    ["error_type"],  # transient, permanent, rate_limit, timeout
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(currency: str, total_cents: int) -> None:
        """Record an order creation."""
        orders_created_total.labels(currency=currency).inc()
        order_total_cents.observe(total_cents)

    @staticmethod
    def record_transition(from_status: str, to_status: str) -> None:
        """Record an applied status transition."""
        order_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_payment_intent_created(currency: str) -> None:
        """Record a payment intent bound to an order."""
        payment_intents_created_total.labels(currency=currency).inc()

    @staticmethod
    def record_reconciliation(channel: str, outcome: str) -> None:
        """Record the outcome of a completion signal."""
        reconciliation_outcomes_total.labels(channel=channel, outcome=outcome).inc()

    @staticmethod
    def record_version_conflict() -> None:
        """Record a lost optimistic-concurrency race."""
        reconciliation_version_conflicts_total.inc()

    @staticmethod
    def record_double_payment() -> None:
        """Record a detected double payment."""
        double_payments_detected_total.inc()

    @staticmethod
    def record_payment_for_cancelled_order(channel: str) -> None:
        """Record a captured payment that arrived after cancellation."""
        payments_for_cancelled_orders_total.labels(channel=channel).inc()

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_webhook_rejection(reason: str) -> None:
        """Record a webhook rejected without mutation."""
        webhook_rejections_total.labels(reason=reason).inc()

    @staticmethod
    def record_payment_failure() -> None:
        """Record a gateway-reported payment failure."""
        payment_failures_total.inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a payment gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record a payment gateway error."""
        gateway_errors_total.labels(error_type=error_type).inc()


# Export singleton instance
metrics = MetricsCollector()
