"""
Prometheus metrics for order, payment and inventory monitoring.

Tracks:
- Order creation outcomes and status transitions
- Stock reservation outcomes and expirations
- Webhook processing and payment confirmations
- Refunds
- Notification delivery and queue depth
- Background cleanup runs
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total number of orders created",
    ["payment_method"],
)

order_creation_failures_total = Counter(
    "order_creation_failures_total",
    "Total number of rejected or failed order creations",
    ["reason"],  # error code
)

order_creation_duration_seconds = Histogram(
    "order_creation_duration_seconds",
    "Order creation duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

order_value_cents = Histogram(
    "order_value_cents",
    "Order totals in cents",
    buckets=(500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

order_status_transitions_total = Counter(
    "order_status_transitions_total",
    "Total order status transitions",
    ["from_status", "to_status"],
)

order_conflicts_total = Counter(
    "order_conflicts_total",
    "Optimistic version or unique key conflicts",
    ["operation"],
)

# Inventory metrics
stock_reservations_total = Counter(
    "stock_reservations_total",
    "Stock reservation attempts",
    ["outcome"],  # reserved, insufficient
)

stock_reservation_terminations_total = Counter(
    "stock_reservation_terminations_total",
    "Reservations leaving the active state",
    ["status"],  # confirmed, released, expired
)

stock_restorations_total = Counter(
    "stock_restorations_total",
    "On-hand stock restorations after paid cancellations or refunds",
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # success, ignored, duplicate
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook payloads rejected for a bad signature",
    ["provider"],
)

# Payment metrics
payment_confirmations_total = Counter(
    "payment_confirmations_total",
    "Payment confirmation attempts",
    ["source", "outcome"],  # source: webhook, fallback; outcome: confirmed, already_paid
)

payment_failures_total = Counter(
    "payment_failures_total",
    "Payments marked failed",
)

refunds_total = Counter(
    "refunds_total",
    "Refunds applied",
    ["kind"],  # full, partial
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "status"],
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Notification metrics
notifications_total = Counter(
    "notifications_total",
    "Notification delivery outcomes",
    ["kind", "status"],  # delivered, failed, dropped
)

notification_queue_depth = Gauge(
    "notification_queue_depth",
    "Notifications waiting for a worker",
)

# Background job metrics
background_job_runs_total = Counter(
    "background_job_runs_total",
    "Background job runs",
    ["job", "status"],
)

background_job_items_total = Counter(
    "background_job_items_total",
    "Rows handled by background jobs",
    ["job"],
)

background_job_last_run_timestamp = Gauge(
    "background_job_last_run_timestamp",
    "Timestamp of last background job run",
    ["job"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(payment_method: str, total_cents: int, duration_seconds: float) -> None:
        """Record a created order."""
        orders_created_total.labels(payment_method=payment_method).inc()
        order_value_cents.observe(total_cents)
        order_creation_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_order_creation_failure(reason: str) -> None:
        """Record a rejected order creation."""
        order_creation_failures_total.labels(reason=reason).inc()

    @staticmethod
    def record_status_transition(from_status: str, to_status: str) -> None:
        """Record an order status transition."""
        order_status_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_conflict(operation: str) -> None:
        order_conflicts_total.labels(operation=operation).inc()

    @staticmethod
    def record_reservation(outcome: str) -> None:
        """Record a stock reservation attempt."""
        stock_reservations_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_reservation_terminated(status: str, count: int = 1) -> None:
        """Record reservations leaving the active state."""
        if count > 0:
            stock_reservation_terminations_total.labels(status=status).inc(count)

    @staticmethod
    def record_stock_restored() -> None:
        stock_restorations_total.inc()

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_webhook_signature_failure(provider: str) -> None:
        webhook_signature_failures_total.labels(provider=provider).inc()

    @staticmethod
    def record_payment_confirmation(source: str, outcome: str) -> None:
        """Record a payment confirmation attempt."""
        payment_confirmations_total.labels(source=source, outcome=outcome).inc()

    @staticmethod
    def record_payment_failure() -> None:
        payment_failures_total.inc()

    @staticmethod
    def record_refund(kind: str) -> None:
        refunds_total.labels(kind=kind).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record payment gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_notification(kind: str, status: str) -> None:
        """Record notification outcome."""
        notifications_total.labels(kind=kind, status=status).inc()

    @staticmethod
    def set_notification_queue_depth(depth: int) -> None:
        notification_queue_depth.set(depth)

    @staticmethod
    def record_background_job(job: str, status: str, items: int = 0) -> None:
        """Record a background job run."""
        background_job_runs_total.labels(job=job, status=status).inc()
        if items > 0:
            background_job_items_total.labels(job=job).inc(items)
        background_job_last_run_timestamp.labels(job=job).set(time.time())


# Export singleton instance
metrics = MetricsCollector()
