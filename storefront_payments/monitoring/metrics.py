"""
Prometheus metrics for the order/payment flow.

Tracks:
- Orders created
- Payment initiations by method and outcome
- Gateway call latency, errors and circuit breaker state
- Callback deliveries, outcomes and signature failures
- Reconciliation discrepancies
- Attempt guard blocks
- Expired payments
"""
from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total number of orders created",
    ["currency"],
)

order_amount_cents = Histogram(
    "order_amount_cents",
    "Order totals in minor units",
    buckets=(500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

order_status_transitions_total = Counter(
    "order_status_transitions_total",
    "Total order status transitions",
    ["from_status", "to_status"],
)

# Payment initiation metrics
payment_initiations_total = Counter(
    "payment_initiations_total",
    "Total payment initiation attempts",
    ["method", "outcome"],  # redirected, pending, unconfirmed, rejected
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total outbound gateway requests",
    ["operation", "status"],
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total outbound gateway errors",
    ["error_type"],  # timeout, connect, rejected, circuit_open
)

gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Outbound gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Callback metrics
callbacks_received_total = Counter(
    "callbacks_received_total",
    "Total gateway callbacks received",
    ["path"],  # dedicated, root
)

callbacks_processed_total = Counter(
    "callbacks_processed_total",
    "Total gateway callbacks by outcome",
    ["outcome"],  # processed, duplicate, ignored, pending, rejected, malformed
)

callback_signature_failures_total = Counter(
    "callback_signature_failures_total",
    "Total callbacks rejected for a bad signature",
)

callback_processing_duration_seconds = Histogram(
    "callback_processing_duration_seconds",
    "Callback processing duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Reconciliation metrics
reconciliation_discrepancies_total = Counter(
    "reconciliation_discrepancies_total",
    "Total discrepancies recorded for manual review",
    ["kind"],
)

# Attempt guard metrics
attempt_guard_blocks_total = Counter(
    "attempt_guard_blocks_total",
    "Total requests refused by the attempt guard",
    ["scope"],
)

# Expiry metrics
payments_expired_total = Counter(
    "payments_expired_total",
    "Total pending payments expired by the sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(currency: str, total_cents: int) -> None:
        """Record a created order."""
        orders_created_total.labels(currency=currency).inc()
        order_amount_cents.observe(total_cents)

    @staticmethod
    def record_order_transition(from_status: str, to_status: str) -> None:
        """Record an order status transition."""
        order_status_transitions_total.labels(
            from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def record_payment_initiation(method: str, outcome: str) -> None:
        """Record a payment initiation attempt."""
        payment_initiations_total.labels(method=method, outcome=outcome).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record an outbound gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_request_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record an outbound gateway error."""
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_callback_received(path: str) -> None:
        """Record an inbound callback delivery."""
        callbacks_received_total.labels(path=path).inc()

    @staticmethod
    def record_callback_outcome(outcome: str, duration_seconds: float = 0) -> None:
        """Record how a callback was handled."""
        callbacks_processed_total.labels(outcome=outcome).inc()
        if duration_seconds > 0:
            callback_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_signature_failure() -> None:
        """Record a callback rejected for a bad signature."""
        callback_signature_failures_total.inc()

    @staticmethod
    def record_discrepancy(kind: str) -> None:
        """Record a discrepancy written for manual review."""
        reconciliation_discrepancies_total.labels(kind=kind).inc()

    @staticmethod
    def record_attempt_blocked(scope: str) -> None:
        """Record a request refused by the attempt guard."""
        attempt_guard_blocks_total.labels(scope=scope).inc()

    @staticmethod
    def record_payments_expired(count: int) -> None:
        """Record payments expired by a sweep."""
        if count:
            payments_expired_total.inc(count)


# Export singleton instance
metrics = MetricsCollector()
