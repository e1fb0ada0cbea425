"""
Prometheus metrics for payment settlement monitoring.

Tracks:
- Intent and verification requests by outcome
- Fraud signals by type
- Gateway API calls, errors and circuit breaker state
- Rate limiter decisions
- Settlement side effects
- Audit write failures
- Outbox queue depth
"""
from prometheus_client import Counter, Gauge, Histogram

# Intent metrics
payment_intents_total = Counter(
    "payment_intents_total",
    "Total payment intent requests",
    ["outcome"],  # created, idempotent, amount_mismatch, ...
)

payment_intent_duration_seconds = Histogram(
    "payment_intent_duration_seconds",
    "Payment intent creation duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 10.0, 30.0),
)

payment_amount_minor = Histogram(
    "payment_amount_minor",
    "Payment intent amounts in minor units",
    buckets=(100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

# Verification metrics
payment_verifications_total = Counter(
    "payment_verifications_total",
    "Total payment verification requests",
    ["outcome"],  # settled, duplicate, signature_invalid, expired, ...
)

fraud_signals_total = Counter(
    "fraud_signals_total",
    "Total fraud signals raised",
    ["signal"],
)

# Gateway API metrics
gateway_api_requests_total = Counter(
    "gateway_api_requests_total",
    "Total gateway API requests",
    ["operation", "status"],
)

gateway_api_errors_total = Counter(
    "gateway_api_errors_total",
    "Total gateway API errors",
    ["error_type"],  # timeout, connection, http_4xx, http_5xx, circuit_open
)

gateway_api_duration_seconds = Histogram(
    "gateway_api_duration_seconds",
    "Gateway API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 10.0, 30.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Rate limiter metrics
rate_limit_decisions_total = Counter(
    "rate_limit_decisions_total",
    "Rate limiter decisions",
    ["scope", "state"],  # clear, warned, blocked
)

rate_limit_write_conflicts_total = Counter(
    "rate_limit_write_conflicts_total",
    "Versioned rate limit writes that lost and were retried",
    ["scope"],
)

# Settlement metrics
settlement_side_effects_total = Counter(
    "settlement_side_effects_total",
    "Settlement side effects by kind and status",
    ["effect", "status"],  # order_update, loyalty_redemption, notification
)

audit_write_failures_total = Counter(
    "audit_write_failures_total",
    "Audit entries that could not be persisted",
    ["event_type"],
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

outbox_processing_duration_seconds = Histogram(
    "outbox_processing_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_intent(outcome: str, amount_minor: int = 0) -> None:
        """Record a payment intent request."""
        payment_intents_total.labels(outcome=outcome).inc()
        if amount_minor > 0:
            payment_amount_minor.observe(amount_minor)

    @staticmethod
    def record_intent_duration(duration_seconds: float) -> None:
        """Record payment intent creation duration."""
        payment_intent_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_verification(outcome: str) -> None:
        """Record a payment verification request."""
        payment_verifications_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_fraud_signal(signal: str) -> None:
        """Record a fraud signal."""
        fraud_signals_total.labels(signal=signal).inc()

    @staticmethod
    def record_gateway_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record gateway API call."""
        gateway_api_requests_total.labels(operation=operation, status=status).inc()
        gateway_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_api_error(error_type: str) -> None:
        """Record gateway API error."""
        gateway_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_rate_limit_decision(scope: str, state: str) -> None:
        """Record a rate limiter decision."""
        rate_limit_decisions_total.labels(scope=scope, state=state).inc()

    @staticmethod
    def record_rate_limit_conflict(scope: str) -> None:
        """Record a lost versioned write."""
        rate_limit_write_conflicts_total.labels(scope=scope).inc()

    @staticmethod
    def record_side_effect(effect: str, status: str) -> None:
        """Record a settlement side effect."""
        settlement_side_effects_total.labels(effect=effect, status=status).inc()

    @staticmethod
    def record_audit_write_failure(event_type: str) -> None:
        """Record an audit entry that failed to persist."""
        audit_write_failures_total.labels(event_type=event_type).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str, duration_seconds: float) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()
        outbox_processing_duration_seconds.observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
