"""
Prometheus metrics for payment settlement monitoring.

Tracks:
- Payment creations by method and outcome
- State transitions
- Gateway calls, errors and latency
- Webhook events and signature failures
- Exchange-rate cache usage
- Optimistic-lock conflicts
- Outbox queue depth
"""
from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payment_creations_total = Counter(
    "payment_creations_total",
    "Total payment creation attempts",
    ["method", "outcome"],  # outcome: created, rejected, failed
)

payment_creation_duration_seconds = Histogram(
    "payment_creation_duration_seconds",
    "Payment creation duration in seconds",
    ["method"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

payment_state_transitions_total = Counter(
    "payment_state_transitions_total",
    "Total payment state transitions",
    ["method", "from_status", "to_status"],
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total gateway API requests",
    ["provider", "operation", "status"],
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total gateway API errors",
    ["provider", "error_type"],  # transient, permanent, rate_limit
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Gateway API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["method", "status"],  # applied, duplicate, audited, not_found, failed
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Total webhook deliveries rejected for an invalid signature",
    ["method"],
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["method"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Exchange-rate metrics
exchange_rate_lookups_total = Counter(
    "exchange_rate_lookups_total",
    "Total exchange-rate lookups",
    ["pair", "source"],  # source: cache, shared_cache, fresh, stale, unavailable
)

# Concurrency metrics
payment_update_conflicts_total = Counter(
    "payment_update_conflicts_total",
    "Total conditional updates lost to a concurrent writer",
    ["operation"],
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

outbox_delivery_failures_total = Counter(
    "outbox_delivery_failures_total",
    "Total failed outbox deliveries",
    ["event_type", "outcome"],  # outcome: retry, parked
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_creation(method: str, outcome: str, duration_seconds: float) -> None:
        """Record a payment creation attempt."""
        payment_creations_total.labels(method=method, outcome=outcome).inc()
        payment_creation_duration_seconds.labels(method=method).observe(duration_seconds)

    @staticmethod
    def record_state_transition(method: str, from_status: str, to_status: str) -> None:
        """Record a payment state transition."""
        payment_state_transitions_total.labels(
            method=method, from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def record_gateway_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record gateway API call."""
        gateway_requests_total.labels(provider=provider, operation=operation, status=status).inc()
        gateway_duration_seconds.labels(provider=provider, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_gateway_error(provider: str, error_type: str) -> None:
        """Record gateway API error."""
        gateway_errors_total.labels(provider=provider, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(method: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(method=method, status=status).inc()
        webhook_processing_duration_seconds.labels(method=method).observe(duration_seconds)

    @staticmethod
    def record_webhook_signature_failure(method: str) -> None:
        """Record a rejected webhook signature."""
        webhook_signature_failures_total.labels(method=method).inc()

    @staticmethod
    def record_exchange_rate_lookup(pair: str, source: str) -> None:
        """Record where an exchange rate was served from."""
        exchange_rate_lookups_total.labels(pair=pair, source=source).inc()

    @staticmethod
    def record_update_conflict(operation: str) -> None:
        """Record a lost conditional update."""
        payment_update_conflicts_total.labels(operation=operation).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str, duration_seconds: float) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()
        outbox_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_outbox_delivery_failure(event_type: str, parked: bool) -> None:
        """Record a failed outbox delivery."""
        outbox_delivery_failures_total.labels(
            event_type=event_type, outcome="parked" if parked else "retry"
        ).inc()


# Export singleton instance
metrics = MetricsCollector()
