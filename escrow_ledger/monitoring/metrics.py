"""
Prometheus metrics for the escrow lifecycle.

Tracks:
- Booking / payment / payout transitions
- Webhook events by source, type and outcome
- Ledger postings
- Payout provider calls and circuit breaker state
- Auto-confirm sweep runs
- Reconciliation violations
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Transition metrics
escrow_transitions_total = Counter(
    "escrow_transitions_total",
    "Applied state transitions",
    ["entity", "to_status"],
)

escrow_commands_total = Counter(
    "escrow_commands_total",
    "Service commands by outcome",
    ["command", "outcome"],  # applied, noop, duplicate, rejected
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["source", "event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["source", "event_type", "outcome"],
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries rejected by signature verification",
    ["source"],
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["source"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_dedup_hits_total = Counter(
    "webhook_dedup_hits_total",
    "Duplicate webhook deliveries detected",
    ["layer"],  # redis, database
)

# Payout provider metrics
payout_api_requests_total = Counter(
    "payout_api_requests_total",
    "Total payout provider API requests",
    ["operation", "status"],
)

payout_api_duration_seconds = Histogram(
    "payout_api_duration_seconds",
    "Payout provider API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

payout_circuit_breaker_state = Gauge(
    "payout_circuit_breaker_state",
    "Payout provider circuit breaker state (0=closed, 1=open, 2=half_open)",
)

payout_amount_minor = Histogram(
    "payout_amount_minor",
    "Payout amounts in minor units",
    buckets=(500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

ledger_postings_total = Counter(
    "ledger_postings_total",
    "Ledger postings by kind",
    ["kind", "outcome"],  # capture/release/refund; posted, skipped
)

# Auto-confirm sweep metrics
auto_confirm_runs_total = Counter(
    "auto_confirm_runs_total",
    "Auto-confirm sweep runs",
)

auto_confirm_completed_total = Counter(
    "auto_confirm_completed_total",
    "Bookings completed by the auto-confirm sweep",
)

auto_confirm_duration_seconds = Histogram(
    "auto_confirm_duration_seconds",
    "Auto-confirm sweep duration in seconds",
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0),
)

# Reconciliation metrics
reconciliation_violations = Gauge(
    "reconciliation_violations",
    "Invariant violations found by the last reconciliation run",
    ["code"],
)

reconciliation_violations_total = Gauge(
    "reconciliation_violations_total",
    "Total violations found by the last reconciliation run",
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation run duration in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300, 600),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_transition(entity: str, to_status: str) -> None:
        escrow_transitions_total.labels(entity=entity, to_status=to_status).inc()

    @staticmethod
    def record_command(command: str, outcome: str) -> None:
        escrow_commands_total.labels(command=command, outcome=outcome).inc()

    @staticmethod
    def record_webhook_event(
        source: str, event_type: str, outcome: str, duration_seconds: float
    ) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(source=source, event_type=event_type).inc()
        webhook_events_processed_total.labels(
            source=source, event_type=event_type, outcome=outcome
        ).inc()
        webhook_processing_duration_seconds.labels(source=source).observe(duration_seconds)

    @staticmethod
    def record_signature_failure(source: str) -> None:
        webhook_signature_failures_total.labels(source=source).inc()

    @staticmethod
    def record_dedup_hit(layer: str) -> None:
        webhook_dedup_hits_total.labels(layer=layer).inc()

    @staticmethod
    def record_payout_api_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record payout provider API call."""
        payout_api_requests_total.labels(operation=operation, status=status).inc()
        payout_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_payout_created(amount_minor: int) -> None:
        payout_amount_minor.observe(amount_minor)

    @staticmethod
    def record_ledger_posting(kind: str, outcome: str) -> None:
        ledger_postings_total.labels(kind=kind, outcome=outcome).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        payout_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_sweep(completed: int, duration_seconds: float) -> None:
        """Record an auto-confirm sweep run."""
        auto_confirm_runs_total.inc()
        auto_confirm_completed_total.inc(completed)
        auto_confirm_duration_seconds.observe(duration_seconds)

    @staticmethod
    def set_reconciliation_metrics(counts_by_code: dict[str, int], duration_seconds: float) -> None:
        """Set reconciliation metrics."""
        for code, count in counts_by_code.items():
            reconciliation_violations.labels(code=code).set(count)
        reconciliation_violations_total.set(sum(counts_by_code.values()))
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
