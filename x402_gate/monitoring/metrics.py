"""
Prometheus metrics for payment gate monitoring.

Tracks:
- Verification outcomes and duration
- Ledger RPC calls, errors and circuit breaker state
- Dedup store failures (persistence degraded)
- Processed transaction count
- Rollbacks
"""
from prometheus_client import Counter, Gauge, Histogram

# Verification metrics
payment_verifications_total = Counter(
    "payment_verifications_total",
    "Total payment verifications",
    ["outcome"],  # accepted, or an ErrorKind value
)

payment_verification_duration_seconds = Histogram(
    "payment_verification_duration_seconds",
    "Payment verification duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

payment_rollbacks_total = Counter(
    "payment_rollbacks_total",
    "Total rollbacks of accepted payments",
    ["status"],  # removed, absent
)

# Ledger RPC metrics
ledger_rpc_requests_total = Counter(
    "ledger_rpc_requests_total",
    "Total ledger RPC requests",
    ["operation", "status"],  # status: found, not_found, error
)

ledger_rpc_duration_seconds = Histogram(
    "ledger_rpc_duration_seconds",
    "Ledger RPC call duration in seconds",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

ledger_circuit_breaker_state = Gauge(
    "ledger_circuit_breaker_state",
    "Ledger circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Dedup store metrics
dedup_store_errors_total = Counter(
    "dedup_store_errors_total",
    "Dedup store failures that left persistence degraded",
    ["backend", "operation"],  # operation: load, add, remove, clear
)

processed_transactions = Gauge(
    "processed_transactions",
    "Number of transaction references in the processed set",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_verification(outcome: str, duration_seconds: float) -> None:
        """Record a verification outcome."""
        payment_verifications_total.labels(outcome=outcome).inc()
        payment_verification_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_rollback(removed: bool) -> None:
        """Record a rollback request."""
        payment_rollbacks_total.labels(status="removed" if removed else "absent").inc()

    @staticmethod
    def record_ledger_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a ledger RPC call."""
        ledger_rpc_requests_total.labels(operation=operation, status=status).inc()
        ledger_rpc_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        ledger_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_dedup_store_error(backend: str, operation: str) -> None:
        """Record a dedup store failure."""
        dedup_store_errors_total.labels(backend=backend, operation=operation).inc()

    @staticmethod
    def set_processed_count(count: int) -> None:
        """Set processed transaction count."""
        processed_transactions.set(count)


# Export singleton instance
metrics = MetricsCollector()
