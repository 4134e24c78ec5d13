"""Prometheus metrics for monitoring workflow throughput, failures and bulk outcomes"""

from prometheus_client import Counter, Histogram

# Transition metrics
transition_counter = Counter(
    "koperasi_transition_total",
    "Application state transitions",
    ["kind", "action", "outcome"],  # outcome: approved | rejected | revised | cancelled | ...
)

# Failures surfaced to callers, by error category
operation_error_counter = Counter(
    "koperasi_operation_errors_total",
    "Workflow operations that ended in a domain error",
    ["operation", "category"],
)

# Bulk operations
bulk_item_counter = Counter(
    "koperasi_bulk_items_total",
    "Items processed by bulk operations",
    ["operation", "outcome"],  # succeeded | failed
)

operation_duration_histogram = Histogram(
    "koperasi_operation_duration_seconds",
    "Workflow operation latency",
    ["operation"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
)


def record_transition(kind: str, action: str, outcome: str) -> None:
    """Count one committed transition"""
    transition_counter.labels(kind=kind, action=action, outcome=outcome).inc()


def record_error(operation: str, category: str) -> None:
    operation_error_counter.labels(operation=operation, category=category).inc()


def record_bulk_item(operation: str, succeeded: bool) -> None:
    outcome = "succeeded" if succeeded else "failed"
    bulk_item_counter.labels(operation=operation, outcome=outcome).inc()
