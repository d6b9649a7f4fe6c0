"""
Prometheus metrics for the replica work queue and reconcile workers.

Provides observability into key processing and retries.
"""
from prometheus_client import Counter, Histogram, Gauge

# Queue metrics
queue_depth = Gauge(
    "longhorn_replica_queue_depth",
    "Number of replica keys waiting in the work queue",
)

queue_adds_total = Counter(
    "longhorn_replica_queue_adds_total",
    "Total number of keys added to the work queue",
)

queue_retries_total = Counter(
    "longhorn_replica_queue_retries_total",
    "Total number of rate limited re-adds after a failed sync",
)

queue_drops_total = Counter(
    "longhorn_replica_queue_drops_total",
    "Total number of keys dropped after exhausting retries",
)

# Sync metrics
sync_duration_seconds = Histogram(
    "longhorn_replica_sync_duration_seconds",
    "Time spent in a single replica sync",
    ["result"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)

workers_busy = Gauge(
    "longhorn_replica_workers_busy",
    "Number of workers currently reconciling a key",
)

# Errors handed to the process-wide reporter
errors_reported_total = Counter(
    "longhorn_replica_errors_reported_total",
    "Total number of errors reported after a key was dropped or a worker failed",
    ["error_type"],
)


def record_sync(duration_seconds: float, success: bool) -> None:
    """Record one sync attempt."""
    sync_duration_seconds.labels(result="success" if success else "error").observe(duration_seconds)
