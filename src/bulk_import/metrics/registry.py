"""
Prometheus metrics for the import pipeline, registered in the global REGISTRY.
Import this module (or anything from bulk_import.coordinator) at app startup.
"""

from prometheus_client import Counter, Gauge, Histogram


# --- Executor Metrics ---

IMPORT_DOCUMENTS_TOTAL = Counter(
    "bulk_import_documents_total",
    "Documents processed by the import executor",
    ["pipeline", "outcome"],  # outcome: written | failed | dropped
)

IMPORT_RCU_TOTAL = Counter(
    "bulk_import_rcu_total",
    "Request cost units charged by the store for successful batches",
    ["pipeline"],
)

IMPORT_BATCH_LATENCY_SECONDS = Histogram(
    "bulk_import_batch_latency_seconds",
    "Wall time from first attempt to batch completion",
    ["pipeline", "outcome"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120],
)

IMPORT_REJECTIONS_TOTAL = Counter(
    "bulk_import_rejections_total",
    "Admission-control rejections returned by the store",
    ["pipeline"],
)

# --- Governor / Queue Metrics ---

GOVERNOR_WAIT_SECONDS = Histogram(
    "bulk_import_governor_wait_seconds",
    "Time callers were suspended inside the throughput governor",
    ["reason"],  # credit | cooldown | backpressure
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5],
)

INGEST_QUEUE_DEPTH = Gauge(
    "bulk_import_ingest_queue_depth",
    "Documents waiting in the ingest queue",
    ["pipeline"],
)


class MetricsRegistry:
    """Centralized access to the import pipeline metrics."""

    documents_total = IMPORT_DOCUMENTS_TOTAL
    rcu_total = IMPORT_RCU_TOTAL
    batch_latency_seconds = IMPORT_BATCH_LATENCY_SECONDS
    rejections_total = IMPORT_REJECTIONS_TOTAL
    governor_wait_seconds = GOVERNOR_WAIT_SECONDS
    ingest_queue_depth = INGEST_QUEUE_DEPTH


# Singleton instance
metrics_registry = MetricsRegistry()
