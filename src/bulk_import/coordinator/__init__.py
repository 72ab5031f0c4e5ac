"""Import coordinator

Core producer→queue→planner→executor→store pipeline with:
- BoundedQueue (watermarks, blocking/erroring overflow, close/abort)
- BatchPlanner (size/count packing + partition-affinity rebalancing)
- ThroughputGovernor (RCU token bucket + per-partition cooldown)
- PipelineExecutor (worker pool, retry/shrink, cost telemetry)
- RetryPolicy with exponential backoff
- Dead Letter Queue (file-based NDJSON)
- Environment-based settings
- Prometheus metrics
"""

from .types import (
    BackpressureCallback,
    DocumentStore,
    ProgressCallback,
    QueueClosed,
    QueueFullError,
    T,
)
from .policy import RetryPolicy, default_retry_classifier
from .queue import BoundedQueue
from .planner import BatchPlanner, document_size
from .governor import ThroughputGovernor
from .telemetry import RunResult, RunTelemetry
from .executor import PipelineExecutor
from .pipeline import ImportPipeline, PipelineHealth, import_documents, resolve_capacity
from .settings import ImportRuntimeSettings, get_settings
from .dlq import DeadLetterQueue, DLQRecord

__all__ = [
    # types
    "BackpressureCallback",
    "DocumentStore",
    "ProgressCallback",
    "QueueClosed",
    "QueueFullError",
    "T",
    "PipelineHealth",
    "RunResult",
    "DLQRecord",
    # policies
    "RetryPolicy",
    "default_retry_classifier",
    # core
    "BatchPlanner",
    "document_size",
    "ThroughputGovernor",
    "RunTelemetry",
    # runtime
    "BoundedQueue",
    "PipelineExecutor",
    "ImportPipeline",
    "import_documents",
    "resolve_capacity",
    "ImportRuntimeSettings",
    "get_settings",
    # tooling
    "DeadLetterQueue",
]
