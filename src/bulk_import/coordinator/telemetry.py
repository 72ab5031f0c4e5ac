"""
Run telemetry: an order-independent accumulator shared by every worker.

Workers only ever add to it (sums and counts), so no ordering discipline is
needed beyond each update being applied whole. Prometheus counters are bumped
alongside for scraping.
"""

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock

from ..metrics.registry import (
    IMPORT_BATCH_LATENCY_SECONDS,
    IMPORT_DOCUMENTS_TOTAL,
    IMPORT_RCU_TOTAL,
    IMPORT_REJECTIONS_TOTAL,
)


@dataclass(frozen=True)
class RunResult:
    """Outcome of an executor run.

    ``documents_written`` and ``total_cost`` only include successful batches.
    """

    documents_written: int = 0
    total_cost: float = 0.0
    batches_succeeded: int = 0
    batches_failed: int = 0
    documents_failed: int = 0
    documents_dropped: int = 0
    documents_requeued: int = 0
    rejections: int = 0
    elapsed: float = 0.0

    @property
    def batches_completed(self) -> int:
        return self.batches_succeeded + self.batches_failed

    @property
    def rcu_per_second(self) -> float:
        return self.total_cost / self.elapsed if self.elapsed > 0 else 0.0


class RunTelemetry:
    def __init__(self, pipeline_id: str = "import"):
        self._pipeline = pipeline_id
        self._lock = Lock()
        self._written = 0
        self._cost = 0.0
        self._ok = 0
        self._failed = 0
        self._docs_failed = 0
        self._dropped = 0
        self._requeued = 0
        self._rejections = 0

    @property
    def batches_completed(self) -> int:
        return self._ok + self._failed

    def record_success(self, documents: int, cost: float, latency: float) -> None:
        with self._lock:
            self._written += documents
            self._cost += cost
            self._ok += 1
        IMPORT_DOCUMENTS_TOTAL.labels(self._pipeline, "written").inc(documents)
        IMPORT_RCU_TOTAL.labels(self._pipeline).inc(cost)
        IMPORT_BATCH_LATENCY_SECONDS.labels(self._pipeline, "success").observe(latency)

    def record_failure(self, documents: int, latency: float) -> None:
        with self._lock:
            self._failed += 1
            self._docs_failed += documents
        IMPORT_DOCUMENTS_TOTAL.labels(self._pipeline, "failed").inc(documents)
        IMPORT_BATCH_LATENCY_SECONDS.labels(self._pipeline, "failure").observe(latency)

    def record_dropped(self, documents: int) -> None:
        with self._lock:
            self._dropped += documents
        IMPORT_DOCUMENTS_TOTAL.labels(self._pipeline, "dropped").inc(documents)

    def record_requeued(self, documents: int) -> None:
        with self._lock:
            self._requeued += documents

    def record_rejection(self) -> None:
        with self._lock:
            self._rejections += 1
        IMPORT_REJECTIONS_TOTAL.labels(self._pipeline).inc()

    def snapshot(self, elapsed: float = 0.0) -> RunResult:
        with self._lock:
            return RunResult(
                documents_written=self._written,
                total_cost=self._cost,
                batches_succeeded=self._ok,
                batches_failed=self._failed,
                documents_failed=self._docs_failed,
                documents_dropped=self._dropped,
                documents_requeued=self._requeued,
                rejections=self._rejections,
                elapsed=elapsed,
            )
