"""
Import pipeline: producer → ingest queue → planner → executor → store.

The producer side suspends when the ingest queue is full or when too many
parsed-but-unwritten bytes are buffered; the planner stage turns queue output
into batches (``batch_size`` documents, or fewer after ``flush_interval`` of
idleness); the executor writes them through the throughput governor.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple, Union

from loguru import logger

from ..errors import FatalConfiguration, SizingFailure
from ..metrics.registry import INGEST_QUEUE_DEPTH
from ..models import Batch, Document
from .dlq import DeadLetterQueue
from .executor import PipelineExecutor
from .governor import ThroughputGovernor
from .planner import BatchPlanner
from .policy import RetryPolicy
from .queue import BoundedQueue
from .settings import ImportRuntimeSettings, get_settings
from .telemetry import RunResult
from .types import BackpressureCallback, DocumentStore, ProgressCallback, QueueClosed

DEFAULT_CAPACITY = 50_000


@dataclass(frozen=True)
class PipelineHealth:
    running: bool
    ingest_size: int
    ingest_capacity: int
    batches_queued: int
    active_batches: int
    completed_batches: int
    documents_written: int
    buffered_bytes: int
    remaining_credits: float


async def resolve_capacity(
    store: DocumentStore, configured: Optional[int] = None, fallback: int = DEFAULT_CAPACITY
) -> int:
    """Provisioned RCU/s for the run, read once at startup.

    A configured value wins. An unreadable capacity falls back to ``fallback``;
    FatalConfiguration from the store aborts before any batch is dispatched.
    """
    if configured is not None:
        if configured <= 0:
            raise FatalConfiguration(f"ru_capacity must be > 0, got {configured}")
        return int(configured)
    try:
        capacity = await store.read_provisioned_capacity()
    except FatalConfiguration:
        raise
    except Exception as exc:
        logger.warning(
            f"Could not read provisioned capacity ({type(exc).__name__}: {exc}); "
            f"using fallback {fallback:,} RCU/s"
        )
        return fallback
    if not capacity or capacity <= 0:
        logger.warning(f"Store reported no provisioned capacity; using fallback {fallback:,} RCU/s")
        return fallback
    logger.info(f"Starting processing with {capacity:,} RCU/s capacity")
    return int(capacity)


class ImportPipeline:
    """Streaming bulk import with backpressure.

    Example:
        async with await ImportPipeline.from_settings(store) as pipeline:
            for doc in documents:
                await pipeline.submit(doc)
        print(pipeline.result.documents_written)
    """

    def __init__(
        self,
        store: DocumentStore,
        governor: ThroughputGovernor,
        *,
        planner: Optional[BatchPlanner] = None,
        batch_size: int = 100,
        queue_capacity: Optional[int] = None,
        flush_interval: float = 0.5,
        max_concurrent_batches: int = 4,
        max_in_flight: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        min_time_between_batches_ms: float = 0,
        smaller_batch_size: int = 25,
        shrink_after_attempt: int = 3,
        requeue_on_shrink: bool = True,
        default_document_cost: float = 10.0,
        distribute_partition_keys: bool = False,
        progress_every: int = 10,
        on_progress: Optional[ProgressCallback] = None,
        dlq: Optional[DeadLetterQueue] = None,
        on_backpressure_high: Optional[BackpressureCallback] = None,
        on_backpressure_low: Optional[BackpressureCallback] = None,
        pipeline_id: str = "import",
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")

        self._governor = governor
        self._planner = planner or BatchPlanner()
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._pipeline_id = pipeline_id
        self._user_on_high = on_backpressure_high
        self._user_on_low = on_backpressure_low

        self._ingest = BoundedQueue[Document](
            capacity=queue_capacity or batch_size * 4,
            on_high=self._on_high,
            on_low=self._on_low,
        )
        self._batches = BoundedQueue[Batch](capacity=max_concurrent_batches * 2)
        self._executor = PipelineExecutor(
            store,
            governor,
            max_concurrent_batches=max_concurrent_batches,
            max_in_flight=max_in_flight,
            retry_policy=retry_policy,
            min_time_between_batches_ms=min_time_between_batches_ms,
            smaller_batch_size=smaller_batch_size,
            shrink_after_attempt=shrink_after_attempt,
            requeue_on_shrink=requeue_on_shrink,
            default_document_cost=default_document_cost,
            distribute_partition_keys=distribute_partition_keys,
            progress_every=progress_every,
            on_progress=on_progress,
            on_documents_done=self._release,
            dlq=dlq,
            pipeline_id=pipeline_id,
        )

        # id(doc) -> (doc, size, pending submissions)
        self._buffered: Dict[int, Tuple[Document, int, int]] = {}
        self._planner_task: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None
        self._result: Optional[RunResult] = None

    @classmethod
    async def from_settings(
        cls,
        store: DocumentStore,
        settings: Optional[ImportRuntimeSettings] = None,
        *,
        dlq: Optional[DeadLetterQueue] = None,
        on_progress: Optional[ProgressCallback] = None,
        pipeline_id: str = "import",
    ) -> "ImportPipeline":
        s = settings or get_settings()
        capacity = await resolve_capacity(store, s.ru_capacity)
        governor = ThroughputGovernor(
            capacity,
            cooldown_ms=s.partition_cooldown_ms,
            rejection_backoff_base_sec=s.rejection_backoff_base_sec,
            buffered_bytes_threshold=s.buffered_bytes_threshold,
            backpressure_pause_sec=s.backpressure_pause_sec,
        )
        planner = BatchPlanner(
            max_batch_count=s.max_batch_count,
            max_batch_bytes=s.max_batch_bytes,
            min_batch_size=s.min_batch_size_for_merge,
            merge_across_batches=s.merge_across_batches,
        )
        retry = RetryPolicy(
            max_attempts=s.max_attempts,
            initial_backoff_ms=s.initial_backoff_ms,
            max_backoff_ms=s.max_backoff_ms,
            backoff_multiplier=s.backoff_multiplier,
        )
        if dlq is None and s.dlq_path:
            dlq = DeadLetterQueue(s.dlq_path)
        return cls(
            store,
            governor,
            planner=planner,
            batch_size=s.batch_size,
            queue_capacity=s.effective_queue_capacity,
            flush_interval=s.flush_interval_sec,
            max_concurrent_batches=s.max_concurrent_batches,
            max_in_flight=s.max_in_flight,
            retry_policy=retry,
            min_time_between_batches_ms=s.min_time_between_batches_ms,
            smaller_batch_size=s.smaller_batch_size,
            shrink_after_attempt=s.shrink_after_attempt,
            requeue_on_shrink=s.requeue_on_shrink,
            default_document_cost=s.default_document_cost,
            distribute_partition_keys=s.distribute_partition_keys,
            progress_every=s.progress_every,
            on_progress=on_progress,
            dlq=dlq,
            pipeline_id=pipeline_id,
        )

    # --------------- lifecycle

    @property
    def running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    @property
    def result(self) -> Optional[RunResult]:
        """Final telemetry, available once ``join`` has returned."""
        return self._result

    @property
    def governor(self) -> ThroughputGovernor:
        return self._governor

    async def start(self) -> None:
        if self._run_task is not None:
            return
        self._planner_task = asyncio.create_task(self._plan_loop())
        self._run_task = asyncio.create_task(self._executor.run(self._batches))
        logger.debug(f"Import pipeline '{self._pipeline_id}' started")

    async def submit(self, doc: Document) -> None:
        """Hand one document to the pipeline; suspends under backpressure."""
        if self._run_task is None:
            raise RuntimeError("pipeline not started")
        await self._governor.memory_backpressure()

        entry = self._buffered.get(id(doc))
        if entry is None:
            size, refs = self._size_of(doc), 0
        else:
            _, size, refs = entry
        self._buffered[id(doc)] = (doc, size, refs + 1)
        self._governor.track_buffered(size)
        try:
            await self._ingest.put(doc)
        except BaseException:
            self._release([doc])
            raise
        INGEST_QUEUE_DEPTH.labels(self._pipeline_id).set(self._ingest.size)

    async def submit_many(self, docs: Union[Iterable[Document], AsyncIterable[Document]]) -> int:
        n = 0
        if isinstance(docs, AsyncIterable):
            async for doc in docs:
                await self.submit(doc)
                n += 1
        else:
            for doc in docs:
                await self.submit(doc)
                n += 1
        return n

    async def close(self) -> None:
        """End of stream: everything already submitted is still written."""
        await self._ingest.close()

    async def join(self) -> RunResult:
        if self._run_task is None or self._planner_task is None:
            raise RuntimeError("pipeline not started")
        _, result = await asyncio.gather(self._planner_task, self._run_task)
        self._result = result
        return result

    def cancel(self) -> None:
        """Stop now: pending documents are discarded, issued writes are left as-is."""
        self._release(self._ingest.abort())
        self._release(doc for batch in self._batches.abort() for doc in batch)
        for task in (self._planner_task, self._run_task):
            if task is not None and not task.done():
                task.cancel()
        logger.warning(f"Import pipeline '{self._pipeline_id}' cancelled")

    def health(self) -> PipelineHealth:
        snap = self._executor.snapshot()
        return PipelineHealth(
            running=self.running,
            ingest_size=self._ingest.size,
            ingest_capacity=self._ingest.capacity,
            batches_queued=self._batches.size,
            active_batches=self._executor.active_batches,
            completed_batches=self._executor.completed_batches,
            documents_written=snap.documents_written,
            buffered_bytes=self._governor.buffered_bytes,
            remaining_credits=self._governor.remaining_credits,
        )

    async def __aenter__(self) -> "ImportPipeline":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            await self.close()
            await self.join()
            return
        self.cancel()
        tasks = [t for t in (self._planner_task, self._run_task) if t is not None]
        await asyncio.gather(*tasks, return_exceptions=True)

    # --------------- planner stage

    async def _plan_loop(self) -> None:
        try:
            while True:
                chunk, closed = await self._collect()
                if chunk:
                    for batch in self._planner.plan(chunk):
                        await self._batches.put(batch)
                INGEST_QUEUE_DEPTH.labels(self._pipeline_id).set(self._ingest.size)
                if closed:
                    break
        except BaseException:
            self._batches.abort()
            raise
        await self._batches.close()
        logger.debug(f"Import pipeline '{self._pipeline_id}': ingest drained")

    async def _collect(self) -> Tuple[List[Document], bool]:
        """Up to ``batch_size`` documents; returns (chunk, ingest_closed)."""
        chunk: List[Document] = []
        try:
            chunk.append(await self._ingest.get())
            while len(chunk) < self._batch_size:
                chunk.append(await self._ingest.get(timeout=self._flush_interval))
        except asyncio.TimeoutError:
            return chunk, False
        except QueueClosed:
            return chunk, True
        return chunk, False

    # --------------- buffered bytes

    @staticmethod
    def _size_of(doc: Document) -> int:
        try:
            return doc.size_bytes()
        except SizingFailure as exc:
            logger.warning(f"Error calculating document size for {doc.id}: {exc}")
            return 0

    def _release(self, docs: Iterable[Document]) -> None:
        """Free one submission's worth of bytes per document occurrence."""
        freed = 0
        for doc in docs:
            entry = self._buffered.get(id(doc))
            if entry is None:
                continue
            _, size, refs = entry
            if refs > 1:
                self._buffered[id(doc)] = (doc, size, refs - 1)
            else:
                del self._buffered[id(doc)]
            freed += size
        if freed:
            self._governor.release_buffered(freed)

    async def _on_high(self) -> None:
        logger.debug(f"Ingest queue high watermark ({self._ingest.size}/{self._ingest.capacity})")
        if self._user_on_high:
            await self._user_on_high()

    async def _on_low(self) -> None:
        logger.debug(f"Ingest queue recovered ({self._ingest.size}/{self._ingest.capacity})")
        if self._user_on_low:
            await self._user_on_low()


async def import_documents(
    store: DocumentStore,
    documents: Union[Iterable[Document], AsyncIterable[Document]],
    settings: Optional[ImportRuntimeSettings] = None,
    **kwargs,
) -> RunResult:
    """One-shot helper: stream ``documents`` through a pipeline built from settings."""
    pipeline = await ImportPipeline.from_settings(store, settings, **kwargs)
    async with pipeline:
        await pipeline.submit_many(documents)
        await pipeline.close()
        return await pipeline.join()
