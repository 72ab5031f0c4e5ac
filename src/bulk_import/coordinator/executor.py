"""
Pipeline executor: a fixed pool of workers writing batches through the
throughput governor.

Per batch, a worker runs an attempt loop:

- pace against the last dispatched batch (``min_time_between_batches_ms``)
- pick the documents for this attempt: the whole batch for the first
  ``shrink_after_attempt`` attempts, then a ``smaller_batch_size`` prefix
- admit + write every selected document concurrently; the attempt succeeds
  only if every write does
- on a rate-limit rejection, back off through ``governor.on_rejection``
- on any other retryable error, back off via the RetryPolicy

A batch that runs out of attempts is reported (telemetry, log, optional DLQ)
and the run carries on with the remaining batches.

Documents left over when a shrunk attempt succeeds are processed as a new
batch when ``requeue_on_shrink`` is set, otherwise they are dropped and
counted.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import AsyncIterable, Iterable, Sized
from typing import Callable, Deque, List, Optional, Sequence, Union

from loguru import logger

from ..errors import BatchExhausted, RateLimited
from ..models import Batch, Document
from .dlq import DeadLetterQueue
from .governor import Clock, Sleep, ThroughputGovernor
from .policy import RetryPolicy
from .queue import BoundedQueue
from .telemetry import RunResult, RunTelemetry
from .types import DocumentStore, ProgressCallback, QueueClosed

BatchSource = Union[
    Iterable[Union[Batch, Sequence[Document]]],
    AsyncIterable[Union[Batch, Sequence[Document]]],
    BoundedQueue[Batch],
]
DocumentsDone = Callable[[Sequence[Document]], None]


class _CostEstimator:
    """Running mean of observed per-document charges."""

    def __init__(self, initial: float):
        self._initial = initial
        self._total = 0.0
        self._count = 0

    def estimate(self) -> float:
        return self._total / self._count if self._count else self._initial

    def observe(self, cost: float) -> None:
        self._total += cost
        self._count += 1


def _select_error(errors: List[BaseException]) -> BaseException:
    """Pick the error that drives the retry decision for a failed attempt."""
    for err in errors:
        if not isinstance(err, Exception):
            return err  # cancellation and friends win
    limited = [e for e in errors if isinstance(e, RateLimited)]
    if limited:
        hinted = [e for e in limited if e.retry_after is not None]
        return max(hinted, key=lambda e: e.retry_after) if hinted else limited[0]
    return errors[0]


class PipelineExecutor:
    def __init__(
        self,
        store: DocumentStore,
        governor: ThroughputGovernor,
        *,
        max_concurrent_batches: int = 4,
        max_in_flight: int | None = None,
        retry_policy: RetryPolicy | None = None,
        min_time_between_batches_ms: float = 0,
        smaller_batch_size: int = 25,
        shrink_after_attempt: int = 3,
        requeue_on_shrink: bool = True,
        default_document_cost: float = 10.0,
        distribute_partition_keys: bool = False,
        progress_every: int = 10,
        on_progress: Optional[ProgressCallback] = None,
        on_documents_done: Optional[DocumentsDone] = None,
        dlq: Optional[DeadLetterQueue] = None,
        pipeline_id: str = "import",
        clock: Optional[Clock] = None,
        sleep: Optional[Sleep] = None,
    ):
        if max_concurrent_batches <= 0:
            raise ValueError("max_concurrent_batches must be > 0")
        if smaller_batch_size <= 0:
            raise ValueError("smaller_batch_size must be > 0")

        self._store = store
        self._governor = governor
        self._workers = max_concurrent_batches
        self._in_flight = asyncio.Semaphore(max_in_flight or max_concurrent_batches)
        self._retry = retry_policy or RetryPolicy()
        self._min_spacing = max(0.0, min_time_between_batches_ms / 1000.0)
        self._smaller = smaller_batch_size
        self._shrink_after = shrink_after_attempt
        self._requeue_on_shrink = requeue_on_shrink
        self._default_cost = default_document_cost
        self._distribute = distribute_partition_keys
        self._progress_every = max(1, progress_every)
        self._on_progress = on_progress
        self._on_documents_done = on_documents_done
        self._dlq = dlq
        self._pipeline_id = pipeline_id
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

        self._pace_lock = asyncio.Lock()
        self._last_dispatch = float("-inf")
        self._active = 0
        self._completed = 0
        self._estimator = _CostEstimator(default_document_cost)
        self._telemetry = RunTelemetry(pipeline_id)

    # --------------- introspection

    @property
    def active_batches(self) -> int:
        """Batches with writes in flight right now."""
        return self._active

    @property
    def completed_batches(self) -> int:
        return self._completed

    def snapshot(self) -> RunResult:
        return self._telemetry.snapshot()

    # --------------- run

    async def run(self, batches: BatchSource) -> RunResult:
        """Write every batch; returns aggregated telemetry for the run.

        Failed batches do not abort the run. Cancellation propagates after
        every worker has been stopped.
        """
        self._telemetry = RunTelemetry(self._pipeline_id)
        self._estimator = _CostEstimator(self._default_cost)
        self._completed = 0
        started = self._clock()

        feeder: Optional[asyncio.Task] = None
        if isinstance(batches, BoundedQueue):
            source = batches
            total = None
        else:
            total = len(batches) if isinstance(batches, Sized) else None
            source = BoundedQueue[Batch](capacity=self._workers * 2)
            feeder = asyncio.create_task(self._feed(batches, source))

        tasks = [asyncio.create_task(self._worker(i, source, total)) for i in range(self._workers)]
        if feeder is not None:
            tasks.append(feeder)

        try:
            await asyncio.gather(*tasks)
        except BaseException:
            source.abort()
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        result = self._telemetry.snapshot(self._clock() - started)
        logger.info(
            f"Import run '{self._pipeline_id}' finished: "
            f"{result.documents_written:,} documents, {result.total_cost:,.2f} RCU, "
            f"{result.batches_failed} failed batches, {result.elapsed:.2f}s"
        )
        return result

    async def _feed(self, batches, source: BoundedQueue[Batch]) -> None:
        if isinstance(batches, AsyncIterable):
            async for item in batches:
                await self._offer(item, source)
        else:
            for item in batches:
                await self._offer(item, source)
        await source.close()

    @staticmethod
    async def _offer(item, source: BoundedQueue[Batch]) -> None:
        if not isinstance(item, Batch):
            if not item:
                return
            item = Batch.of(item)
        await source.put(item)

    async def _worker(self, worker_id: int, source: BoundedQueue[Batch], total: int | None) -> None:
        while True:
            try:
                batch = await source.get()
            except QueueClosed:
                logger.debug(f"Worker {worker_id}: source drained, exiting")
                return

            pending: Deque[Batch] = deque([batch])
            while pending:
                remainder = await self._process_batch(worker_id, pending.popleft())
                if remainder is not None:
                    pending.append(remainder)
            await self._report_progress(total)

    # --------------- per batch

    async def _process_batch(self, worker_id: int, batch: Batch) -> Optional[Batch]:
        """Run the attempt loop for one batch; returns a requeued remainder, if any."""
        started = self._clock()
        attempts = 0
        last_error: Optional[BaseException] = None

        while attempts < self._retry.max_attempts:
            attempts += 1
            selected = batch if attempts <= self._shrink_after else batch.prefix(self._smaller)

            try:
                await self._pace()
                cost = await self._attempt(selected)
            except Exception as exc:
                last_error = exc
                if isinstance(exc, RateLimited):
                    self._telemetry.record_rejection()
                    if attempts < self._retry.max_attempts and await self._governor.on_rejection(
                        exc, attempts
                    ):
                        continue
                    break

                logger.debug(
                    f"Worker {worker_id}: error in batch "
                    f"(attempt {attempts}/{self._retry.max_attempts}): "
                    f"{type(exc).__name__}: {exc}"
                )
                if attempts >= self._retry.max_attempts or not self._retry.classify_retryable(exc):
                    break
                await self._sleep(self._retry.next_backoff_ms(attempts) / 1000.0)
                continue

            latency = self._clock() - started
            self._telemetry.record_success(len(selected), cost, latency)
            self._documents_done(selected.documents)
            logger.debug(
                f"Worker {worker_id}: batch processed: {len(selected)} documents, "
                f"{cost:,.2f} RCU, {latency * 1000:.0f}ms"
            )
            return await self._handle_remainder(batch, selected, attempts)

        elapsed = self._clock() - started
        exhausted = BatchExhausted(len(batch), attempts, elapsed, last_error)
        self._telemetry.record_failure(len(batch), elapsed)
        self._documents_done(batch.documents)
        logger.warning(f"Worker {worker_id}: {exhausted}")
        await self._dead_letter(
            batch.documents, exhausted, {"reason": "exhausted", "attempts": attempts}
        )
        return None

    async def _handle_remainder(
        self, batch: Batch, selected: Batch, attempts: int
    ) -> Optional[Batch]:
        rest = batch.remainder(len(selected))
        if rest is None:
            return None
        if self._requeue_on_shrink:
            self._telemetry.record_requeued(len(rest))
            logger.info(
                f"Shrunk retry wrote {len(selected)}/{len(batch)} documents; "
                f"requeueing {len(rest)} as a new batch"
            )
            return rest

        self._telemetry.record_dropped(len(rest))
        self._documents_done(rest.documents)
        logger.warning(
            f"Shrunk retry wrote {len(selected)}/{len(batch)} documents; "
            f"dropping {len(rest)} remaining documents"
        )
        await self._dead_letter(
            rest.documents, "dropped after shrunk retry", {"reason": "shrink", "attempts": attempts}
        )
        return None

    async def _pace(self) -> None:
        """Keep at least ``min_time_between_batches`` between dispatched attempts."""
        if self._min_spacing <= 0:
            return
        async with self._pace_lock:
            wait = self._last_dispatch + self._min_spacing - self._clock()
            if wait > 0:
                await self._sleep(wait)
            self._last_dispatch = self._clock()

    async def _attempt(self, selected: Batch) -> float:
        """Write every selected document; all-or-nothing. Returns total RCU."""
        async with self._in_flight:
            self._active += 1
            try:
                results = await asyncio.gather(
                    *(self._write_one(doc) for doc in selected), return_exceptions=True
                )
            finally:
                self._active -= 1

        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise _select_error(errors)
        return float(sum(results))

    async def _write_one(self, doc: Document) -> float:
        estimate = self._estimator.estimate()
        key = (
            self._governor.distributed_key(doc.partition_key)
            if self._distribute
            else doc.partition_key
        )
        await self._governor.admit(estimate, key)
        cost = float(await self._store.write(doc, key))
        self._estimator.observe(cost)
        await self._governor.settle(estimate, cost)
        return cost

    # --------------- reporting

    def _documents_done(self, documents: Sequence[Document]) -> None:
        if self._on_documents_done is not None:
            self._on_documents_done(documents)

    async def _dead_letter(
        self, documents: Sequence[Document], error: BaseException | str, metadata: dict
    ) -> None:
        if self._dlq is None:
            return
        try:
            await self._dlq.save(documents, error, {"pipeline": self._pipeline_id, **metadata})
        except OSError as exc:
            logger.error(f"DLQ write to {self._dlq.path} failed: {exc}")

    async def _report_progress(self, total: int | None) -> None:
        self._completed += 1
        done = self._completed
        if done % self._progress_every and done != total:
            return
        logger.info(f"Progress: {done}/{total if total is not None else '?'} batches")
        if self._on_progress is None:
            return
        try:
            await self._on_progress(done, total)
        except Exception as exc:
            logger.warning(f"Progress callback error (ignored): {type(exc).__name__}: {exc}")
