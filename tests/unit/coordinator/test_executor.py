"""
Unit tests for PipelineExecutor (attempt loop, retry, shrink, progress, cancellation).
"""

import asyncio
from typing import Dict, List

import pytest

from bulk_import.coordinator import (
    BatchPlanner,
    DeadLetterQueue,
    PipelineExecutor,
    RetryPolicy,
    ThroughputGovernor,
)
from bulk_import.errors import FatalWriteError, RateLimited, TransientWriteFailure
from bulk_import.models import Batch, Document


class FlakyStore:
    """Store that raises scripted errors per document id, then charges ``cost``."""

    def __init__(self, failures: Dict[str, List[BaseException]] = None, cost: float = 5.0):
        self._failures = {k: list(v) for k, v in (failures or {}).items()}
        self.cost = cost
        self.calls: List[str] = []
        self.written: Dict[str, str] = {}

    async def write(self, document, partition_key):
        self.calls.append(document.id)
        await asyncio.sleep(0)
        pending = self._failures.get(document.id)
        if pending:
            raise pending.pop(0)
        self.written[document.id] = partition_key
        return self.cost

    async def read_provisioned_capacity(self):
        return None


def _executor(store, clock, **kwargs):
    governor = ThroughputGovernor(
        kwargs.pop("capacity", 1_000_000),
        cooldown_ms=kwargs.pop("cooldown_ms", 0),
        clock=clock,
        sleep=clock.sleep,
    )
    return PipelineExecutor(store, governor, clock=clock, sleep=clock.sleep, **kwargs)


@pytest.mark.asyncio
async def test_all_batches_written(clock, docs_factory):
    store = FlakyStore()
    batches = BatchPlanner(sizer=lambda d: 1000).plan(docs_factory(250))
    result = await _executor(store, clock).run(batches)

    assert result.documents_written == 250
    assert result.total_cost == pytest.approx(1250.0)
    assert result.batches_succeeded == 3
    assert result.batches_failed == 0
    assert len(store.written) == 250


@pytest.mark.asyncio
async def test_transient_errors_retried_with_backoff(clock, docs_factory):
    store = FlakyStore({"p1-0": [TransientWriteFailure("503"), TransientWriteFailure("503")]})
    result = await _executor(store, clock).run([docs_factory(5)])

    assert result.documents_written == 5
    assert result.batches_succeeded == 1
    # whole batch resent on every attempt
    assert len(store.calls) == 15
    assert clock.sleeps == [2.0, 4.0]


@pytest.mark.asyncio
async def test_exhausted_batch_does_not_halt_run(clock, docs_factory, tmp_path):
    bad = docs_factory(4, partition_key="bad")
    good = docs_factory(6, partition_key="good")
    store = FlakyStore({"bad-2": [TransientWriteFailure("503")] * 10}, cost=2.0)
    dlq = DeadLetterQueue(tmp_path / "dlq.ndjson")

    result = await _executor(
        store,
        clock,
        retry_policy=RetryPolicy(max_attempts=3, initial_backoff_ms=10),
        dlq=dlq,
    ).run([bad, good])

    assert result.batches_failed == 1
    assert result.documents_failed == 4
    assert result.batches_succeeded == 1
    assert result.documents_written == 6
    # charges of partially written failed attempts are not counted
    assert result.total_cost == pytest.approx(12.0)

    (record,) = await dlq.replay()
    assert record.metadata["reason"] == "exhausted"
    assert record.metadata["attempts"] == 3
    assert "BatchExhausted" in record.error
    assert [d.id for d in record.documents] == [d.id for d in bad]


@pytest.mark.asyncio
async def test_fatal_error_not_retried(clock, docs_factory):
    store = FlakyStore({"p1-1": [FatalWriteError("400 bad request")]})
    result = await _executor(store, clock).run([docs_factory(3)])

    assert result.batches_failed == 1
    assert result.documents_written == 0
    assert len(store.calls) == 3
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_rate_limit_uses_retry_hint(clock, docs_factory):
    store = FlakyStore({"p1-0": [RateLimited("429", retry_after=0.2)]})
    result = await _executor(store, clock).run([docs_factory(3)])

    assert result.documents_written == 3
    assert result.rejections == 1
    assert clock.sleeps == [0.2]


@pytest.mark.asyncio
async def test_rate_limit_without_hint_backs_off_exponentially(clock, docs_factory):
    store = FlakyStore({"p1-0": [RateLimited("429"), RateLimited("429")]})
    result = await _executor(store, clock).run([docs_factory(2)])

    assert result.documents_written == 2
    assert result.rejections == 2
    # base 1s * 2**attempt
    assert clock.sleeps == [2.0, 4.0]


@pytest.mark.asyncio
async def test_largest_retry_hint_wins(clock):
    docs = [Document(id=f"d{i}", partition_key=f"k{i}", body={}) for i in range(3)]
    store = FlakyStore(
        {
            "d0": [RateLimited("429", retry_after=0.1)],
            "d2": [RateLimited("429", retry_after=0.7)],
        }
    )
    await _executor(store, clock).run([docs])
    assert clock.sleeps == [0.7]


@pytest.mark.asyncio
async def test_shrunk_retry_requeues_remainder(clock, docs_factory):
    docs = docs_factory(10)
    store = FlakyStore({"p1-0": [TransientWriteFailure("503")]})
    result = await _executor(
        store,
        clock,
        shrink_after_attempt=1,
        smaller_batch_size=4,
        retry_policy=RetryPolicy(initial_backoff_ms=10),
    ).run([docs])

    assert result.documents_written == 10
    assert result.documents_requeued == 6
    assert result.documents_dropped == 0
    assert result.batches_succeeded == 2
    assert set(store.written) == {d.id for d in docs}


@pytest.mark.asyncio
async def test_shrunk_retry_can_drop_remainder(clock, docs_factory, tmp_path):
    docs = docs_factory(10)
    store = FlakyStore({"p1-0": [TransientWriteFailure("503")]})
    dlq = DeadLetterQueue(tmp_path / "dlq.ndjson")
    result = await _executor(
        store,
        clock,
        shrink_after_attempt=1,
        smaller_batch_size=4,
        requeue_on_shrink=False,
        retry_policy=RetryPolicy(initial_backoff_ms=10),
        dlq=dlq,
    ).run([docs])

    assert result.documents_written == 4
    assert result.documents_dropped == 6
    assert result.batches_succeeded == 1
    # full first attempt, then the 4-document prefix
    assert len(store.calls) == 14

    (record,) = await dlq.replay()
    assert record.metadata["reason"] == "shrink"
    assert len(record.documents) == 6


@pytest.mark.asyncio
async def test_progress_reported_every_n_and_at_end(clock, docs_factory):
    calls = []

    async def on_progress(done, total):
        calls.append((done, total))

    batches = [Batch.of(docs_factory(1, partition_key=f"k{i}")) for i in range(25)]
    await _executor(FlakyStore(), clock, progress_every=10, on_progress=on_progress).run(batches)

    assert calls == [(10, 25), (20, 25), (25, 25)]


@pytest.mark.asyncio
async def test_progress_callback_errors_are_ignored(clock, docs_factory):
    async def on_progress(done, total):
        raise RuntimeError("callback broke")

    result = await _executor(
        FlakyStore(), clock, progress_every=1, on_progress=on_progress
    ).run([docs_factory(2)])
    assert result.documents_written == 2


@pytest.mark.asyncio
async def test_async_iterable_source_has_unknown_total(clock, docs_factory):
    calls = []

    async def on_progress(done, total):
        calls.append((done, total))

    async def stream():
        for i in range(3):
            yield docs_factory(2, partition_key=f"k{i}")

    result = await _executor(
        FlakyStore(), clock, progress_every=1, on_progress=on_progress
    ).run(stream())

    assert result.documents_written == 6
    assert [t for _, t in calls] == [None, None, None]


@pytest.mark.asyncio
async def test_min_time_between_batches(clock, docs_factory):
    batches = [docs_factory(1, partition_key=f"k{i}") for i in range(3)]
    await _executor(
        FlakyStore(), clock, max_concurrent_batches=1, min_time_between_batches_ms=500
    ).run(batches)
    assert clock.sleeps == [0.5, 0.5]


@pytest.mark.asyncio
async def test_in_flight_limit(clock, docs_factory):
    seen = []

    class ObservingStore(FlakyStore):
        async def write(self, document, partition_key):
            seen.append(executor.active_batches)
            return await super().write(document, partition_key)

    batches = [docs_factory(3, partition_key=f"k{i}") for i in range(8)]
    executor = _executor(ObservingStore(), clock, max_concurrent_batches=4, max_in_flight=1)
    result = await executor.run(batches)

    assert result.documents_written == 24
    assert max(seen) == 1


@pytest.mark.asyncio
async def test_distributed_partition_keys(clock, docs_factory):
    store = FlakyStore()
    await _executor(store, clock, distribute_partition_keys=True).run([docs_factory(5)])
    assert all(pk.startswith("p1-") for pk in store.written.values())
    assert all(pk == ThroughputGovernor.distributed_key("p1") for pk in store.written.values())


@pytest.mark.asyncio
async def test_documents_done_hook_sees_every_document(clock, docs_factory):
    done = []
    store = FlakyStore({"bad-0": [FatalWriteError("400")]})
    await _executor(store, clock, on_documents_done=done.extend).run(
        [docs_factory(3, partition_key="bad"), docs_factory(2)]
    )
    assert len(done) == 5


@pytest.mark.asyncio
async def test_cancellation_stops_workers():
    started = asyncio.Event()

    class HangingStore:
        def __init__(self):
            self.calls = 0

        async def write(self, document, partition_key):
            self.calls += 1
            started.set()
            await asyncio.Event().wait()

        async def read_provisioned_capacity(self):
            return None

    store = HangingStore()
    executor = PipelineExecutor(store, ThroughputGovernor(1_000_000, cooldown_ms=0))
    batches = [[Document(id=f"d{i}", partition_key=f"k{i}")] for i in range(10)]

    task = asyncio.create_task(executor.run(batches))
    await asyncio.wait_for(started.wait(), timeout=1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    calls = store.calls
    await asyncio.sleep(0.01)
    assert store.calls == calls
    assert executor.active_batches == 0
