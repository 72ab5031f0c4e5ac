"""
Unit tests for MemoryDocumentStore (charges, RCU window, scripted failures).
"""

import pytest

from bulk_import.errors import RateLimited, TransientWriteFailure
from bulk_import.models import Document
from bulk_import.stores import MemoryDocumentStore


def _doc(i, size=0):
    return Document(id=f"d{i}", partition_key="p", body={"pad": "x" * size})


@pytest.mark.asyncio
async def test_write_upserts_and_charges(clock):
    store = MemoryDocumentStore(capacity=None, base_cost=5.0, cost_per_kb=1.0, clock=clock)
    doc = _doc(1, size=2048)

    cost = await store.write(doc, "p")
    await store.write(doc, "p")

    assert cost == store.charge_for(doc)
    assert 7.0 < cost < 8.0
    assert len(store) == 1
    assert store.documents[("p", "d1")]["id"] == "d1"
    assert store.write_calls == 2


@pytest.mark.asyncio
async def test_window_rejects_over_budget_with_retry_hint(clock):
    store = MemoryDocumentStore(capacity=12, base_cost=5.0, cost_per_kb=0.0, clock=clock)
    await store.write(_doc(1), "p")
    await store.write(_doc(2), "p")

    clock.advance(0.25)
    with pytest.raises(RateLimited) as exc_info:
        await store.write(_doc(3), "p")
    assert exc_info.value.retry_after == pytest.approx(0.75)
    assert store.rejections == 1

    clock.advance(0.75)
    assert await store.write(_doc(3), "p") == 5.0


@pytest.mark.asyncio
async def test_scripted_failures_raised_in_order(clock):
    store = MemoryDocumentStore(
        capacity=None,
        failures={"d1": [TransientWriteFailure("503"), RateLimited("429", retry_after=0.1)]},
        clock=clock,
    )
    with pytest.raises(TransientWriteFailure):
        await store.write(_doc(1), "p")
    with pytest.raises(RateLimited):
        await store.write(_doc(1), "p")
    assert await store.write(_doc(1), "p") > 0
    assert len(store) == 1


@pytest.mark.asyncio
async def test_reports_provisioned_capacity():
    assert await MemoryDocumentStore(capacity=4000).read_provisioned_capacity() == 4000
    assert await MemoryDocumentStore(capacity=None).read_provisioned_capacity() is None
