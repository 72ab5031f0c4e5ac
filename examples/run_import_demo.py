"""
Demo for the bulk import pipeline against the in-memory store.

Shows:
- Prometheus metrics (exposed on :8000/metrics)
- Dead Letter Queue (file-based NDJSON)
- Rate-limit rejections from a tight RCU budget
- Environment-based settings
- Health monitoring and progress callbacks
"""

import asyncio
import random

from loguru import logger
from prometheus_client import start_http_server

from bulk_import import Document, ImportPipeline, MemoryDocumentStore
from bulk_import.coordinator import DeadLetterQueue, ImportRuntimeSettings
from bulk_import.errors import TransientWriteFailure

FILES = ["orders.json", "invoices.json", "shipments.json", "returns.json"]


def make_documents(n: int):
    for i in range(n):
        pk = FILES[i % len(FILES)]
        yield Document(
            id=f"{pk}-{i}",
            partition_key=pk,
            body={"seq": i, "payload": "x" * random.randint(100, 3000), "note": None},
        )


async def on_progress(done, total):
    logger.info(f"Progress: {done} batches written")


async def on_bp_high():
    logger.warning("Backpressure HIGH")


async def on_bp_low():
    logger.info("Backpressure recovered")


async def main():
    start_http_server(8000)
    logger.info("Prometheus metrics available at http://localhost:8000/metrics")

    # Load env-configurable settings, demo-friendly overrides on top
    cfg = ImportRuntimeSettings.load(
        batch_size=200,
        max_concurrent_batches=4,
        partition_cooldown_ms=5,
        min_time_between_batches_ms=10,
        initial_backoff_ms=50,
        dlq_path=".dlq/import.ndjson",
    )
    logger.info(
        f"Loaded settings: batch_size={cfg.batch_size}, "
        f"workers={cfg.max_concurrent_batches}, queue={cfg.effective_queue_capacity}"
    )

    # a handful of documents fail every attempt and end up in the DLQ
    failures = {f"orders.json-{i}": [TransientWriteFailure("simulated 503")] * 10 for i in (40, 4000)}
    store = MemoryDocumentStore(capacity=20_000, latency=0.001, failures=failures)

    pipeline = await ImportPipeline.from_settings(store, cfg, on_progress=on_progress)
    async with pipeline:
        logger.info("Submitting 10,000 documents...")
        for i, doc in enumerate(make_documents(10_000)):
            await pipeline.submit(doc)
            if i % 2500 == 0 and i > 0:
                h = pipeline.health()
                logger.info(
                    f"Submitted {i}/10000 | ingest {h.ingest_size}/{h.ingest_capacity} | "
                    f"active batches {h.active_batches} | credits {h.remaining_credits:,.0f}"
                )

    result = pipeline.result
    logger.info(
        f"Final: {result.documents_written:,} written, {result.documents_failed} failed, "
        f"{result.rejections} rejections, {result.total_cost:,.0f} RCU "
        f"({result.rcu_per_second:,.0f} RCU/s)"
    )

    recs = await DeadLetterQueue(cfg.dlq_path).replay(3)
    if recs:
        logger.info(f"Found {len(recs)} DLQ records (showing first 3):")
        for r in recs:
            logger.info(f"   err='{r.error}' documents={len(r.documents)} meta={r.metadata}")
    else:
        logger.info("No documents in DLQ (all writes successful)")


if __name__ == "__main__":
    asyncio.run(main())
