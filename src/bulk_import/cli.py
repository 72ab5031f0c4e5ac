from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import typer
from loguru import logger

from .coordinator import (
    BatchPlanner,
    DeadLetterQueue,
    DocumentStore,
    ImportRuntimeSettings,
    RunResult,
    import_documents,
)
from .errors import BulkImportError, FatalConfiguration
from .models import Document
from .sources import FileSummary, load_documents
from .stores import HttpDocumentStore, MemoryDocumentStore

app = typer.Typer(help="Bulk document import CLI (run, plan, dead-letter replay)")


# ---------------------------
# Common options
# ---------------------------


def base_url_opt() -> Optional[str]:
    return typer.Option(None, "--base-url", envvar="BULK_IMPORT_BASE_URL", help="Store API base URL")


def collection_opt() -> Optional[str]:
    return typer.Option(None, "--collection", envvar="BULK_IMPORT_COLLECTION", help="Target collection")


def api_key_opt() -> Optional[str]:
    return typer.Option(None, "--api-key", envvar="BULK_IMPORT_API_KEY", help="Bearer token for the store")


def simulate_opt() -> Optional[int]:
    return typer.Option(
        None, "--simulate-capacity", help="Write to an in-memory store with this RCU/s budget"
    )


def ru_capacity_opt() -> Optional[int]:
    return typer.Option(None, "--ru-capacity", help="Override provisioned RCU/s")


def concurrency_opt() -> Optional[int]:
    return typer.Option(None, "--concurrency", help="Concurrent batches")


def dlq_opt() -> Optional[str]:
    return typer.Option(None, "--dlq-path", help="NDJSON file for batches that could not be written")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", help="loguru level (DEBUG, INFO, ...)"),
):
    logger.remove()
    logger.add(sys.stderr, level=log_level.upper())


# ---------------------------
# Helpers
# ---------------------------


def _settings(**overrides: Any) -> ImportRuntimeSettings:
    return ImportRuntimeSettings.load(**{k: v for k, v in overrides.items() if v is not None})


def _build_store(
    base_url: Optional[str],
    collection: Optional[str],
    api_key: Optional[str],
    simulate_capacity: Optional[int],
) -> DocumentStore:
    if base_url:
        if not collection:
            raise FatalConfiguration("--collection is required with --base-url")
        cfg: Dict[str, Any] = {"base_url": base_url, "collection": collection}
        if api_key:
            cfg["api_key"] = api_key
        return HttpDocumentStore(cfg)
    if simulate_capacity:
        return MemoryDocumentStore(simulate_capacity)
    raise FatalConfiguration("either --base-url/--collection or --simulate-capacity is required")


def _summary(result: RunResult) -> Dict[str, Any]:
    out = asdict(result)
    out["batches_completed"] = result.batches_completed
    out["rcu_per_second"] = round(result.rcu_per_second, 2)
    out["elapsed"] = round(result.elapsed, 3)
    out["total_cost"] = round(result.total_cost, 2)
    return out


async def _log_progress(done: int, total: Optional[int]) -> None:
    if total:
        logger.info(f"Progress: {done}/{total} batches ({done / total:.0%})")
    else:
        logger.info(f"Progress: {done} batches")


async def _import(
    store: DocumentStore, documents: List[Document], settings: ImportRuntimeSettings
) -> RunResult:
    dlq = DeadLetterQueue(settings.dlq_path) if settings.dlq_path else None
    try:
        return await import_documents(
            store, documents, settings, dlq=dlq, on_progress=_log_progress
        )
    finally:
        close = getattr(store, "aclose", None)
        if close is not None:
            await close()


def _execute(store: DocumentStore, documents: List[Document], settings: ImportRuntimeSettings):
    try:
        result = asyncio.run(_import(store, documents, settings))
    except KeyboardInterrupt:
        logger.warning("Import interrupted; pending batches were cancelled")
        sys.exit(130)
    typer.echo(json.dumps(_summary(result), indent=2))
    if result.batches_failed or result.documents_dropped:
        logger.warning(
            f"{result.batches_failed} batches failed, {result.documents_dropped} documents dropped"
        )


# ---------------------------
# Commands
# ---------------------------


@app.command("run")
def run(
    path: str = typer.Argument(..., help="JSON/NDJSON file or directory"),
    split_field: str = typer.Option("body", "--split-field", help="List field to fan out"),
    base_url: Optional[str] = base_url_opt(),
    collection: Optional[str] = collection_opt(),
    api_key: Optional[str] = api_key_opt(),
    simulate_capacity: Optional[int] = simulate_opt(),
    ru_capacity: Optional[int] = ru_capacity_opt(),
    concurrency: Optional[int] = concurrency_opt(),
    dlq_path: Optional[str] = dlq_opt(),
):
    """Load documents from PATH and import them into the store."""
    try:
        settings = _settings(
            ru_capacity=ru_capacity, max_concurrent_batches=concurrency, dlq_path=dlq_path
        )
        store = _build_store(base_url, collection, api_key, simulate_capacity)
        summaries: List[FileSummary] = []
        documents = load_documents(path, split_field, summaries=summaries)
        for s in summaries:
            logger.info(f"{s.filename}: {s.records} records -> {s.documents} documents")
        if not documents:
            logger.error(f"No documents found under {path}")
            sys.exit(1)
        _execute(store, documents, settings)
    except (BulkImportError, FileNotFoundError) as e:
        logger.error(f"Import failed: {e}")
        sys.exit(1)


@app.command("plan")
def plan(
    path: str = typer.Argument(..., help="JSON/NDJSON file or directory"),
    split_field: str = typer.Option("body", "--split-field", help="List field to fan out"),
):
    """Show how PATH would be batched, without writing anything."""
    try:
        settings = _settings()
        documents = load_documents(path, split_field)
        planner = BatchPlanner(
            max_batch_count=settings.max_batch_count,
            max_batch_bytes=settings.max_batch_bytes,
            min_batch_size=settings.min_batch_size_for_merge,
            merge_across_batches=settings.merge_across_batches,
        )
        batches = planner.plan(documents)
        count, total_bytes = planner.analyze(batches)
        typer.echo(
            json.dumps(
                {"batches": count, "total_bytes": total_bytes, "documents": len(documents)},
                indent=2,
            )
        )
    except (BulkImportError, FileNotFoundError) as e:
        logger.error(f"Planning failed: {e}")
        sys.exit(1)


@app.command("dlq-replay")
def dlq_replay(
    dlq_file: str = typer.Argument(..., help="Dead-letter NDJSON file"),
    max_records: Optional[int] = typer.Option(None, "--max-records", help="Replay at most N records"),
    base_url: Optional[str] = base_url_opt(),
    collection: Optional[str] = collection_opt(),
    api_key: Optional[str] = api_key_opt(),
    simulate_capacity: Optional[int] = simulate_opt(),
    ru_capacity: Optional[int] = ru_capacity_opt(),
):
    """Re-submit documents from a dead-letter file."""
    try:
        settings = _settings(ru_capacity=ru_capacity)
        store = _build_store(base_url, collection, api_key, simulate_capacity)
        records = asyncio.run(DeadLetterQueue(dlq_file, mkdirs=False).replay(max_records))
        documents = [doc for record in records for doc in record.documents]
        logger.info(f"Replaying {len(documents)} documents from {len(records)} DLQ records")
        if not documents:
            typer.echo(json.dumps({"documents_written": 0}, indent=2))
            return
        _execute(store, documents, settings)
    except BulkImportError as e:
        logger.error(f"Replay failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    app()
