"""
Bulk Document Import

Throughput-governed bulk loader for partitioned document stores: documents are
packed into size- and count-bounded batches, grouped by partition key, and
written concurrently under a request-unit budget with retry, shrink and
dead-lettering.

Usage:
    from bulk_import import ImportPipeline, MemoryDocumentStore, load_documents

    store = MemoryDocumentStore(capacity=10_000)
    async with await ImportPipeline.from_settings(store) as pipeline:
        await pipeline.submit_many(load_documents("data/"))
    print(pipeline.result)
"""

from .coordinator import (
    BatchPlanner,
    DeadLetterQueue,
    ImportPipeline,
    ImportRuntimeSettings,
    PipelineExecutor,
    RunResult,
    ThroughputGovernor,
    import_documents,
)
from .models import Batch, Document
from .sources import load_documents
from .stores import HttpDocumentStore, MemoryDocumentStore

__version__ = "0.1.0"
__all__ = [
    "Batch",
    "Document",
    "BatchPlanner",
    "ThroughputGovernor",
    "PipelineExecutor",
    "ImportPipeline",
    "ImportRuntimeSettings",
    "RunResult",
    "DeadLetterQueue",
    "import_documents",
    "load_documents",
    "HttpDocumentStore",
    "MemoryDocumentStore",
]
