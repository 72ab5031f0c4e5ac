"""
Read documents to import from JSON / NDJSON files.

The partition key of every document is the name of the file it came from.
Records carrying a non-empty list under ``split_field`` are fanned out into
one document per element, each with id ``"{filename}-{uuid4}"``.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from loguru import logger

from .models import Document

SUPPORTED_SUFFIXES = (".json", ".ndjson", ".jsonl")


@dataclass(frozen=True)
class FileSummary:
    filename: str
    records: int
    documents: int
    elapsed: float


def _records(path: Path) -> List[Dict[str, Any]]:
    text = path.read_text(encoding="utf-8")
    if path.suffix in (".ndjson", ".jsonl"):
        return [json.loads(line) for line in text.splitlines() if line.strip()]
    data = json.loads(text)
    if isinstance(data, list):
        return data
    return [data]


def split_record(record: Dict[str, Any], filename: str, split_field: str) -> List[Document]:
    parts = record.get(split_field)
    if not isinstance(parts, list) or not parts:
        return [Document.from_wire(record, partition_key=filename)]

    out: List[Document] = []
    for part in parts:
        body = {k: v for k, v in record.items() if k not in ("id", split_field)}
        body[split_field] = [part if part is not None else {}]
        out.append(
            Document(id=f"{filename}-{uuid.uuid4()}", partition_key=filename, body=body)
        )
    return out


def read_file(path: Path, split_field: str = "body") -> Tuple[int, List[Document]]:
    """(record count, documents) for one file; raises on unreadable or malformed input."""
    records = _records(path)
    docs: List[Document] = []
    for record in records:
        if not isinstance(record, dict):
            raise ValueError(f"expected JSON objects, got {type(record).__name__}")
        docs.extend(split_record(record, path.name, split_field))
    return len(records), docs


def iter_files(path: Union[str, Path]) -> Iterator[Path]:
    root = Path(path)
    if root.is_file():
        yield root
        return
    if not root.is_dir():
        raise FileNotFoundError(f"no such file or directory: {root}")
    for child in sorted(root.iterdir()):
        if child.is_file() and child.suffix in SUPPORTED_SUFFIXES:
            yield child


def load_documents(
    path: Union[str, Path],
    split_field: str = "body",
    *,
    summaries: Optional[List[FileSummary]] = None,
) -> List[Document]:
    """Load every document under ``path`` (a file or a directory).

    Files that cannot be read or parsed are logged and skipped; the rest of
    the import goes ahead. Pass ``summaries`` to collect per-file counts.
    """
    documents: List[Document] = []
    for file in iter_files(path):
        start = time.perf_counter()
        try:
            records, docs = read_file(file, split_field)
        except (OSError, ValueError) as exc:
            logger.warning(f"Skipping {file.name}: {exc}")
            continue
        elapsed = time.perf_counter() - start
        logger.debug(f"Loaded {len(docs)} documents from {file.name} in {elapsed * 1000:.1f}ms")
        if summaries is not None:
            summaries.append(FileSummary(file.name, records, len(docs), elapsed))
        documents.extend(docs)
    logger.info(f"Loaded {len(documents)} documents from {path}")
    return documents
