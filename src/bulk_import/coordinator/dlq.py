"""
File-based dead letter queue (NDJSON) for batches the executor gave up on.

Each line holds one failed batch: timestamp, error text, caller metadata and
the documents in their wire form plus partition key, so they can be replayed.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Sequence

from loguru import logger

from ..models import Document


@dataclass(frozen=True)
class DLQRecord:
    ts: float
    error: str
    documents: List[Document]
    metadata: Dict[str, Any] = field(default_factory=dict)


class DeadLetterQueue:
    def __init__(self, path: str | Path, *, mkdirs: bool = True):
        self._path = Path(path)
        if mkdirs:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def save(
        self,
        documents: Sequence[Document],
        error: BaseException | str,
        metadata: Dict[str, Any] | None = None,
    ) -> None:
        err = error if isinstance(error, str) else f"{type(error).__name__}: {error}"
        line = json.dumps(
            {
                "ts": time.time(),
                "error": err,
                "metadata": metadata or {},
                "documents": [
                    {"partition_key": d.partition_key, "payload": d.to_wire()} for d in documents
                ],
            },
            default=str,
        )
        async with self._lock:
            await asyncio.to_thread(self._append, line)
        logger.debug(f"DLQ: saved {len(documents)} documents to {self._path}")

    async def replay(self, max_records: int | None = None) -> List[DLQRecord]:
        if not self._path.exists():
            return []
        async with self._lock:
            lines = await asyncio.to_thread(self._read_lines)

        records: List[DLQRecord] = []
        for lineno, raw in enumerate(lines, start=1):
            if max_records is not None and len(records) >= max_records:
                break
            if not raw.strip():
                continue
            try:
                data = json.loads(raw)
                docs = [
                    Document.from_wire(d["payload"], d["partition_key"]) for d in data["documents"]
                ]
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning(f"DLQ: skipping unreadable line {lineno} in {self._path}: {exc}")
                continue
            records.append(
                DLQRecord(
                    ts=float(data.get("ts", 0.0)),
                    error=str(data.get("error", "")),
                    documents=docs,
                    metadata=dict(data.get("metadata") or {}),
                )
            )
        return records

    def _append(self, line: str) -> None:
        with open(self._path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def _read_lines(self) -> List[str]:
        with open(self._path, "r", encoding="utf-8") as f:
            return f.readlines()
