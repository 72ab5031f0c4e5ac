"""
Batch planner: documents in, write batches out.

Two passes, both pure (no I/O, no concurrency):

1. ``pack`` - greedy size/count packing in input order. Every emitted batch
   holds at most ``max_batch_count`` documents and ``max_batch_bytes`` bytes,
   except a singleton holding one oversized document (never split).
2. ``rebalance`` - applied to each packed batch on its own: documents are
   grouped by partition key (first-seen key order, document order inside a
   group) and re-flattened under the count cap so same-partition writes sit
   next to each other. A small trailing partial batch is merged into the
   previous output batch when it fits.

The byte cap is not re-checked in pass 2: it only reorders within a packed
batch. With the default ``merge_across_batches=False`` a trailing partial
never merges into output from a different packed batch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger

from ..errors import SizingFailure
from ..models import Batch, Document

MAX_BATCH_COUNT = 100
MAX_BATCH_BYTES = 2_000_000
MIN_BATCH_SIZE = 25

Sizer = Callable[[Document], int]


def document_size(doc: Document) -> int:
    return doc.size_bytes()


@dataclass
class _SizeCache:
    """Per-pass size cache; sizing failures count as 0 and are logged once."""

    sizer: Sizer
    # entries hold the document so its id() stays unique for the pass
    _sizes: Dict[int, Tuple[Document, int]] = field(default_factory=dict)

    def __call__(self, doc: Document) -> int:
        key = id(doc)
        cached = self._sizes.get(key)
        if cached is not None:
            return cached[1]
        try:
            size = max(0, int(self.sizer(doc)))
        except SizingFailure as exc:
            logger.warning(f"Error calculating document size for {doc.id}: {exc}")
            size = 0
        self._sizes[key] = (doc, size)
        return size


class BatchPlanner:
    def __init__(
        self,
        *,
        max_batch_count: int = MAX_BATCH_COUNT,
        max_batch_bytes: int = MAX_BATCH_BYTES,
        min_batch_size: int = MIN_BATCH_SIZE,
        merge_across_batches: bool = False,
        sizer: Optional[Sizer] = None,
    ):
        if max_batch_count <= 0:
            raise ValueError("max_batch_count must be > 0")
        if max_batch_bytes <= 0:
            raise ValueError("max_batch_bytes must be > 0")
        self.max_batch_count = max_batch_count
        self.max_batch_bytes = max_batch_bytes
        self.min_batch_size = min_batch_size
        self.merge_across_batches = merge_across_batches
        self._sizer = sizer or document_size

    # --------------- public API

    def plan(self, documents: Iterable[Document]) -> List[Batch]:
        sizes = _SizeCache(self._sizer)
        out: List[List[Document]] = []
        for packed in self._pack(documents, sizes):
            previous = out[-1] if (self.merge_across_batches and out) else None
            groups = self._rebalance(packed, previous)
            out.extend(groups)
        return [Batch.of(docs) for docs in out]

    def pack(self, documents: Iterable[Document]) -> List[Batch]:
        """Pass 1 only."""
        return [Batch.of(docs) for docs in self._pack(documents, _SizeCache(self._sizer))]

    def rebalance(self, batch: Sequence[Document]) -> List[Batch]:
        """Pass 2 only, for a single batch."""
        return [Batch.of(docs) for docs in self._rebalance(list(batch), None)]

    def analyze(self, batches: Iterable[Iterable[Document]]) -> Tuple[int, int]:
        """Return (batch_count, total_bytes); unsizeable documents count as 0."""
        sizes = _SizeCache(self._sizer)
        count = 0
        total = 0
        for batch in batches:
            count += 1
            total += sum(sizes(doc) for doc in batch)
        return count, total

    # --------------- internals

    def _pack(self, documents: Iterable[Document], sizes: _SizeCache) -> List[List[Document]]:
        batches: List[List[Document]] = []
        current: List[Document] = []
        current_bytes = 0

        for doc in documents:
            doc_size = sizes(doc)
            if (
                len(current) >= self.max_batch_count
                or current_bytes + doc_size > self.max_batch_bytes
            ):
                if current:
                    batches.append(current)
                    current = []
                    current_bytes = 0
            current.append(doc)
            current_bytes += doc_size

        if current:
            batches.append(current)
        return batches

    def _rebalance(
        self, batch: List[Document], previous: Optional[List[Document]]
    ) -> List[List[Document]]:
        """Regroup one packed batch by partition key.

        ``previous`` is the last output batch of the preceding packed batch,
        only passed when merging across packed batches is enabled; it is
        extended in place when the trailing partial merges into it.
        """
        groups: Dict[str, List[Document]] = {}
        for doc in batch:
            groups.setdefault(doc.partition_key, []).append(doc)

        out: List[List[Document]] = []
        current: List[Document] = []
        for members in groups.values():
            for doc in members:
                current.append(doc)
                if len(current) >= self.max_batch_count:
                    out.append(current)
                    current = []

        if current:
            target = out[-1] if out else previous
            if (
                target is not None
                and len(current) < self.min_batch_size
                and len(target) + len(current) <= self.max_batch_count
            ):
                target.extend(current)
            else:
                out.append(current)
        return out
