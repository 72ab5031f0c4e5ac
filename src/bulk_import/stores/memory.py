"""
In-process document store with provisioned-throughput admission control.

Charges every write ``base_cost + cost_per_kb * size/1024`` RCU against a
one-second window; a write that would push the window past ``capacity`` is
rejected with RateLimited and a retry hint pointing at the next window.
Useful for dry runs, demos and tests.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..errors import RateLimited
from ..models import Document


class MemoryDocumentStore:
    def __init__(
        self,
        capacity: Optional[int] = 10_000,
        *,
        base_cost: float = 5.0,
        cost_per_kb: float = 1.0,
        latency: float = 0.0,
        failures: Optional[Mapping[str, Sequence[BaseException]]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._capacity = capacity
        self._base_cost = base_cost
        self._cost_per_kb = cost_per_kb
        self._latency = latency
        self._clock = clock or time.monotonic
        # scripted errors per document id, raised in order before writes succeed
        self._failures: Dict[str, List[BaseException]] = {
            k: list(v) for k, v in (failures or {}).items()
        }

        self._window_start = self._clock()
        self._window_used = 0.0

        self.documents: Dict[Tuple[str, str], dict] = {}
        self.write_calls = 0
        self.rejections = 0

    def charge_for(self, document: Document) -> float:
        return round(self._base_cost + self._cost_per_kb * document.size_bytes() / 1024, 2)

    async def write(self, document: Document, partition_key: str) -> float:
        self.write_calls += 1
        if self._latency:
            await asyncio.sleep(self._latency)

        scripted = self._failures.get(document.id)
        if scripted:
            raise scripted.pop(0)

        cost = self.charge_for(document)
        if self._capacity is not None:
            now = self._clock()
            if now - self._window_start >= 1.0:
                self._window_start = now
                self._window_used = 0.0
            if self._window_used + cost > self._capacity:
                self.rejections += 1
                retry_after = max(0.0, 1.0 - (now - self._window_start))
                raise RateLimited("request rate is large", retry_after=retry_after)
            self._window_used += cost

        # upsert keyed by (partition, id): retried duplicates overwrite
        self.documents[(partition_key, document.id)] = document.to_wire()
        return cost

    async def read_provisioned_capacity(self) -> Optional[int]:
        return self._capacity

    def __len__(self) -> int:
        return len(self.documents)
