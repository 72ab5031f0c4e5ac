"""
Throughput governor: the store's provisioned RCU/s modelled as a token bucket
plus a per-partition minimum inter-access interval.

All credit accounting happens under a single asyncio.Lock, so admission
decisions are strictly serialized. The lock is never held across a store
write, only across the admission waits themselves.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from typing import Awaitable, Callable, Dict, Optional

from loguru import logger

from ..errors import FatalConfiguration, RateLimited
from ..metrics.registry import GOVERNOR_WAIT_SECONDS

PARTITION_COOLDOWN_MS = 100
DISTRIBUTED_KEY_BUCKETS = 10
BUFFERED_BYTES_THRESHOLD = 1024 * 1024 * 1024  # 1 GiB

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class ThroughputGovernor:
    """Shared rate-budget state for one import run.

    Example:
        governor = ThroughputGovernor(capacity=10_000)
        await governor.admit(estimated_cost, doc.partition_key)
        cost = await store.write(doc, doc.partition_key)
        await governor.settle(estimated_cost, cost)
    """

    def __init__(
        self,
        capacity: float,
        *,
        cooldown_ms: float = PARTITION_COOLDOWN_MS,
        rejection_backoff_base_sec: float = 1.0,
        buffered_bytes_threshold: int = BUFFERED_BYTES_THRESHOLD,
        backpressure_pause_sec: float = 1.0,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleep] = None,
    ):
        if capacity <= 0:
            raise FatalConfiguration(f"provisioned capacity must be > 0, got {capacity}")

        self._capacity = float(capacity)
        self._cooldown = max(0.0, cooldown_ms / 1000.0)
        self._rejection_base = rejection_backoff_base_sec
        self._buffered_threshold = buffered_bytes_threshold
        self._pause = backpressure_pause_sec
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

        # RateBudget
        self._remaining = self._capacity
        self._last_replenish = self._clock()
        # PartitionAccessLog: grows with distinct keys seen
        self._last_access: Dict[str, float] = {}

        self._buffered_bytes = 0
        self._lock = asyncio.Lock()

    @property
    def capacity(self) -> float:
        return self._capacity

    @property
    def remaining_credits(self) -> float:
        return self._remaining

    @property
    def buffered_bytes(self) -> int:
        return self._buffered_bytes

    @property
    def tracked_partitions(self) -> int:
        return len(self._last_access)

    # --------------- admission

    async def admit(self, cost: float, partition_key: str) -> float:
        """Wait until ``cost`` credits may be spent on ``partition_key``.

        Returns the total number of seconds the caller was suspended.
        """
        waited = 0.0
        async with self._lock:
            now = self._clock()
            elapsed = max(0.0, now - self._last_replenish)
            self._remaining = min(self._capacity, self._remaining + elapsed * self._capacity)

            if self._remaining < cost:
                # not re-replenished after the wait: the debt is carried into
                # the next call's elapsed-time replenishment
                delay = (cost - self._remaining) / self._capacity
                await self._sleep(delay)
                waited += delay
                GOVERNOR_WAIT_SECONDS.labels("credit").observe(delay)

            last = self._last_access.get(partition_key)
            if last is not None and self._cooldown > 0:
                since = self._clock() - last
                if since < self._cooldown:
                    delay = self._cooldown - since
                    await self._sleep(delay)
                    waited += delay
                    GOVERNOR_WAIT_SECONDS.labels("cooldown").observe(delay)

            self._remaining -= cost
            now = self._clock()
            self._last_replenish = now
            self._last_access[partition_key] = now
        return waited

    async def settle(self, estimated: float, actual: float) -> None:
        """Correct the pool once the store has reported the real charge."""
        if actual == estimated:
            return
        async with self._lock:
            self._remaining = min(self._capacity, self._remaining + (estimated - actual))

    async def on_rejection(self, error: BaseException, attempt: int) -> bool:
        """Back off after an admission-control rejection.

        Sleeps for the store's retry hint when it sent one, else for
        ``base * 2**attempt`` seconds, and returns True. Any other error is
        not retry-eligible at this layer: returns False without sleeping.
        """
        if not isinstance(error, RateLimited):
            return False
        if error.retry_after is not None:
            delay = max(0.0, error.retry_after)
        else:
            delay = self._rejection_base * (2**attempt)
        logger.debug(f"Rate limited (attempt {attempt}), backing off {delay:.3f}s")
        await self._sleep(delay)
        return True

    @staticmethod
    def distributed_key(base_key: str, buckets: int = DISTRIBUTED_KEY_BUCKETS) -> str:
        """Fan a logical key out to one of ``buckets`` stable sub-keys."""
        digest = hashlib.sha1(base_key.encode("utf-8")).digest()
        return f"{base_key}-{int.from_bytes(digest[:8], 'big') % buckets}"

    # --------------- producer-side backpressure

    def track_buffered(self, nbytes: int) -> None:
        self._buffered_bytes += max(0, nbytes)

    def release_buffered(self, nbytes: int) -> None:
        self._buffered_bytes = max(0, self._buffered_bytes - max(0, nbytes))

    async def memory_backpressure(self) -> bool:
        """Pause the caller while buffered-but-unwritten bytes exceed the threshold.

        Returns True if the caller was paused at least once.
        """
        paused = False
        while self._buffered_bytes > self._buffered_threshold:
            if not paused:
                logger.info(
                    f"Buffered bytes {self._buffered_bytes:,} above "
                    f"{self._buffered_threshold:,}; pausing producer"
                )
            paused = True
            await self._sleep(self._pause)
            GOVERNOR_WAIT_SECONDS.labels("backpressure").observe(self._pause)
        return paused
