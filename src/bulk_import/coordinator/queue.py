from __future__ import annotations

import asyncio
from typing import Generic, List, Literal, Optional, TypeVar

from .types import BackpressureCallback, QueueClosed, QueueFullError

T = TypeVar("T")
OverflowStrategy = Literal["block", "error"]

_CLOSED = object()


class BoundedQueue(Generic[T]):
    """Bounded, closable queue with high/low watermarks and overflow strategies.

    Producers suspend on ``put`` while the queue is full ("block") or get
    QueueFullError ("error"). ``close`` lets consumers drain what is left and
    then raises QueueClosed from ``get``; ``abort`` discards pending items and
    wakes every waiter.
    """

    def __init__(
        self,
        capacity: int,
        high_watermark: int | None = None,
        low_watermark: int | None = None,
        *,
        overflow_strategy: OverflowStrategy = "block",
        on_high: Optional[BackpressureCallback] = None,
        on_low: Optional[BackpressureCallback] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self._capacity = capacity
        # one extra slot so the close marker always fits
        self._q: asyncio.Queue = asyncio.Queue(maxsize=capacity + 1)
        self._size = 0  # items only, marker excluded
        self._not_full = asyncio.Condition()

        self._high_wm = (
            high_watermark if high_watermark is not None else max(1, int(0.8 * capacity))
        )
        self._low_wm = low_watermark if low_watermark is not None else int(0.5 * capacity)
        self._overflow = overflow_strategy
        self._on_high = on_high
        self._on_low = on_low

        self._high_fired = False  # avoid duplicate signals
        self._closed = False
        self._waker: Optional[asyncio.Future] = None

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return self._size

    @property
    def closed(self) -> bool:
        return self._closed

    def full(self) -> bool:
        return self._size >= self._capacity

    async def put(self, item: T) -> None:
        """Put item according to overflow policy; emits high watermark once."""
        if self._closed:
            raise QueueClosed("queue is closed")

        if self._overflow == "error" and self.full():
            raise QueueFullError("BoundedQueue is full")

        async with self._not_full:
            await self._not_full.wait_for(lambda: self._closed or not self.full())
            if self._closed:
                raise QueueClosed("queue is closed")
            self._size += 1
            self._q.put_nowait(item)

        await self._maybe_signal_high()

    async def get(self, timeout: float | None = None) -> T:
        """Get item with optional timeout; emits low watermark when recovering.

        Raises QueueClosed once the queue is closed and drained.
        """
        if timeout is None:
            item = await self._q.get()
        else:
            item = await asyncio.wait_for(self._q.get(), timeout=timeout)

        if item is _CLOSED:
            # leave the marker for the other consumers
            self._q.put_nowait(_CLOSED)
            raise QueueClosed("queue is closed")

        self._size -= 1
        async with self._not_full:
            self._not_full.notify()
        await self._maybe_signal_low()
        return item

    async def close(self) -> None:
        """Signal end-of-stream; pending items stay available to consumers."""
        if self._closed:
            return
        self._closed = True
        self._q.put_nowait(_CLOSED)
        async with self._not_full:
            self._not_full.notify_all()

    def abort(self) -> List[T]:
        """Close immediately, discarding pending items. Returns the discarded items."""
        self._closed = True
        dropped: List[T] = []
        while True:
            try:
                item = self._q.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is not _CLOSED:
                dropped.append(item)
        self._size = 0
        self._q.put_nowait(_CLOSED)
        # blocked producers re-check the closed flag on their next wakeup
        self._waker = asyncio.ensure_future(self._wake_producers())
        return dropped

    async def _wake_producers(self) -> None:
        async with self._not_full:
            self._not_full.notify_all()

    async def _maybe_signal_high(self) -> None:
        if not self._high_fired and self._size >= self._high_wm:
            self._high_fired = True
            if self._on_high:
                await self._on_high()

    async def _maybe_signal_low(self) -> None:
        if self._high_fired and self._size <= self._low_wm:
            self._high_fired = False
            if self._on_low:
                await self._on_low()
