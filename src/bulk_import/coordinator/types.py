from __future__ import annotations

from typing import Awaitable, Callable, Optional, Protocol, TypeVar, runtime_checkable

from ..models import Document

T = TypeVar("T")

BackpressureCallback = Callable[[], Awaitable[None]]
ProgressCallback = Callable[[int, Optional[int]], Awaitable[None]]


class QueueFullError(Exception):
    """Raised by BoundedQueue.put when the 'error' overflow strategy is in use."""


class QueueClosed(Exception):
    """Raised on put after close, and on get once a closed queue is drained."""


@runtime_checkable
class DocumentStore(Protocol):
    """Store client the executor writes through.

    ``write`` returns the request charge (RCU) of the call or raises one of
    RateLimited, Conflict, TransientWriteFailure, FatalWriteError.
    """

    async def write(self, document: Document, partition_key: str) -> float: ...

    async def read_provisioned_capacity(self) -> Optional[int]: ...
