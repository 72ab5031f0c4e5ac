"""
Custom exceptions for the bulk import pipeline.

Store write failures are split into recoverable and non-recoverable classes so
the attempt loop can decide between backoff-and-retry and giving up.
"""

from __future__ import annotations

from typing import Optional, Sequence


class BulkImportError(Exception):
    """Base error for the bulk import pipeline."""

    pass


class StoreWriteError(BulkImportError):
    """A single document write failed at the store."""

    pass


class RateLimited(StoreWriteError):
    """Admission control rejected the request (store over its provisioned budget)."""

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class Conflict(StoreWriteError):
    """A document with the same id already exists (create semantics)."""

    pass


class TransientWriteFailure(StoreWriteError):
    """Temporary store errors that should be retried with backoff."""

    pass


class FatalWriteError(StoreWriteError):
    """Store errors that will not succeed on retry (bad request, auth, ...)."""

    pass


class SizingFailure(BulkImportError):
    """A document could not be serialized to compute its size."""

    pass


class FatalConfiguration(BulkImportError):
    """Unrecoverable startup error: invalid settings, capacity or connection failure."""

    pass


class BatchExhausted(BulkImportError):
    """A batch used every attempt without succeeding.

    Non-fatal at run level: reported to telemetry and the remaining batches
    keep going.
    """

    def __init__(
        self,
        documents: int,
        attempts: int,
        elapsed: float,
        last_error: Optional[BaseException] = None,
    ):
        self.documents = documents
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_error = last_error
        cause = f"{type(last_error).__name__}: {last_error}" if last_error else "unknown"
        super().__init__(
            f"batch of {documents} documents failed after {attempts} attempts "
            f"({elapsed:.2f}s): {cause}"
        )


_TRANSIENT_STATUSES: Sequence[int] = (408, 449, 500, 502, 503, 504)


def map_status_error(
    status: int, message: str = "", retry_after: Optional[float] = None
) -> StoreWriteError:
    """Map a store status code to the matching error class."""
    text = message or f"store returned HTTP {status}"
    if status == 429:
        return RateLimited(text, retry_after=retry_after)
    if status == 409:
        return Conflict(text)
    if status in _TRANSIENT_STATUSES or status >= 500:
        return TransientWriteFailure(text)
    return FatalWriteError(text)
