from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable

from ..errors import FatalWriteError


def default_retry_classifier(exc: BaseException) -> bool:
    """Everything except fatal store errors is worth another attempt.

    Cancellation and other non-Exception signals are never retried.
    """
    if not isinstance(exc, Exception):
        return False
    return not isinstance(exc, FatalWriteError)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and exponential backoff for batch writes.

    The defaults give ``2 ** attempt`` seconds: 2s after the first failed
    attempt, 4s after the second, and so on.
    """

    max_attempts: int = 6
    initial_backoff_ms: int = 2000
    max_backoff_ms: int = 600_000
    backoff_multiplier: float = 2.0
    jitter: bool = False
    classify_retryable: Callable[[BaseException], bool] = field(
        default=default_retry_classifier
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def next_backoff_ms(self, attempt: int) -> int:
        """Backoff after the given (1-based) failed attempt."""
        raw = self.initial_backoff_ms * (self.backoff_multiplier ** max(0, attempt - 1))
        capped = min(raw, self.max_backoff_ms)
        if self.jitter:
            capped = random.uniform(capped / 2, capped)
        return int(capped)
