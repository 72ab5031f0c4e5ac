"""
Pytest configuration and fixtures for bulk-import.

Provides cross-platform event loop configuration, a controllable clock and
document factories.
"""

import asyncio
import sys
from typing import List

import pytest

from bulk_import.models import Document

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` (or ``advance``) is called."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    """Fake clock; pass ``clock`` and ``clock.sleep`` to governor/executor."""
    return FakeClock()


def make_docs(n: int, partition_key: str = "p1", **body) -> List[Document]:
    return [
        Document(id=f"{partition_key}-{i}", partition_key=partition_key, body={"n": i, **body})
        for i in range(n)
    ]


@pytest.fixture
def docs_factory():
    """Build ``n`` small documents under one partition key."""
    return make_docs
