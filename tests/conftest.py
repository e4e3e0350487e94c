"""
Pytest configuration and fixtures for pocketflow_bulk tests.
"""

import asyncio
import pytest

from pocketflow_bulk import BatchProcessor, QuotaRegistry, QuotaTracker


class FakeClock:
    """Controllable clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)


@pytest.fixture
def fake_clock():
    """A fresh fake clock starting at a fixed epoch."""
    return FakeClock()


@pytest.fixture
def quota():
    """Quota tracker without admission spacing, so tests run fast."""
    return QuotaTracker(window_limit=1000, window_seconds=3600, min_interval=0)


@pytest.fixture
def processor(quota):
    """Processor with an isolated quota and no pause between chunks."""
    return BatchProcessor(quota=quota, inter_chunk_pause=0)


@pytest.fixture(autouse=True)
def reset_registry():
    """Keep process-wide quota trackers from leaking between tests."""
    QuotaRegistry.reset()
    yield
    QuotaRegistry.reset()


@pytest.fixture
def sample_items():
    """Sample work items for batch processing tests."""
    return [f"item-{i}" for i in range(1, 11)]


@pytest.fixture
def large_batch():
    """51 items, enough for three chunks of 25."""
    return [f"item-{i}" for i in range(1, 52)]
