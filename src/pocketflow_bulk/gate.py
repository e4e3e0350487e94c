"""
Concurrency Gate
================

Bounds how many operations are in flight at once. Orthogonal to the quota
tracker: the gate limits simultaneous operations, the tracker limits
operations per time window. Every work item passes through both.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


class ConcurrencyGate:
    """
    Counting semaphore for async operations.

    Waiters are resumed in arrival order as permits are released, and a
    permit is always given back, whether the task returns or raises.

    Args:
        permits: Maximum simultaneous operations (default: 5)

    Example:
        ```python
        gate = ConcurrencyGate(permits=3)

        async def fetch(pin_id):
            return await gate.run(lambda: client.get_pin(pin_id))

        results = await asyncio.gather(*[fetch(p) for p in pin_ids])
        ```
    """

    def __init__(self, permits: int = 5):
        if permits < 1:
            raise ValueError("permits must be at least 1")

        self._permits = permits
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._in_flight = 0
        self._peak_in_flight = 0

    @property
    def permits(self) -> int:
        """Total permits managed by the gate."""
        return self._permits

    @property
    def in_flight(self) -> int:
        """Permits currently held."""
        return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        """Highest number of permits held at once since the last reset."""
        return self._peak_in_flight

    async def acquire(self) -> None:
        """
        Wait for a free permit and take it.

        Raises:
            asyncio.CancelledError: If the waiting coroutine is cancelled
        """
        await self._get_semaphore().acquire()
        self._in_flight += 1
        self._peak_in_flight = max(self._peak_in_flight, self._in_flight)

    def release(self) -> None:
        """
        Give a permit back.

        Must be paired with acquire(). Using ``run`` or the context manager
        handles this automatically.
        """
        self._in_flight -= 1
        self._get_semaphore().release()

    async def run(self, task: Callable[[], Awaitable[T]]) -> T:
        """Run ``task`` under a permit, releasing it on every exit path."""
        async with self:
            return await task()

    async def __aenter__(self) -> "ConcurrencyGate":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def reset_stats(self) -> None:
        """Forget the recorded peak. Held permits are not affected."""
        self._peak_in_flight = self._in_flight

    def _get_semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._loop is not loop:
            self._semaphore = asyncio.Semaphore(self._permits)
            self._loop = loop
        return self._semaphore

    def __repr__(self) -> str:
        return f"ConcurrencyGate(permits={self._permits}, in_flight={self._in_flight})"
