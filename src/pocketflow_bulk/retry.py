"""
Retry Policy
============

Bounded retries with linear backoff for a single work item. Every exception
is treated as transient; only cancellation escapes.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable

import structlog

from .exceptions import BatchCancelledError
from .models import BatchError, ItemOutcome

logger = structlog.get_logger(__name__)


class RetryPolicy:
    """
    Run an operation up to ``attempts`` times.

    After failed attempt ``n`` (1-based) with attempts remaining, waits
    ``delay_ms * n`` milliseconds. At least one attempt is always made, so
    ``attempts=0`` behaves like ``attempts=1``.

    Args:
        attempts: Total attempts per item
        delay_ms: Base backoff delay in milliseconds
        sleep: Coroutine function used for backoff waits
        clock: Epoch-seconds clock used to timestamp errors
    """

    def __init__(
        self,
        attempts: int = 3,
        delay_ms: float = 1000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        if attempts < 0:
            raise ValueError("attempts must not be negative")
        if delay_ms < 0:
            raise ValueError("delay_ms must not be negative")
        self.attempts = max(1, attempts)
        self.delay_ms = delay_ms
        self._sleep = sleep
        self._clock = clock

    def backoff(self, attempt_number: int) -> float:
        """Seconds to wait after the given failed attempt."""
        return self.delay_ms * attempt_number / 1000.0

    async def run(
        self,
        operation: Callable[[], Awaitable[Any]],
        item: Any,
        item_id: str,
    ) -> ItemOutcome:
        last_exc: BaseException = RuntimeError("Unknown error")
        for attempt in range(1, self.attempts + 1):
            try:
                value = await operation()
                return ItemOutcome(item=item, item_id=item_id, value=value)
            except BatchCancelledError:
                raise
            except Exception as exc:
                last_exc = exc
                if attempt < self.attempts:
                    delay = self.backoff(attempt)
                    logger.debug(
                        "item_attempt_failed",
                        item_id=item_id,
                        attempt=attempt,
                        retry_in=delay,
                        error=str(exc),
                    )
                    if delay > 0:
                        await self._sleep(delay)

        logger.warning(
            "item_failed",
            item_id=item_id,
            attempts=self.attempts,
            error=str(last_exc),
        )
        return ItemOutcome(
            item=item,
            item_id=item_id,
            error=BatchError(
                item_id=item_id,
                message=str(last_exc) or type(last_exc).__name__,
                attempt_number=self.attempts,
                timestamp=self._clock(),
            ),
        )

    def __repr__(self) -> str:
        return f"RetryPolicy(attempts={self.attempts}, delay_ms={self.delay_ms})"
