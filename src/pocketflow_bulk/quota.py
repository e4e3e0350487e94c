"""
Quota Tracker
=============

Admission control against a fixed-window request quota (e.g. 1000 requests
per hour) shared by every batch run in the process.

Admission degrades smoothly instead of failing:

- below the warning threshold callers are admitted immediately
- between warning and critical they are delayed on a quadratic curve
- at or above critical they wait in a FIFO admission queue until the
  window resets or the server reports fresh headroom

Quota pressure never raises; it only delays or queues.
"""

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Mapping, Optional

import structlog

from .exceptions import BatchCancelledError
from .models import CancellationToken

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]

REMAINING_HEADER = "x-ratelimit-remaining"
LIMIT_HEADER = "x-ratelimit-limit"
RESET_HEADER = "x-ratelimit-reset"


def parse_header_value(value: Any) -> Optional[int]:
    """Parse an integer quota value leniently, returning None when unusable."""
    if value is None or value == "":
        return None
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        try:
            return int(float(text))
        except ValueError:
            return None


@dataclass
class QuotaState:
    """Live quota counters. ``window_reset_at`` is in epoch seconds."""
    window_limit: int
    consumed: int = 0
    window_reset_at: float = 0.0


@dataclass(frozen=True)
class QuotaInfo:
    """Point-in-time quota view. ``reset`` is in whole epoch seconds."""
    limit: int
    remaining: int
    reset: int


@dataclass(frozen=True)
class QuotaFeedback:
    """Authoritative quota values reported by the server."""
    remaining: Optional[int] = None
    limit: Optional[int] = None
    reset_epoch: Optional[int] = None

    @classmethod
    def from_headers(cls, headers: Optional[Mapping[str, Any]]) -> "QuotaFeedback":
        """Read the ``x-ratelimit-*`` headers, matching names case-insensitively."""
        if not headers or not hasattr(headers, "items"):
            return cls()
        lowered = {str(k).lower(): v for k, v in headers.items()}
        return cls(
            remaining=parse_header_value(lowered.get(REMAINING_HEADER)),
            limit=parse_header_value(lowered.get(LIMIT_HEADER)),
            reset_epoch=parse_header_value(lowered.get(RESET_HEADER)),
        )


class AdmissionQueue:
    """
    Strict FIFO of callers blocked on an exhausted quota.

    A single drain task releases waiters one at a time. Each release consumes
    one quota unit on the waiter's behalf, so the waiter returns already
    admitted. The drain task exits when the queue is empty and is restarted
    by the next enqueue or wake-up.
    """

    def __init__(self, tracker: "QuotaTracker"):
        self._tracker = tracker
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._waiters: Deque[asyncio.Future] = deque()
        self._wakeup: Optional[asyncio.Event] = None
        self._drain_task: Optional[asyncio.Task] = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Attach to the running loop, dropping state left on a previous one."""
        if self._loop is loop:
            return
        self._loop = loop
        self._waiters = deque()
        self._wakeup = asyncio.Event()
        self._drain_task = None

    @property
    def pending(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    def __len__(self) -> int:
        return self.pending

    def enqueue(self) -> "asyncio.Future[None]":
        """Append a waiter; the returned future resolves once it is admitted."""
        self.bind(asyncio.get_running_loop())
        waiter = self._loop.create_future()
        self._waiters.append(waiter)
        self._ensure_draining()
        return waiter

    def wake(self) -> None:
        """Re-check eligibility now instead of at the scheduled recheck."""
        if self._loop is None or not self._waiters:
            return
        if self._wakeup is not None:
            self._wakeup.set()
        self._ensure_draining()

    def _ensure_draining(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = self._loop.create_task(self._drain())

    def _release_head(self) -> bool:
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                # The caller was cancelled while queued.
                continue
            self._tracker._consume()
            waiter.set_result(None)
            logger.debug(
                "quota_released",
                consumed=self._tracker.state.consumed,
                limit=self._tracker.state.window_limit,
                queued=self.pending,
            )
            return True
        return False

    async def _drain(self) -> None:
        tracker = self._tracker
        while self.pending:
            tracker._roll_window()
            if tracker.state.consumed < tracker.state.window_limit:
                gap = tracker._spacing_gap()
                if gap > 0:
                    await tracker._sleep(gap)
                    continue
                if not self._release_head():
                    break
                if self.pending and tracker.usage_ratio < tracker.critical_threshold:
                    continue
            if self.pending:
                await self._pause(tracker._recheck_delay())

    async def _pause(self, timeout: float) -> None:
        self._wakeup.clear()
        woken = asyncio.ensure_future(self._wakeup.wait())
        timer = asyncio.ensure_future(self._tracker._sleep(timeout))
        try:
            await asyncio.wait({woken, timer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            woken.cancel()
            timer.cancel()


class QuotaTracker:
    """
    Fixed-window quota tracker with progressive delay and FIFO queueing.

    The window resets lazily: the first call after ``window_reset_at`` zeroes
    the counter and opens a new window, no background timer is involved.

    Args:
        window_limit: Operations allowed per window (default: 1000)
        window_seconds: Window length in seconds (default: 3600)
        min_interval: Minimum spacing between admissions in seconds (default: 0.1)
        warning_threshold: Usage ratio where progressive delay starts (default: 0.9)
        critical_threshold: Usage ratio where callers are queued (default: 0.95)
        max_delay: Delay in seconds reached at the critical threshold (default: 5.0)
        max_recheck: Longest wait between queue eligibility checks (default: 60.0)
        clock: Epoch-seconds clock, injectable for tests
        sleep: Coroutine function used for every wait, injectable for tests

    Example:
        ```python
        quota = QuotaTracker(window_limit=1000, window_seconds=3600)

        async def call(pin_id):
            await quota.admit()
            response = await client.get(f"/pins/{pin_id}")
            quota.update_from_headers(response.headers)
            return response.json()
        ```
    """

    def __init__(
        self,
        window_limit: int = 1000,
        window_seconds: float = 3600.0,
        min_interval: float = 0.1,
        warning_threshold: float = 0.9,
        critical_threshold: float = 0.95,
        max_delay: float = 5.0,
        max_recheck: float = 60.0,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
    ):
        if window_limit < 1:
            raise ValueError("window_limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if min_interval < 0:
            raise ValueError("min_interval must not be negative")
        if not 0 < warning_threshold < critical_threshold <= 1:
            raise ValueError(
                "thresholds must satisfy 0 < warning_threshold < critical_threshold <= 1"
            )
        if max_delay < 0:
            raise ValueError("max_delay must not be negative")
        if max_recheck <= 0:
            raise ValueError("max_recheck must be positive")

        self._initial_limit = window_limit
        self.window_seconds = window_seconds
        self.min_interval = min_interval
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.max_delay = max_delay
        self.max_recheck = max_recheck
        self._clock = clock
        self._sleep = sleep

        self.state = QuotaState(window_limit=window_limit)
        self._last_admission: Optional[float] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock: Optional[asyncio.Lock] = None
        self._queue = AdmissionQueue(self)

    @property
    def window_limit(self) -> int:
        return self.state.window_limit

    @property
    def consumed(self) -> int:
        return self.state.consumed

    @property
    def usage_ratio(self) -> float:
        return self.state.consumed / self.state.window_limit

    @property
    def queue_length(self) -> int:
        return self._queue.pending

    def progressive_delay(self, ratio: float) -> float:
        """
        Delay in seconds for a given usage ratio.

        Zero below the warning threshold, rising quadratically to
        ``max_delay`` at the critical threshold.
        """
        if ratio < self.warning_threshold:
            return 0.0
        span = self.critical_threshold - self.warning_threshold
        excess = min(1.0, (ratio - self.warning_threshold) / span)
        return self.max_delay * excess ** 2

    async def admit(self, token: Optional[CancellationToken] = None) -> None:
        """
        Wait until one quota unit is available, then consume it.

        Never raises for quota reasons; asyncio cancellation of the caller
        while queued is honoured and no unit is consumed for it.

        Args:
            token: Cancellation token observed during every wait. Once it
                is cancelled the caller stops waiting, no unit is consumed
                and BatchCancelledError is raised.
        """
        self._bind_loop()
        if token is not None:
            token.raise_if_cancelled()
        async with self._lock:
            if token is not None:
                token.raise_if_cancelled()
            self._roll_window()
            gap = self._spacing_gap()
            if gap > 0:
                logger.debug("quota_spacing_delay", delay=gap, queued=self.queue_length)
                await self._wait(gap, token)
                self._roll_window()

            ratio = self.usage_ratio
            if ratio >= self.critical_threshold or self._queue.pending:
                logger.info(
                    "quota_queued",
                    usage_ratio=round(ratio, 4),
                    time_until_reset=self.time_until_reset(),
                    queued=self.queue_length + 1,
                )
                release = self._queue.enqueue()
            else:
                delay = self.progressive_delay(ratio)
                if delay > 0:
                    logger.warning(
                        "quota_warning_delay",
                        usage_ratio=round(ratio, 4),
                        delay=delay,
                        queued=self.queue_length,
                    )
                    await self._wait(delay, token)
                self._consume()
                return
        await self._await_release(release, token)

    async def _await_release(
        self,
        release: "asyncio.Future[None]",
        token: Optional[CancellationToken],
    ) -> None:
        if token is None:
            await release
            return

        def abandon() -> None:
            if not release.done():
                release.set_exception(BatchCancelledError(token.reason))
                self._queue.wake()

        token.add_callback(abandon)
        try:
            await release
        finally:
            token.remove_callback(abandon)

        if token.cancelled:
            # Released, but cancelled before the caller could use the unit.
            self._refund()
            token.raise_if_cancelled()

    async def _wait(self, seconds: float, token: Optional[CancellationToken]) -> None:
        """Sleep, returning early with BatchCancelledError if the token fires."""
        if token is None:
            await self._sleep(seconds)
            return

        fired = self._loop.create_future()

        def on_cancel() -> None:
            if not fired.done():
                fired.set_result(None)

        token.add_callback(on_cancel)
        timer = asyncio.ensure_future(self._sleep(seconds))
        try:
            await asyncio.wait({timer, fired}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            token.remove_callback(on_cancel)
            timer.cancel()
            fired.cancel()
        token.raise_if_cancelled()

    def update_from_server_feedback(
        self,
        remaining: Any = None,
        limit: Any = None,
        reset_epoch: Any = None,
    ) -> None:
        """
        Overwrite local counters with values reported by the server.

        Unusable values are ignored. When the server reports headroom and
        callers are queued, the queue is re-checked immediately.

        Args:
            remaining: Requests left in the current window
            limit: Window limit as reported by the server
            reset_epoch: Epoch seconds when the server window resets
        """
        remaining = parse_header_value(remaining)
        limit = parse_header_value(limit)
        reset_epoch = parse_header_value(reset_epoch)

        if limit is not None and limit > 0:
            self.state.window_limit = limit
        if remaining is not None:
            self.state.consumed = max(0, self.state.window_limit - remaining)
        if reset_epoch is not None and reset_epoch > 0:
            self.state.window_reset_at = float(reset_epoch)

        if remaining is not None or limit is not None or reset_epoch is not None:
            logger.debug(
                "quota_feedback_applied",
                remaining=remaining,
                limit=self.state.window_limit,
                consumed=self.state.consumed,
                reset_at=self.state.window_reset_at,
            )
        if remaining is not None and remaining > 0 and self._queue.pending:
            self._queue.wake()

    def update_from_headers(self, headers: Optional[Mapping[str, Any]]) -> None:
        """Apply ``x-ratelimit-*`` response headers. Anything else is ignored."""
        feedback = QuotaFeedback.from_headers(headers)
        self.update_from_server_feedback(
            feedback.remaining, feedback.limit, feedback.reset_epoch
        )

    def info(self) -> QuotaInfo:
        now = self._clock()
        limit = self.state.window_limit
        if self.state.window_reset_at > 0 and now > self.state.window_reset_at:
            return QuotaInfo(
                limit=limit,
                remaining=limit,
                reset=math.ceil(now + self.window_seconds),
            )
        return QuotaInfo(
            limit=limit,
            remaining=max(0, limit - self.state.consumed),
            reset=math.ceil(self.state.window_reset_at),
        )

    def is_approaching_limit(self) -> bool:
        return self.usage_ratio >= self.warning_threshold

    def is_limit_exceeded(self) -> bool:
        if self._clock() > self.state.window_reset_at:
            return False
        return self.state.consumed >= self.state.window_limit

    def time_until_reset(self) -> float:
        return max(0.0, self.state.window_reset_at - self._clock())

    def reset(self) -> None:
        """Restore a full quota and release anyone waiting for it."""
        self.state = QuotaState(window_limit=self._initial_limit)
        self._last_admission = None
        self._queue.wake()

    def _bind_loop(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            self._loop = loop
            self._lock = asyncio.Lock()
            self._queue.bind(loop)

    def _roll_window(self) -> float:
        now = self._clock()
        if now > self.state.window_reset_at:
            if self.state.consumed > 0:
                logger.info(
                    "quota_window_reset",
                    consumed=self.state.consumed,
                    window_seconds=self.window_seconds,
                )
            self.state.consumed = 0
            self.state.window_reset_at = now + self.window_seconds
        return now

    def _consume(self) -> None:
        self.state.consumed += 1
        self._last_admission = self._clock()

    def _refund(self) -> None:
        self.state.consumed = max(0, self.state.consumed - 1)
        logger.debug("quota_refunded", consumed=self.state.consumed)
        if self._queue.pending:
            self._queue.wake()

    def _spacing_gap(self) -> float:
        """Seconds still to wait before the next admission may happen."""
        if self._last_admission is None:
            return 0.0
        return self.min_interval - (self._clock() - self._last_admission)

    def _recheck_delay(self) -> float:
        return max(min(self.time_until_reset(), self.max_recheck), self.min_interval, 0.001)

    def __repr__(self) -> str:
        return (
            f"QuotaTracker(window_limit={self.state.window_limit}, "
            f"consumed={self.state.consumed}, "
            f"window_seconds={self.window_seconds})"
        )
