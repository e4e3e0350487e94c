"""
Tests for the QuotaTracker and its admission queue.
"""

import asyncio
import time
import pytest

from pocketflow_bulk import (
    AdmissionQueue,
    BatchCancelledError,
    CancellationToken,
    QuotaFeedback,
    QuotaInfo,
    QuotaTracker,
)


def make_tracker(clock, **kwargs):
    kwargs.setdefault("min_interval", 0)
    return QuotaTracker(clock=clock, sleep=clock.sleep, **kwargs)


class TestQuotaTrackerInit:
    """Tests for QuotaTracker initialization."""

    def test_default_values(self):
        """Test default initialization values."""
        tracker = QuotaTracker()
        assert tracker.window_limit == 1000
        assert tracker.window_seconds == 3600.0
        assert tracker.min_interval == 0.1
        assert tracker.warning_threshold == 0.9
        assert tracker.critical_threshold == 0.95
        assert tracker.max_delay == 5.0
        assert tracker.consumed == 0

    def test_invalid_window_limit(self):
        with pytest.raises(ValueError, match="window_limit must be at least 1"):
            QuotaTracker(window_limit=0)

    def test_invalid_window_seconds(self):
        with pytest.raises(ValueError, match="window_seconds must be positive"):
            QuotaTracker(window_seconds=0)

    def test_invalid_thresholds(self):
        with pytest.raises(ValueError, match="thresholds"):
            QuotaTracker(warning_threshold=0.95, critical_threshold=0.9)

    def test_repr(self):
        repr_str = repr(QuotaTracker(window_limit=60, window_seconds=60))
        assert "window_limit=60" in repr_str
        assert "consumed=0" in repr_str


class TestProgressiveDelay:
    """Tests for the quadratic delay curve between warning and critical."""

    def test_zero_below_warning(self):
        tracker = QuotaTracker()
        assert tracker.progressive_delay(0.5) == 0.0
        assert tracker.progressive_delay(0.9) == 0.0

    def test_quadratic_midpoint(self):
        """Halfway through the band gives a quarter of the cap."""
        tracker = QuotaTracker()
        assert tracker.progressive_delay(0.925) == pytest.approx(1.25)

    def test_cap_at_critical(self):
        tracker = QuotaTracker()
        assert tracker.progressive_delay(0.95) == pytest.approx(5.0)
        assert tracker.progressive_delay(1.0) == pytest.approx(5.0)


class TestAdmission:
    """Tests for admit() below and inside the warning band."""

    @pytest.mark.asyncio
    async def test_immediate_below_warning(self, fake_clock):
        """Low usage admits without any wait."""
        tracker = make_tracker(fake_clock)

        for _ in range(5):
            await tracker.admit()

        assert tracker.consumed == 5
        assert fake_clock.sleeps == []

    @pytest.mark.asyncio
    async def test_no_delay_at_exact_warning(self, fake_clock):
        tracker = make_tracker(fake_clock)
        tracker.update_from_server_feedback(
            remaining=100, limit=1000, reset_epoch=int(fake_clock.now) + 3600
        )

        await tracker.admit()

        assert fake_clock.sleeps == []
        assert tracker.consumed == 901

    @pytest.mark.asyncio
    async def test_boundary_949_is_delayed_not_queued(self, fake_clock):
        """At 949/1000 the caller is admitted synchronously after a delay."""
        tracker = make_tracker(fake_clock)
        tracker.update_from_server_feedback(
            remaining=51, limit=1000, reset_epoch=int(fake_clock.now) + 3600
        )
        assert tracker.consumed == 949

        await tracker.admit()

        assert fake_clock.sleeps == [pytest.approx(5.0 * (0.049 / 0.05) ** 2)]
        assert tracker.consumed == 950
        assert tracker.queue_length == 0

    @pytest.mark.asyncio
    async def test_at_critical_skips_progressive_delay(self, fake_clock):
        """At 950/1000 the caller goes through the queue, not the delay curve."""
        tracker = make_tracker(fake_clock)
        tracker.update_from_server_feedback(
            remaining=50, limit=1000, reset_epoch=int(fake_clock.now) + 3600
        )

        await asyncio.wait_for(tracker.admit(), timeout=2)

        assert tracker.consumed == 951
        assert fake_clock.sleeps == []

    @pytest.mark.asyncio
    async def test_minimum_spacing(self, fake_clock):
        """Back-to-back admissions are spaced by min_interval."""
        tracker = make_tracker(fake_clock, min_interval=0.1)

        await tracker.admit()
        await tracker.admit()

        assert fake_clock.sleeps == [pytest.approx(0.1)]

        fake_clock.advance(1.0)
        await tracker.admit()

        assert len(fake_clock.sleeps) == 1
        assert tracker.consumed == 3


class TestWindowReset:
    """Tests for the lazy fixed-window reset."""

    @pytest.mark.asyncio
    async def test_first_admit_opens_window(self, fake_clock):
        tracker = make_tracker(fake_clock)

        await tracker.admit()

        assert tracker.state.window_reset_at == pytest.approx(fake_clock.now + 3600)

    @pytest.mark.asyncio
    async def test_expired_window_resets_consumed(self, fake_clock):
        tracker = make_tracker(fake_clock)
        tracker.update_from_server_feedback(
            remaining=0, limit=1000, reset_epoch=int(fake_clock.now) + 10
        )
        assert tracker.is_limit_exceeded()

        fake_clock.advance(11)
        await tracker.admit()

        assert tracker.consumed == 1
        assert tracker.state.window_reset_at == pytest.approx(fake_clock.now + 3600)
        assert not tracker.is_limit_exceeded()

    @pytest.mark.asyncio
    async def test_queued_caller_released_after_reset(self, fake_clock):
        """An exhausted quota queues until the window rolls over."""
        tracker = make_tracker(fake_clock, window_limit=10)
        start = fake_clock.now
        tracker.update_from_server_feedback(
            remaining=0, limit=10, reset_epoch=int(start) + 3600
        )

        await asyncio.wait_for(tracker.admit(), timeout=5)

        assert tracker.consumed == 1
        assert fake_clock.now > start + 3600
        # Rechecks are capped at one minute
        assert max(fake_clock.sleeps) == pytest.approx(60.0)


class TestAdmissionQueue:
    """Tests for FIFO queueing at the critical threshold."""

    def exhausted(self, limit=10):
        tracker = QuotaTracker(window_limit=limit, min_interval=0)
        tracker.update_from_server_feedback(
            remaining=0, limit=limit, reset_epoch=int(time.time()) + 3600
        )
        return tracker

    @pytest.mark.asyncio
    async def test_feedback_wakes_queue(self):
        """Server-reported headroom releases a queued caller immediately."""
        tracker = self.exhausted()

        task = asyncio.create_task(tracker.admit())
        await asyncio.sleep(0.05)

        assert not task.done()
        assert tracker.queue_length == 1

        tracker.update_from_server_feedback(remaining=5)
        await asyncio.wait_for(task, timeout=1)

        assert tracker.consumed == 6
        assert tracker.queue_length == 0

    @pytest.mark.asyncio
    async def test_release_order_is_fifo(self):
        tracker = self.exhausted()
        order = []

        async def caller(n):
            await tracker.admit()
            order.append(n)

        tasks = [asyncio.create_task(caller(i)) for i in range(3)]
        await asyncio.sleep(0.05)
        assert tracker.queue_length == 3

        tracker.update_from_server_feedback(remaining=10, limit=10)
        await asyncio.wait_for(asyncio.gather(*tasks), timeout=1)

        assert order == [0, 1, 2]
        assert tracker.consumed == 3

    @pytest.mark.asyncio
    async def test_cancelled_waiter_is_skipped(self):
        tracker = self.exhausted()

        first = asyncio.create_task(tracker.admit())
        second = asyncio.create_task(tracker.admit())
        await asyncio.sleep(0.05)

        first.cancel()
        await asyncio.sleep(0)
        tracker.update_from_server_feedback(remaining=10, limit=10)
        await asyncio.wait_for(second, timeout=1)

        assert first.cancelled()
        assert tracker.consumed == 1

    @pytest.mark.asyncio
    async def test_reset_releases_queue(self):
        tracker = self.exhausted()

        task = asyncio.create_task(tracker.admit())
        await asyncio.sleep(0.05)
        tracker.reset()
        await asyncio.wait_for(task, timeout=1)

        assert tracker.consumed == 1


    @pytest.mark.asyncio
    async def test_enqueue_binds_to_running_loop(self):
        """A fresh queue can be used without an explicit bind()."""
        tracker = QuotaTracker(window_limit=10, min_interval=0)
        queue = AdmissionQueue(tracker)

        waiter = queue.enqueue()
        await asyncio.wait_for(waiter, timeout=1)

        assert tracker.consumed == 1
        assert queue.pending == 0

    @pytest.mark.asyncio
    async def test_release_after_wakeup_keeps_spacing(self):
        """A feedback-triggered release still waits out min_interval."""
        tracker = QuotaTracker(window_limit=10, min_interval=0.2)
        tracker.update_from_server_feedback(
            remaining=0, limit=10, reset_epoch=int(time.time()) + 3600
        )
        released = {}

        async def caller(name):
            await tracker.admit()
            released[name] = time.monotonic()

        first = asyncio.create_task(caller("first"))
        second = asyncio.create_task(caller("second"))
        await asyncio.sleep(0.02)

        tracker.update_from_server_feedback(remaining=1)
        await asyncio.wait_for(first, timeout=1)
        tracker.update_from_server_feedback(remaining=5)
        await asyncio.wait_for(second, timeout=1)

        assert released["second"] - released["first"] >= 0.15


class TestAdmissionCancellation:
    """Tests for admit() observing a cancellation token."""

    def exhausted(self, limit=10):
        tracker = QuotaTracker(window_limit=limit, min_interval=0)
        tracker.update_from_server_feedback(
            remaining=0, limit=limit, reset_epoch=int(time.time()) + 3600
        )
        return tracker

    @pytest.mark.asyncio
    async def test_already_cancelled_consumes_nothing(self):
        tracker = QuotaTracker(min_interval=0)
        token = CancellationToken()
        token.cancel("gone")

        with pytest.raises(BatchCancelledError, match="gone"):
            await tracker.admit(token)

        assert tracker.consumed == 0

    @pytest.mark.asyncio
    async def test_queued_caller_gives_up_on_cancel(self):
        tracker = self.exhausted()
        token = CancellationToken()

        task = asyncio.create_task(tracker.admit(token))
        await asyncio.sleep(0.05)
        assert tracker.queue_length == 1

        token.cancel("stop")

        with pytest.raises(BatchCancelledError):
            await asyncio.wait_for(task, timeout=1)
        assert tracker.queue_length == 0
        assert tracker.consumed == 10

    @pytest.mark.asyncio
    async def test_abandoned_waiter_does_not_block_others(self):
        tracker = self.exhausted()
        token = CancellationToken()

        abandoned = asyncio.create_task(tracker.admit(token))
        waiting = asyncio.create_task(tracker.admit())
        await asyncio.sleep(0.05)

        token.cancel()
        tracker.update_from_server_feedback(remaining=10)

        await asyncio.wait_for(waiting, timeout=1)
        with pytest.raises(BatchCancelledError):
            await abandoned
        assert tracker.consumed == 1

    @pytest.mark.asyncio
    async def test_cancel_interrupts_warning_delay(self):
        tracker = QuotaTracker(window_limit=1000, min_interval=0)
        tracker.update_from_server_feedback(
            remaining=51, limit=1000, reset_epoch=int(time.time()) + 3600
        )
        token = CancellationToken()

        task = asyncio.create_task(tracker.admit(token))
        await asyncio.sleep(0.05)
        token.cancel()

        with pytest.raises(BatchCancelledError):
            await asyncio.wait_for(task, timeout=1)
        assert tracker.consumed == 949

    @pytest.mark.asyncio
    async def test_token_without_cancel_admits_normally(self, fake_clock):
        tracker = make_tracker(fake_clock, min_interval=0.1)
        token = CancellationToken()

        await tracker.admit(token)
        await tracker.admit(token)

        assert tracker.consumed == 2
        assert fake_clock.sleeps == [pytest.approx(0.1)]


class TestServerFeedback:
    """Tests for reconciling local state with server values."""

    def test_server_values_win(self):
        tracker = QuotaTracker()
        tracker.update_from_server_feedback(remaining=900, limit=1000, reset_epoch=1_700_003_600)

        assert tracker.consumed == 100
        assert tracker.window_limit == 1000
        assert tracker.state.window_reset_at == 1_700_003_600.0

    def test_new_limit_changes_ratio(self):
        tracker = QuotaTracker()
        tracker.update_from_server_feedback(remaining=100, limit=200)

        assert tracker.window_limit == 200
        assert tracker.usage_ratio == pytest.approx(0.5)

    def test_remaining_above_limit_clamps_to_zero(self):
        tracker = QuotaTracker(window_limit=10)
        tracker.update_from_server_feedback(remaining=50)

        assert tracker.consumed == 0

    def test_headers_case_insensitive(self):
        tracker = QuotaTracker()
        tracker.update_from_headers({
            "X-RateLimit-Remaining": "900",
            "X-RateLimit-Limit": "1000",
            "X-RateLimit-Reset": "1700003600",
        })

        assert tracker.consumed == 100
        assert tracker.state.window_reset_at == 1_700_003_600.0

    def test_garbage_is_ignored(self):
        tracker = QuotaTracker()
        tracker.update_from_headers({"x-ratelimit-remaining": "soon", "x-ratelimit-reset": ""})
        tracker.update_from_headers(None)
        tracker.update_from_headers("not headers")
        tracker.update_from_server_feedback(remaining=object())

        assert tracker.consumed == 0
        assert tracker.window_limit == 1000

    def test_feedback_from_headers(self):
        feedback = QuotaFeedback.from_headers({"x-ratelimit-limit": "60"})
        assert feedback == QuotaFeedback(remaining=None, limit=60, reset_epoch=None)


class TestInspection:
    """Tests for info() and the status helpers."""

    def test_info_inside_window(self, fake_clock):
        tracker = make_tracker(fake_clock)
        tracker.update_from_server_feedback(
            remaining=40, limit=100, reset_epoch=int(fake_clock.now) + 100
        )

        info = tracker.info()

        assert info == QuotaInfo(limit=100, remaining=40, reset=int(fake_clock.now) + 100)
        assert tracker.time_until_reset() == pytest.approx(100)
        assert tracker.is_approaching_limit() is False

    def test_info_after_window_expired(self, fake_clock):
        tracker = make_tracker(fake_clock)
        tracker.update_from_server_feedback(
            remaining=0, limit=100, reset_epoch=int(fake_clock.now) + 10
        )
        fake_clock.advance(20)

        info = tracker.info()

        assert info.remaining == 100
        assert tracker.time_until_reset() == 0.0

    def test_approaching_limit(self):
        tracker = QuotaTracker(window_limit=100)
        tracker.update_from_server_feedback(remaining=10)

        assert tracker.is_approaching_limit() is True

    def test_reset_restores_full_quota(self):
        tracker = QuotaTracker(window_limit=100)
        tracker.update_from_server_feedback(remaining=0, limit=50)

        tracker.reset()

        assert tracker.consumed == 0
        assert tracker.window_limit == 100
