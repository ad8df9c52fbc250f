"""
Bookflow Backend — Rate Limiter Unit Tests
============================================

What:  Tests for the in-memory sliding-window RateLimiter.
How:   A FakeClock (conftest) replaces time.monotonic, so windows expire
       without sleeping.

What we test:
    ✅ check does not record; record counts toward the limit
    ✅ Timestamps older than the window stop counting
    ✅ Remaining requests never go negative
    ✅ Keys are independent
    ✅ Sweep drops stale keys; start/stop are idempotent
"""

import asyncio

import pytest

from bookflow.services.rate_limit import RateLimiter

WINDOW_MS = 60_000


class TestSlidingWindow:
    def setup_method(self):
        self.now = 1000.0
        self.limiter = RateLimiter(clock=lambda: self.now)

    def test_fresh_key_is_not_limited(self):
        assert self.limiter.check_rate_limit("user-1", 10, WINDOW_MS) is False
        assert self.limiter.get_remaining_requests("user-1", 10, WINDOW_MS) == 10

    def test_check_does_not_record(self):
        for _ in range(20):
            self.limiter.check_rate_limit("user-1", 1, WINDOW_MS)
        assert self.limiter.get_remaining_requests("user-1", 1, WINDOW_MS) == 1

    def test_limit_reached_after_n_records(self):
        for _ in range(10):
            assert self.limiter.check_rate_limit("user-1", 10, WINDOW_MS) is False
            self.limiter.record_request("user-1")
        assert self.limiter.check_rate_limit("user-1", 10, WINDOW_MS) is True
        assert self.limiter.get_remaining_requests("user-1", 10, WINDOW_MS) == 0

    def test_old_requests_leave_the_window(self):
        for _ in range(10):
            self.limiter.record_request("user-1")
        self.now += 61
        assert self.limiter.check_rate_limit("user-1", 10, WINDOW_MS) is False
        assert self.limiter.get_remaining_requests("user-1", 10, WINDOW_MS) == 10

    def test_window_slides_per_request(self):
        self.limiter.record_request("user-1")
        self.now += 30
        self.limiter.record_request("user-1")
        self.now += 31
        # First request is 61s old, second only 31s
        assert self.limiter.get_remaining_requests("user-1", 2, WINDOW_MS) == 1

    def test_remaining_never_negative(self):
        for _ in range(5):
            self.limiter.record_request("user-1")
        assert self.limiter.get_remaining_requests("user-1", 3, WINDOW_MS) == 0

    def test_keys_are_independent(self):
        for _ in range(3):
            self.limiter.record_request("user-1")
        assert self.limiter.check_rate_limit("user-1", 3, WINDOW_MS) is True
        assert self.limiter.check_rate_limit("user-2", 3, WINDOW_MS) is False

    def test_retry_after_counts_down_from_oldest_request(self):
        self.limiter.record_request("user-1")
        self.now += 20
        assert self.limiter.retry_after("user-1", WINDOW_MS) == 41
        assert self.limiter.retry_after("unknown", WINDOW_MS) == 0


class TestHousekeeping:
    def test_sweep_removes_stale_keys(self, fake_clock):
        limiter = RateLimiter(clock=fake_clock, max_age=3600)
        limiter.record_request("old")
        fake_clock.advance(3000)
        limiter.record_request("recent")
        fake_clock.advance(700)

        removed = limiter.sweep()

        assert removed == 1
        assert len(limiter) == 1
        assert limiter.get_remaining_requests("recent", 5, 3_600_000) == 4

    def test_clear_drops_everything(self, fake_clock):
        limiter = RateLimiter(clock=fake_clock)
        limiter.record_request("a")
        limiter.record_request("b")
        limiter.clear()
        assert len(limiter) == 0

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self):
        limiter = RateLimiter(sweep_interval=0.01)
        limiter.start()
        first_task = limiter._task
        limiter.start()
        assert limiter._task is first_task
        assert limiter.running

        await limiter.stop()
        await limiter.stop()
        assert not limiter.running

    @pytest.mark.asyncio
    async def test_background_task_sweeps(self, fake_clock):
        limiter = RateLimiter(clock=fake_clock, sweep_interval=0.01, max_age=10)
        limiter.record_request("idle")
        fake_clock.advance(11)

        limiter.start()
        await asyncio.sleep(0.05)
        await limiter.stop()

        assert len(limiter) == 0
