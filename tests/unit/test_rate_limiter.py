"""
Fixed-window rate limiter tests.
"""

import threading

import pytest

from syndication.services.rate_limiter import (
    DEFAULT_LIMITS,
    Proceed,
    RateLimiter,
    WaitUntil,
)
from tests.conftest import FakeClock, START_TIME


class TestAdmit:
    """admit() check-and-increment semantics."""

    def test_admits_up_to_capacity_then_waits_for_window_end(self):
        clock = FakeClock()
        limiter = RateLimiter({"discord": {"capacity": 3, "window": 60}}, clock=clock)

        outcomes = [limiter.admit("discord") for _ in range(4)]

        assert outcomes[:3] == [Proceed(), Proceed(), Proceed()]
        assert outcomes[3] == WaitUntil(START_TIME + 60)

    def test_window_is_aligned_to_wall_clock(self):
        clock = FakeClock(start=START_TIME + 45)
        limiter = RateLimiter({"discord": {"capacity": 1, "window": 60}}, clock=clock)

        assert limiter.admit("discord") == Proceed()
        # The window started on the minute, not when the first call arrived.
        assert limiter.admit("discord") == WaitUntil(START_TIME + 60)

    def test_budget_refills_on_next_window(self):
        clock = FakeClock()
        limiter = RateLimiter({"discord": {"capacity": 1, "window": 60}}, clock=clock)
        limiter.admit("discord")

        clock.now = START_TIME + 60

        assert limiter.admit("discord") == Proceed()

    def test_platforms_have_independent_budgets(self):
        clock = FakeClock()
        limiter = RateLimiter(
            {"discord": {"capacity": 1, "window": 60}, "imgur": {"capacity": 1, "window": 60}},
            clock=clock,
        )

        assert limiter.admit("discord") == Proceed()
        assert limiter.admit("imgur") == Proceed()
        assert isinstance(limiter.admit("discord"), WaitUntil)

    def test_never_admits_more_than_capacity_across_threads(self):
        clock = FakeClock()
        limiter = RateLimiter({"instagram": {"capacity": 50, "window": 3600}}, clock=clock)
        admitted = []
        lock = threading.Lock()

        def worker():
            for _ in range(20):
                if isinstance(limiter.admit("instagram"), Proceed):
                    with lock:
                        admitted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(admitted) == 50


class TestDefaults:

    def test_default_limits(self):
        limiter = RateLimiter(clock=FakeClock())
        budgets = limiter.snapshot()

        for platform, (capacity, window) in DEFAULT_LIMITS.items():
            assert budgets[platform].capacity == capacity
            assert budgets[platform].refill_window == window

        assert budgets["airtable"].capacity == 5
        assert budgets["airtable"].refill_window == 1.0

    def test_override_keeps_default_window(self):
        limiter = RateLimiter({"instagram": {"capacity": 10}}, clock=FakeClock())
        budget = limiter.snapshot()["instagram"]

        assert budget.capacity == 10
        assert budget.refill_window == 3600.0

    def test_invalid_limit_rejected(self):
        with pytest.raises(ValueError):
            RateLimiter({"discord": {"capacity": 0, "window": 60}})


class TestDeferAndWait:

    def test_defer_blocks_until_timestamp(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)

        limiter.defer("discord", START_TIME + 7.5)

        assert limiter.admit("discord") == WaitUntil(START_TIME + 7.5)
        clock.now = START_TIME + 7.5
        assert limiter.admit("discord") == Proceed()

    def test_defer_never_shortens_an_existing_block(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)

        limiter.defer("discord", START_TIME + 30)
        limiter.defer("discord", START_TIME + 5)

        assert limiter.admit("discord") == WaitUntil(START_TIME + 30)

    def test_wait_for_sleeps_until_next_window(self):
        clock = FakeClock(start=START_TIME + 0.25)
        limiter = RateLimiter({"airtable": {"capacity": 1, "window": 1}}, clock=clock, sleep=clock.sleep)

        limiter.wait_for("airtable")
        limiter.wait_for("airtable")

        assert clock.sleeps == [pytest.approx(0.75)]
        assert clock.now == pytest.approx(START_TIME + 1)

    def test_snapshot_is_a_copy(self):
        limiter = RateLimiter(clock=FakeClock())
        limiter.admit("discord")

        snapshot = limiter.snapshot()
        snapshot["discord"].consumed_in_window = 999

        assert limiter.snapshot()["discord"].consumed_in_window == 1
