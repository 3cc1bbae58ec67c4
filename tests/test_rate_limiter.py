"""Tests for sliding-window admission control."""

import random

import pytest

from conftest import FakeClock
from switchyard.dispatch.rate_limiter import RateLimiter


class TestWaitTime:
    """Test wait-time computation."""

    def test_eleventh_call_waits_within_window(self, clock: FakeClock) -> None:
        """Test that a 10/min window blocks the 11th instantaneous call for at most 60s."""
        limiter = RateLimiter(clock)
        limiter.configure("gemini:key:0/gemini-2.5-flash", 10)

        for _ in range(10):
            assert limiter.try_admit("gemini:key:0/gemini-2.5-flash")

        wait = limiter.wait_time("gemini:key:0/gemini-2.5-flash")
        assert 0 < wait <= 60  # noqa: PLR2004
        assert not limiter.can_admit("gemini:key:0/gemini-2.5-flash")

    def test_window_reopens_after_expiry(self, clock: FakeClock) -> None:
        """Test that admission returns once the oldest timestamp leaves the window."""
        limiter = RateLimiter(clock)
        limiter.configure("k", 2)
        limiter.record("k")
        clock.advance(10)
        limiter.record("k")

        assert limiter.wait_time("k") == pytest.approx(50)
        clock.advance(50)
        assert limiter.can_admit("k")
        assert limiter.wait_time("k") == 0

    def test_min_interval_spacing(self, clock: FakeClock) -> None:
        """Test that min_interval spaces calls even under the limit."""
        limiter = RateLimiter(clock, default_min_interval=2.0)
        limiter.configure("k", 100)
        assert limiter.try_admit("k")
        assert not limiter.try_admit("k")
        assert limiter.wait_time("k") == pytest.approx(2.0)
        clock.advance(2.0)
        assert limiter.try_admit("k")

    def test_unconfigured_key_raises(self, clock: FakeClock) -> None:
        """Test that querying an unknown key is an error."""
        limiter = RateLimiter(clock)
        with pytest.raises(KeyError):
            limiter.wait_time("missing")


class TestInvariant:
    """Test that windows never hold more than their limit."""

    def test_random_schedule_never_exceeds_limit(self, clock: FakeClock) -> None:
        """Test admission under a random arrival schedule."""
        rng = random.Random(7)
        limiter = RateLimiter(clock)
        limiter.configure("k", 5)
        admitted: list[float] = []

        for _ in range(500):
            clock.advance(rng.uniform(0, 8))
            if limiter.try_admit("k"):
                admitted.append(clock.monotonic())
            recent = [t for t in admitted if t > clock.monotonic() - 60]
            assert len(recent) <= 5  # noqa: PLR2004

    def test_penalize_blocks_full_window(self, clock: FakeClock) -> None:
        """Test that a provider rejection saturates the window."""
        limiter = RateLimiter(clock)
        limiter.configure("k", 3)
        limiter.penalize("k")

        assert not limiter.can_admit("k")
        assert limiter.wait_time("k") == pytest.approx(60)
        status = limiter.status("k")
        assert status["remaining"] == 0

    def test_reset_clears_windows(self, clock: FakeClock) -> None:
        """Test reset of all windows."""
        limiter = RateLimiter(clock)
        limiter.configure("a", 1)
        limiter.configure("b", 1)
        limiter.record("a")
        limiter.record("b")
        limiter.reset()
        assert limiter.can_admit("a")
        assert limiter.can_admit("b")

    def test_invalid_limit_rejected(self, clock: FakeClock) -> None:
        """Test configure validation."""
        limiter = RateLimiter(clock)
        with pytest.raises(ValueError, match="at least 1"):
            limiter.configure("k", 0)
