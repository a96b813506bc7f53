"""
Tests for the sliding-window chat rate limiter.
"""

from datetime import datetime, timedelta, timezone

import pytest

from chat.errors import RateLimited
from chat.rate_limiter import SlidingWindowRateLimiter

NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestSlidingWindowRateLimiter:

    @pytest.fixture
    def limiter(self):
        return SlidingWindowRateLimiter(max_messages=10, window_seconds=60)

    def test_allows_up_to_limit(self, limiter):
        timestamps = [NOW - timedelta(seconds=i) for i in range(9)]

        decision = limiter.check(timestamps, NOW)

        assert decision.allowed is True
        assert decision.recent_count == 9

    def test_rejects_at_limit(self, limiter):
        timestamps = [NOW - timedelta(seconds=i) for i in range(10)]

        decision = limiter.check(timestamps, NOW)

        assert decision.allowed is False
        assert decision.recent_count == 10
        # Oldest entry is 9s old and leaves the window in 51s
        assert decision.retry_after == pytest.approx(51.0)

    def test_old_messages_leave_window(self, limiter):
        timestamps = [NOW - timedelta(seconds=60 + i) for i in range(20)]

        assert limiter.check(timestamps, NOW).allowed is True

    def test_boundary_is_exclusive(self, limiter):
        timestamps = [NOW - timedelta(seconds=60)] + [NOW - timedelta(seconds=1)] * 9

        assert limiter.check(timestamps, NOW).allowed is True

    def test_naive_timestamps_are_utc(self, limiter):
        timestamps = [(NOW - timedelta(seconds=5)).replace(tzinfo=None)] * 10

        assert limiter.check(timestamps, NOW).allowed is False

    def test_enforce_raises(self, limiter):
        timestamps = [NOW] * 12

        with pytest.raises(RateLimited) as exc_info:
            limiter.enforce(timestamps, NOW)

        assert exc_info.value.status_code == 429
        assert exc_info.value.details["recent_count"] == 12
        # Three entries must expire before a send fits
        assert exc_info.value.retry_after == pytest.approx(60.0)

    def test_enforce_passes_under_limit(self, limiter):
        limiter.enforce([], NOW)
