"""
Unit tests for the daily rate limiter
"""
import logging
from datetime import date, datetime, timezone

import pytest

from convo_ai.services.rate_limiter import RateLimiter


@pytest.mark.unit
class TestRateLimiter:
    """Test daily quota accounting"""

    def test_fresh_limiter_allows_calls(self, rate_limiter):
        """Test fresh limiter allows calls"""
        assert rate_limiter.can_make_call() is True
        assert rate_limiter.get_usage_stats()["callsToday"] == 0

    def test_blocks_once_limit_reached(self, rate_limiter):
        """Test limiter blocks at the limit"""
        for _ in range(10):
            assert rate_limiter.can_make_call()
            rate_limiter.increment_call_count()

        assert rate_limiter.can_make_call() is False

    def test_usage_stats(self, rate_limiter):
        """Test usage stats"""
        for _ in range(3):
            rate_limiter.increment_call_count()

        stats = rate_limiter.get_usage_stats()
        assert stats == {
            "callsToday": 3,
            "dailyLimit": 10,
            "remaining": 7,
            "percentUsed": 30,
            "resetDate": "2024-03-10",
        }

    def test_resets_on_new_utc_day(self, rate_limiter, clock):
        """Test reset on a new UTC day"""
        for _ in range(10):
            rate_limiter.increment_call_count()
        assert not rate_limiter.can_make_call()

        clock.today = date(2024, 3, 11)

        assert rate_limiter.can_make_call()
        stats = rate_limiter.get_usage_stats()
        assert stats["callsToday"] == 0
        assert stats["resetDate"] == "2024-03-11"

    def test_next_reset_is_next_utc_midnight(self, rate_limiter):
        """Test next reset time"""
        assert rate_limiter.next_reset_at() == datetime(2024, 3, 11, tzinfo=timezone.utc)

    def test_warns_once_at_eighty_percent(self, rate_limiter, caplog):
        """Test single warning at 80 percent"""
        with caplog.at_level(logging.WARNING, logger="convo_ai.rate_limiter"):
            for _ in range(10):
                rate_limiter.increment_call_count()

        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "8/10" in warnings[0].getMessage()

    def test_zero_limit_never_allows(self, clock):
        """Test zero limit"""
        limiter = RateLimiter(daily_limit=0, today=clock)
        assert limiter.can_make_call() is False
        assert limiter.get_usage_stats()["remaining"] == 0

    def test_negative_limit_rejected(self):
        """Test negative limit"""
        with pytest.raises(ValueError):
            RateLimiter(daily_limit=-1)

    def test_limit_exceeded_message_mentions_counts(self, rate_limiter):
        """Test limit message mentions counts"""
        for _ in range(10):
            rate_limiter.increment_call_count()
        assert "10/10" in rate_limiter.limit_exceeded_message()

    def test_usage_stats_are_idempotent(self, rate_limiter):
        """Test usage stats do not change state"""
        rate_limiter.increment_call_count()
        assert rate_limiter.get_usage_stats() == rate_limiter.get_usage_stats()

    def test_limit_of_two_rolls_over(self, clock):
        """Test small limit across a day boundary"""
        limiter = RateLimiter(daily_limit=2, today=clock)

        limiter.increment_call_count()
        limiter.increment_call_count()
        assert limiter.can_make_call() is False

        clock.today = date(2024, 3, 11)
        assert limiter.can_make_call() is True
        limiter.increment_call_count()
        assert limiter.get_usage_stats()["callsToday"] == 1
