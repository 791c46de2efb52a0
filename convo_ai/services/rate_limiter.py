"""
Daily quota rate limiter for the generation endpoint.

One instance is shared by the request path and every AI worker. The counter
lives in memory only, so a process restart starts a fresh daily budget.
"""
import threading
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional

from convo_ai.utils.logger import get_logger

logger = get_logger("rate_limiter")

WARNING_THRESHOLD = 0.8


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class RateLimiter:
    """Tracks external generation calls against a per-day budget"""

    def __init__(self, daily_limit: int, today: Optional[Callable[[], date]] = None):
        if daily_limit < 0:
            raise ValueError("daily_limit must not be negative")
        self.daily_limit = daily_limit
        self._today = today or utc_today
        self._lock = threading.Lock()
        self._call_count = 0
        self._reset_date = self._today()
        self._warned = False

    def _check_and_reset_if_new_day(self):
        """Caller must hold the lock"""
        today = self._today()
        if self._reset_date != today:
            self._call_count = 0
            self._reset_date = today
            self._warned = False
            logger.info(f"Rate limiter reset for new day: {today.isoformat()}")

    def can_make_call(self) -> bool:
        """True while today's call count is under the daily limit"""
        with self._lock:
            self._check_and_reset_if_new_day()
            return self._call_count < self.daily_limit

    def increment_call_count(self):
        """
        Record one external call.

        Call this only AFTER a successful generation call, never before.
        """
        with self._lock:
            self._check_and_reset_if_new_day()
            self._call_count += 1
            count = self._call_count
            crossed = (
                not self._warned
                and self.daily_limit > 0
                and count >= self.daily_limit * WARNING_THRESHOLD
            )
            if crossed:
                self._warned = True

        logger.debug(f"Generation calls today: {count}/{self.daily_limit}")
        if crossed:
            percent = round(count / self.daily_limit * 100)
            logger.warning(
                f"{count}/{self.daily_limit} generation calls used today ({percent}%)"
            )

    def get_usage_stats(self) -> dict:
        with self._lock:
            self._check_and_reset_if_new_day()
            count = self._call_count
            reset_date = self._reset_date

        percent = round(count / self.daily_limit * 100) if self.daily_limit else 100
        return {
            "callsToday": count,
            "dailyLimit": self.daily_limit,
            "remaining": max(self.daily_limit - count, 0),
            "percentUsed": percent,
            "resetDate": reset_date.isoformat(),
        }

    def next_reset_at(self) -> datetime:
        """UTC instant at which the next daily window opens"""
        with self._lock:
            self._check_and_reset_if_new_day()
            reset_date = self._reset_date
        return datetime.combine(reset_date + timedelta(days=1), time.min, tzinfo=timezone.utc)

    def limit_exceeded_message(self) -> str:
        stats = self.get_usage_stats()
        return (
            f"Daily generation limit reached ({stats['callsToday']}/{stats['dailyLimit']} calls). "
            "Resets tomorrow. Please try again later or contact support."
        )


def create_rate_limiter(settings) -> RateLimiter:
    """Build the process-wide limiter from settings"""
    return RateLimiter(settings.daily_generation_limit)
