"""
Sliding-window rate limiting for chat sessions.

The window is recomputed from the session's stored user-message timestamps on
every request, so no limiter state lives in the process.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from chat.errors import RateLimited
from database.schemas import as_utc
from etl.config import CHAT_CONFIG


@dataclass
class RateLimitDecision:
    allowed: bool
    recent_count: int
    retry_after: float = 0.0


class SlidingWindowRateLimiter:
    """Allows at most `max_messages` sends within any trailing `window_seconds`."""

    def __init__(
        self,
        max_messages: int = CHAT_CONFIG['rate_limit_messages'],
        window_seconds: int = CHAT_CONFIG['rate_limit_window_seconds'],
    ):
        self.max_messages = max_messages
        self.window = timedelta(seconds=window_seconds)

    def check(self, timestamps: Iterable[datetime], now: datetime) -> RateLimitDecision:
        now = as_utc(now)
        recent = sorted(as_utc(t) for t in timestamps if now - as_utc(t) < self.window)
        if len(recent) < self.max_messages:
            return RateLimitDecision(allowed=True, recent_count=len(recent))

        # The send becomes possible once enough old entries leave the window
        release_at = recent[len(recent) - self.max_messages] + self.window
        return RateLimitDecision(
            allowed=False,
            recent_count=len(recent),
            retry_after=max(0.0, (release_at - now).total_seconds()),
        )

    def enforce(self, timestamps: Iterable[datetime], now: datetime) -> None:
        decision = self.check(timestamps, now)
        if not decision.allowed:
            raise RateLimited(
                retry_after=decision.retry_after,
                recent_count=decision.recent_count,
            )
