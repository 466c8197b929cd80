"""
Day-Bucketed Rate Limiting
==========================

One rate-limit algorithm shared by the automation gate (automated runs) and the
self-healing monitor (automatic rollbacks). Each caller keeps its own counter;
only the algorithm is shared.

A bucket counts events per UTC calendar day. A bucket whose stored day differs
from the current day counts as empty, but is only reset when ``advance`` runs.
"""

import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(now: datetime) -> datetime:
    """Treat a naive datetime as UTC and convert an aware one to UTC."""
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def day_key(now: datetime) -> str:
    """Calendar-day key (YYYY-MM-DD, UTC) for a moment in time."""
    return as_utc(now).date().isoformat()


def to_epoch_ms(now: datetime) -> int:
    """Convert a datetime to epoch milliseconds."""
    return int(as_utc(now).timestamp() * 1000)


@dataclass(frozen=True)
class DayBucket:
    """Counter state for one limiter."""
    count: int = 0
    day: Optional[str] = None
    last_timestamp: Optional[int] = None  # epoch ms

    def effective_count(self, now: datetime) -> int:
        """Count for the day containing ``now``."""
        return self.count if self.day == day_key(now) else 0


@dataclass(frozen=True)
class RateLimitDecision:
    """Whether an event may proceed, with the reason when it may not."""
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


@dataclass(frozen=True)
class DailyRateLimiter:
    """
    Daily cap plus optional cooldown between events.

    ``limit_message`` is formatted with ``max_per_day`` when the cap is hit.
    """
    max_per_day: int
    cooldown_seconds: float = 0
    limit_message: str = "Daily limit reached ({max_per_day} runs per day)"

    def check(self, bucket: DayBucket, now: Optional[datetime] = None) -> RateLimitDecision:
        """Check whether another event is allowed at ``now``. Does not mutate."""
        now = now or utc_now()

        if bucket.effective_count(now) >= self.max_per_day:
            return RateLimitDecision(
                allowed=False,
                reason=self.limit_message.format(max_per_day=self.max_per_day),
            )

        if self.cooldown_seconds > 0 and bucket.last_timestamp is not None:
            elapsed_seconds = (to_epoch_ms(now) - bucket.last_timestamp) / 1000
            if elapsed_seconds < self.cooldown_seconds:
                remaining = math.ceil(self.cooldown_seconds - elapsed_seconds)
                return RateLimitDecision(
                    allowed=False,
                    reason=f"Cooldown active ({remaining}s remaining)",
                )

        return RateLimitDecision(allowed=True)

    def advance(self, bucket: DayBucket, now: Optional[datetime] = None) -> DayBucket:
        """Record one event at ``now`` and return the new bucket."""
        now = now or utc_now()
        today = day_key(now)
        count = bucket.count + 1 if bucket.day == today else 1
        return replace(bucket, count=count, day=today, last_timestamp=to_epoch_ms(now))
