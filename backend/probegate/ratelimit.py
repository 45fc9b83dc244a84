# probegate/ratelimit.py
"""
Authoritative server-side rate limiter.

One bucket per client identity, each with a fixed window (points per
window) and a daily budget. Rollover is lazy: the first consume() after a
window has elapsed resets its counter before applying the increment.

A rejected call never increments a counter, so a client hammering the
gateway while blocked does not push its own reset further away.

This is the only enforcement point. The client-side estimator mirrors the
policy for UX and must never be trusted.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from probegate.models import RateDecision

logger = logging.getLogger(__name__)

DAY_SECONDS = 86400


@dataclass
class RateBucket:
    identity: str
    window_start: float
    consumed_in_window: int = 0
    day_start: float = 0.0
    daily_consumed: int = 0


class RateLimiter:
    """
    Fixed-window token bucket keyed by client identity.

    Args:
        points:      Requests allowed per window
        window:      Window length in seconds
        daily_limit: Requests allowed per identity per day (0 disables)
        clock:       Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        points: int = 30,
        window: float = 60,
        daily_limit: int = 0,
        clock: Callable[[], float] = time.monotonic,
        max_buckets: int = 50000,
    ):
        if points < 1:
            raise ValueError("points must be >= 1")
        if window <= 0:
            raise ValueError("window must be > 0")
        self.points = points
        self.window = window
        self.daily_limit = daily_limit
        self._clock = clock
        self._buckets: Dict[str, RateBucket] = {}
        self._lock = threading.Lock()
        self.max_buckets = max_buckets

    def consume(self, identity: str) -> RateDecision:
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(identity)
            if bucket is None:
                if len(self._buckets) >= self.max_buckets:
                    self._prune(now)
                bucket = RateBucket(identity=identity, window_start=now, day_start=now)
                self._buckets[identity] = bucket

            if now - bucket.window_start >= self.window:
                bucket.window_start = now
                bucket.consumed_in_window = 0
            if now - bucket.day_start >= DAY_SECONDS:
                bucket.day_start = now
                bucket.daily_consumed = 0

            if self.daily_limit and bucket.daily_consumed + 1 > self.daily_limit:
                return RateDecision(allowed=False, scope="day", retry_after=None, remaining=0)

            if bucket.consumed_in_window + 1 > self.points:
                retry_after = max(1, math.ceil(bucket.window_start + self.window - now))
                return RateDecision(allowed=False, scope="minute", retry_after=retry_after, remaining=0)

            bucket.consumed_in_window += 1
            bucket.daily_consumed += 1
            return RateDecision(allowed=True, remaining=self.points - bucket.consumed_in_window)

    def peek(self, identity: str) -> Optional[RateBucket]:
        """Snapshot of a bucket without consuming. None if the identity is unknown."""
        with self._lock:
            bucket = self._buckets.get(identity)
            if bucket is None:
                return None
            return RateBucket(**vars(bucket))

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "buckets": len(self._buckets),
                "points": self.points,
                "window": int(self.window),
                "dailyLimit": self.daily_limit,
            }

    def _prune(self, now: float) -> None:
        # Caller holds the lock. A bucket whose windows have both elapsed
        # carries no state a fresh bucket would not.
        stale = [
            identity for identity, b in self._buckets.items()
            if now - b.window_start >= self.window
            and (not self.daily_limit or now - b.day_start >= DAY_SECONDS)
        ]
        for identity in stale:
            del self._buckets[identity]
        if stale:
            logger.debug("Pruned %d idle rate buckets", len(stale))
