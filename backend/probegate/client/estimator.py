# probegate/client/estimator.py
"""
Advisory client-side rate estimator.

Mirrors the per-tool budgets (requests per minute, per day) so a client can
refuse a call locally and show a countdown instead of spending a round
trip on a certain 429. It is NOT a security boundary: the server limiter
enforces independently and is authoritative.

Counters are keyed by tool name, while the server keys its buckets by client
identity. The two layers intentionally keep their own semantics.

    predict(tool)            would the next call be refused?
    record(tool)             count a call that is about to be sent
    seconds_until_reset()    countdown for the minute window
    warning(tool)            message once 80% of either budget is used
    sync(tool, retry_after)  realign with a server 429
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, Mapping, Optional

from probegate.models import RateDecision, RateLimitPolicy, now_utc

WARNING_RATIO = 0.8


def default_limits() -> Dict[str, RateLimitPolicy]:
    """Per-tool budgets taken from the tool table."""
    from probegate.tools.registry import all_descriptors

    return {d.name: d.rate_limit for d in all_descriptors() if d.rate_limit is not None}


def _utc_today() -> date:
    return now_utc().date()


@dataclass
class ToolUsage:
    window_start: float
    day: date
    minute_count: int = 0
    day_count: int = 0
    blocked_until: float = 0.0
    day_blocked: bool = False


class ClientRateEstimator:
    """
    Per-tool minute and daily counters.

    Tools without a configured budget are never refused locally, except
    while a server-issued retry delay is running.
    """

    def __init__(
        self,
        limits: Optional[Mapping[str, RateLimitPolicy]] = None,
        window: float = 60,
        clock: Callable[[], float] = time.monotonic,
        today: Callable[[], date] = _utc_today,
    ):
        self.limits = dict(default_limits() if limits is None else limits)
        self.window = window
        self._clock = clock
        self._today = today
        self._usage: Dict[str, ToolUsage] = {}

    def _current(self, tool: str) -> ToolUsage:
        now = self._clock()
        today = self._today()
        usage = self._usage.get(tool)
        if usage is None:
            usage = ToolUsage(window_start=now, day=today)
            self._usage[tool] = usage

        if now - usage.window_start >= self.window:
            usage.window_start = now
            usage.minute_count = 0
        if usage.day != today:
            usage.day = today
            usage.day_count = 0
            usage.day_blocked = False
        return usage

    # ── Queries ──────────────────────────────────────────────────

    def predict(self, tool: str) -> RateDecision:
        usage = self._current(tool)
        now = self._clock()
        limits = self.limits.get(tool)

        if usage.day_blocked or (limits and usage.day_count >= limits.per_day):
            return RateDecision(allowed=False, scope="day", remaining=0)

        if now < usage.blocked_until:
            return RateDecision(
                allowed=False, scope="minute",
                retry_after=max(1, math.ceil(usage.blocked_until - now)), remaining=0,
            )

        if limits and usage.minute_count >= limits.per_minute:
            return RateDecision(
                allowed=False, scope="minute",
                retry_after=max(1, self.seconds_until_reset(tool)), remaining=0,
            )

        remaining = limits.per_minute - usage.minute_count if limits else None
        return RateDecision(allowed=True, remaining=remaining)

    def seconds_until_reset(self, tool: str) -> int:
        usage = self._current(tool)
        now = self._clock()
        reset_at = max(usage.window_start + self.window, usage.blocked_until)
        return max(0, math.ceil(reset_at - now))

    def warning(self, tool: str) -> Optional[str]:
        limits = self.limits.get(tool)
        if not limits:
            return None
        usage = self._current(tool)

        if usage.minute_count >= limits.per_minute * WARNING_RATIO:
            remaining = max(0, limits.per_minute - usage.minute_count)
            return (f"{tool.upper()} - {remaining} requests remaining this minute "
                    f"(limit: {limits.per_minute}/minute)")
        if usage.day_count >= limits.per_day * WARNING_RATIO:
            remaining = max(0, limits.per_day - usage.day_count)
            return (f"{tool.upper()} - {remaining} requests remaining this day "
                    f"(limit: {limits.per_day}/day)")
        return None

    def usage(self) -> Dict[str, Dict[str, Optional[int]]]:
        report = {}
        for tool in sorted(set(self.limits) | set(self._usage)):
            usage = self._current(tool)
            limits = self.limits.get(tool)
            report[tool] = {
                "minute": usage.minute_count,
                "day": usage.day_count,
                "minuteRemaining": max(0, limits.per_minute - usage.minute_count) if limits else None,
                "dayRemaining": max(0, limits.per_day - usage.day_count) if limits else None,
            }
        return report

    # ── Updates ──────────────────────────────────────────────────

    def record(self, tool: str) -> None:
        usage = self._current(tool)
        usage.minute_count += 1
        usage.day_count += 1

    def sync(self, tool: str, retry_after: Optional[int]) -> None:
        """
        Adopt the server's view after a 429.

        With a retry delay the local window is moved so it ends exactly
        when the server's does; without one the server refused for the
        day, so the tool stays blocked until the UTC date changes.
        """
        usage = self._current(tool)
        if retry_after is None:
            usage.day_blocked = True
            return
        now = self._clock()
        usage.blocked_until = now + max(0, retry_after)
        usage.window_start = usage.blocked_until - self.window

    def reset(self) -> None:
        self._usage.clear()
