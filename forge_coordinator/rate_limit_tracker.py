"""Forge quota tracking for preemptive throttling.

RateLimitTracker keeps two views of the forge's limits:
- the primary quota last reported in response headers (remaining, reset)
- a rolling 1-minute window of write calls, paced to stay under the
  forge's secondary limit on content-creating requests

Usage:
    tracker = RateLimitTracker(writes_per_minute_limit=60)

    if tracker.quota_resets_at() is not None:
        ...  # fail fast; the retry layer decides how long to wait
    should_wait, wait_seconds = tracker.should_delay()
    if should_wait:
        await asyncio.sleep(wait_seconds)

    tracker.record_call(write=True)
    tracker.update_from_headers(response.headers)
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping, Optional

from forge_coordinator.models import RateLimitSnapshot


@dataclass
class RateLimitTracker:
    """Tracks forge quota and write frequency.

    Attributes:
        writes_per_minute_limit: Maximum write calls per rolling minute.
            Set to 0 to disable pacing.
        low_water_mark: When the reported remaining quota drops to this
            value, quota_resets_at() reports the reset so callers can fail fast.
    """

    writes_per_minute_limit: int = 60
    low_water_mark: int = 0
    remaining: Optional[int] = None
    limit: Optional[int] = None
    resets_at: Optional[datetime] = None
    _timestamps: list[float] = field(default_factory=list)

    def record_call(self, write: bool = False) -> None:
        """Record a call; only writes count toward the per-minute window."""
        if write:
            self._timestamps.append(time.time())
        self._cleanup_old_timestamps()

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        """Refresh the primary quota from ``x-ratelimit-*`` headers."""
        remaining = headers.get("x-ratelimit-remaining")
        reset = headers.get("x-ratelimit-reset")
        limit = headers.get("x-ratelimit-limit")
        if remaining is not None and remaining.isdigit():
            self.remaining = int(remaining)
        if limit is not None and limit.isdigit():
            self.limit = int(limit)
        if reset is not None and reset.isdigit():
            self.resets_at = datetime.fromtimestamp(int(reset), tz=timezone.utc)

    def snapshot(self) -> Optional[RateLimitSnapshot]:
        """Last observed quota, or None before any response was seen."""
        if self.remaining is None or self.resets_at is None:
            return None
        return RateLimitSnapshot(
            remaining=self.remaining,
            resets_at=self.resets_at,
            limit=self.limit,
        )

    def quota_resets_at(self) -> Optional[datetime]:
        """When the exhausted primary quota resets, or None if calls may proceed.

        Waiting out the reset is the caller's decision; the retry layer caps
        it by its deadline.
        """
        if (
            self.remaining is not None
            and self.resets_at is not None
            and self.remaining <= self.low_water_mark
            and self.resets_at > datetime.now(timezone.utc)
        ):
            return self.resets_at
        return None

    def should_delay(self) -> tuple[bool, float]:
        """Check if write pacing needs a delay before making another call.

        Returns:
            A tuple of (should_delay, suggested_delay_seconds).
        """
        if self.writes_per_minute_limit == 0:
            return (False, 0.0)

        self._cleanup_old_timestamps()
        if len(self._timestamps) >= self.writes_per_minute_limit:
            oldest = min(self._timestamps)
            wait_time = 60.0 - (time.time() - oldest)
            return (True, max(0.0, wait_time))

        return (False, 0.0)

    def _cleanup_old_timestamps(self) -> None:
        cutoff = time.time() - 60.0
        self._timestamps = [t for t in self._timestamps if t > cutoff]
