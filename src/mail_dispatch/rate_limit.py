# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Fixed-window rate limiter for the delivery provider quota.

The limiter counts successful sends inside a window that starts at the first
admission check after the previous window expired, and refuses further sends
once the per-minute ceiling is reached.

Only successful deliveries are counted: a failed attempt does not consume
quota.

Example:
    Gating a send::

        limiter = RateLimiter(limit_per_minute=50)
        now = time.time()
        if limiter.can_send(now):
            result = await transport.send(payload)
            if result.success:
                limiter.record_success()
        else:
            await asyncio.sleep(limiter.time_until_available(now))
"""

from __future__ import annotations

from .logger import get_logger

logger = get_logger(__name__)

WINDOW_SECONDS = 60.0


class RateLimiter:
    """Fixed-window counter of successful sends.

    A ``limit_per_minute`` of zero or less disables limiting.

    Attributes:
        limit_per_minute: Ceiling of successful sends per window.
        window_seconds: Window length, 60 seconds unless overridden.
        window_start: Epoch seconds at which the current window opened.
        sent_count: Successful sends recorded in the current window.
    """

    def __init__(self, limit_per_minute: int, window_seconds: float = WINDOW_SECONDS, start: float = 0.0):
        self.limit_per_minute = int(limit_per_minute)
        self.window_seconds = float(window_seconds)
        self.window_start = float(start)
        self.sent_count = 0

    @property
    def enabled(self) -> bool:
        return self.limit_per_minute > 0

    def _window_elapsed(self, now: float) -> bool:
        return now - self.window_start >= self.window_seconds

    def can_send(self, now: float) -> bool:
        """Return ``True`` if one more send fits in the current window.

        Opens a fresh window when the previous one has expired.
        """
        if self._window_elapsed(now):
            if self.sent_count:
                logger.debug("Rate window reset after %d sends", self.sent_count)
            self.sent_count = 0
            self.window_start = now
            return True
        if not self.enabled:
            return True
        return self.sent_count < self.limit_per_minute

    def time_until_available(self, now: float) -> float:
        """Seconds left before the current window resets (0 once it has)."""
        if self._window_elapsed(now):
            return 0.0
        return max(0.0, self.window_start + self.window_seconds - now)

    def record_success(self) -> None:
        """Count one successful delivery. Never call this for a failed attempt."""
        self.sent_count += 1

    def sent_in_window(self, now: float) -> int:
        """Successful sends in the window active at ``now``, without resetting it."""
        if self._window_elapsed(now):
            return 0
        return self.sent_count
