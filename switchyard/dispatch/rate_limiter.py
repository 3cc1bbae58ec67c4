"""
Sliding Window Rate Limiter

One window per credential key. Each window holds the timestamps of requests
actually issued within the trailing window; admission compares the pruned
count to the key's per-minute limit.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from switchyard.core.protocols import Clock

logger = logging.getLogger(__name__)


@dataclass
class RateWindow:
    """Ordered request timestamps for one credential key."""

    limit: int
    min_interval: float = 0.0
    timestamps: deque[float] = field(default_factory=deque)

    def prune(self, now: float, window_seconds: float) -> None:
        cutoff = now - window_seconds
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()


class RateLimiter:
    """Per-credential sliding-window admission control.

    Args:
        clock: Time source (``monotonic`` is used)
        window_seconds: Trailing window length
        default_min_interval: Minimum spacing between calls on one key
    """

    def __init__(
        self,
        clock: Clock,
        window_seconds: float = 60.0,
        default_min_interval: float = 0.0,
    ) -> None:
        if window_seconds <= 0:
            msg = f"window_seconds must be positive, got {window_seconds}"
            raise ValueError(msg)
        if default_min_interval < 0:
            msg = f"default_min_interval must be non-negative, got {default_min_interval}"
            raise ValueError(msg)
        self.clock = clock
        self.window_seconds = float(window_seconds)
        self.default_min_interval = float(default_min_interval)
        self._windows: dict[str, RateWindow] = {}

    def configure(self, key: str, limit: int, min_interval: float | None = None) -> None:
        """Set (or update) the per-window limit for a key."""
        if limit < 1:
            msg = f"Rate limit for {key} must be at least 1, got {limit}"
            raise ValueError(msg)
        interval = self.default_min_interval if min_interval is None else float(min_interval)
        window = self._windows.get(key)
        if window is None:
            self._windows[key] = RateWindow(limit=limit, min_interval=interval)
        else:
            window.limit = limit
            window.min_interval = interval

    def is_configured(self, key: str) -> bool:
        return key in self._windows

    def _window(self, key: str) -> RateWindow:
        try:
            window = self._windows[key]
        except KeyError:
            msg = f"No rate window configured for '{key}'"
            raise KeyError(msg) from None
        window.prune(self.clock.monotonic(), self.window_seconds)
        return window

    def can_admit(self, key: str) -> bool:
        """True when another request on ``key`` fits in the trailing window."""
        window = self._window(key)
        return len(window.timestamps) < window.limit

    def wait_time(self, key: str) -> float:
        """Seconds until a request on ``key`` may be issued (0 when it may go now)."""
        window = self._window(key)
        now = self.clock.monotonic()

        if len(window.timestamps) < window.limit:
            if not window.timestamps:
                return 0.0
            since_last = now - window.timestamps[-1]
            return max(0.0, window.min_interval - since_last)

        oldest = window.timestamps[0]
        return max(window.min_interval, oldest + self.window_seconds - now)

    def record(self, key: str) -> None:
        """Record that a request on ``key`` was issued now."""
        window = self._window(key)
        window.timestamps.append(self.clock.monotonic())

    def try_admit(self, key: str) -> bool:
        """Check and record in one step; returns False without recording when full."""
        if self.wait_time(key) > 0:
            return False
        self.record(key)
        return True

    def penalize(self, key: str) -> None:
        """Block ``key`` until its window clears after a provider rate-limit rejection."""
        window = self._window(key)
        now = self.clock.monotonic()
        window.timestamps = deque([now] * window.limit)
        logger.info(
            "Rate window for %s saturated after provider rejection (blocked %.0fs)",
            key,
            self.window_seconds,
        )

    def status(self, key: str) -> dict[str, Any]:
        """Snapshot of a key's window."""
        window = self._window(key)
        current = len(window.timestamps)
        return {
            "limit": window.limit,
            "current": current,
            "remaining": max(0, window.limit - current),
            "wait_seconds": self.wait_time(key),
            "window_seconds": self.window_seconds,
        }

    def reset(self, key: str | None = None) -> None:
        """Clear one window or all of them."""
        if key is None:
            for window in self._windows.values():
                window.timestamps.clear()
        elif key in self._windows:
            self._windows[key].timestamps.clear()
