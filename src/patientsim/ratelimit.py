"""Per-user sliding-window admission control.

Every upstream call is gated by ``check_rate_limit``. Timestamps older than
the window are pruned lazily on each check; ``cleanup`` drops users whose
window has emptied so the table does not grow without bound.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Hashable

_LOG = logging.getLogger(__name__)


@dataclass
class RateLimitStats:
    total_requests: int = 0
    requests_allowed: int = 0
    requests_denied: int = 0

    def to_dict(self) -> dict:
        return {
            "total_requests": self.total_requests,
            "requests_allowed": self.requests_allowed,
            "requests_denied": self.requests_denied,
            "denial_rate": self.requests_denied / max(1, self.total_requests),
        }


class RateLimiter:
    """Admit at most ``max_requests`` per user within ``window`` seconds."""

    def __init__(
        self,
        max_requests: int = 100,
        window: float = 15 * 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window <= 0:
            raise ValueError("window must be positive")
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._requests: Dict[Hashable, Deque[float]] = {}
        self.stats = RateLimitStats()

    def _prune(self, timestamps: Deque[float], now: float) -> None:
        while timestamps and now - timestamps[0] >= self.window:
            timestamps.popleft()

    def check_rate_limit(self, user_id: Hashable) -> bool:
        """Return True and record the request if *user_id* is under the limit."""
        now = self._clock()
        self.stats.total_requests += 1
        timestamps = self._requests.setdefault(user_id, deque())
        self._prune(timestamps, now)

        if len(timestamps) >= self.max_requests:
            self.stats.requests_denied += 1
            _LOG.warning("Rate limit hit for user %s (%d in window)", user_id, len(timestamps))
            return False

        timestamps.append(now)
        self.stats.requests_allowed += 1
        return True

    def retry_after(self, user_id: Hashable) -> float:
        """Seconds until *user_id* gets a free slot (0 if one is free now)."""
        timestamps = self._requests.get(user_id)
        if not timestamps:
            return 0.0
        now = self._clock()
        self._prune(timestamps, now)
        if len(timestamps) < self.max_requests:
            return 0.0
        return max(0.0, self.window - (now - timestamps[0]))

    def get_status(self, user_id: Hashable) -> dict:
        timestamps = self._requests.get(user_id, deque())
        self._prune(timestamps, self._clock())
        return {
            "requests_in_window": len(timestamps),
            "max_requests": self.max_requests,
            "window_seconds": self.window,
            "retry_after": self.retry_after(user_id),
        }

    def cleanup(self) -> int:
        """Prune every user's window and drop empty entries; return how many were dropped."""
        now = self._clock()
        dropped = 0
        for user_id in list(self._requests):
            timestamps = self._requests[user_id]
            self._prune(timestamps, now)
            if not timestamps:
                del self._requests[user_id]
                dropped += 1
        if dropped:
            _LOG.debug("Rate limiter cleanup dropped %d idle users", dropped)
        return dropped

    def tracked_users(self) -> int:
        return len(self._requests)

    def reset(self) -> None:
        self._requests.clear()
        self.stats = RateLimitStats()
