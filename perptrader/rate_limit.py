"""Sliding-window request throttles for the exchange REST API."""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Tuple

logger = logging.getLogger(__name__)

# Blofin limits
TRADING_MAX_REQUESTS = 30
TRADING_WINDOW_SECONDS = 10.0
GENERAL_MAX_REQUESTS = 500
GENERAL_WINDOW_SECONDS = 60.0

# Added to each computed wait so the oldest slot has definitely expired
SAFETY_MARGIN_SECONDS = 0.01


class RateLimiter:
    """
    At most `max_requests` acquisitions in any `window_seconds` window.

    Callers over budget block until a slot frees up, then retry the same
    acquisition. Thread-safe: client calls run on worker threads.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        name: str = "general",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._timestamps: Deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float):
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    def acquire(self):
        while True:
            with self._lock:
                now = self._clock()
                self._prune(now)
                if len(self._timestamps) < self.max_requests:
                    self._timestamps.append(now)
                    return
                wait = self.window_seconds - (now - self._timestamps[0]) + SAFETY_MARGIN_SECONDS

            logger.debug(f"Rate limiter '{self.name}' throttling for {wait:.3f}s")
            self._sleep(wait)

    @property
    def in_window(self) -> int:
        """Requests counted in the current window."""
        with self._lock:
            self._prune(self._clock())
            return len(self._timestamps)


def create_blofin_limiters() -> Tuple[RateLimiter, RateLimiter]:
    """Returns (trading, general) limiters sized to Blofin's published limits."""
    trading = RateLimiter(TRADING_MAX_REQUESTS, TRADING_WINDOW_SECONDS, name="trading")
    general = RateLimiter(GENERAL_MAX_REQUESTS, GENERAL_WINDOW_SECONDS, name="general")
    return trading, general
