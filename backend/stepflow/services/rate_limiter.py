"""Minimum-interval throttle for calls to the step generation service."""
from __future__ import annotations

import threading
import time
from typing import Callable, Optional


class RateLimiter:
    """Token bucket of capacity one: each acquire waits until `min_interval` has passed."""

    def __init__(
        self,
        min_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._last: Optional[float] = None
        self._lock = threading.Lock()

    def acquire(self) -> float:
        """Block until a call is allowed; return how long we waited."""
        with self._lock:
            now = self._clock()
            waited = 0.0
            if self._last is not None:
                remaining = self._last + self.min_interval - now
                if remaining > 0:
                    self._sleep(remaining)
                    waited = remaining
                    now += remaining
            self._last = now
            return waited
