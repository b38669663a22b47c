from __future__ import annotations

import threading
import time
from typing import Callable

from .config import DEFAULT_RATE_LIMIT, DEFAULT_RATE_WINDOW


class FixedWindowLimiter:
    """Allow at most ``max_requests`` per client key in each ``window_seconds`` window."""

    def __init__(
        self,
        max_requests: int = DEFAULT_RATE_LIMIT,
        window_seconds: float = DEFAULT_RATE_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_requests = max_requests
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        expired = [key for key, (start, _count) in self._windows.items() if now - start >= self.window_seconds]
        for key in expired:
            del self._windows[key]

    def allow(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            self._prune(now)
            start, count = self._windows.get(key, (now, 0))
            if count >= self.max_requests:
                return False
            self._windows[key] = (start, count + 1)
            return True

    def retry_after(self, key: str) -> float:
        now = self._clock()
        with self._lock:
            entry = self._windows.get(key)
            if not entry:
                return 0.0
            return max(0.0, self.window_seconds - (now - entry[0]))
