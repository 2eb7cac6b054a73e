import time
from collections import deque
from threading import Lock
from typing import Callable


class SlidingWindowRateLimiter:
    """Process-local limiter: at most ``limit`` hits per key within ``window_seconds``.

    Timestamps older than the window are evicted on every hit, and keys whose
    history empties are dropped, so memory stays bounded by active callers.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = max(1, int(limit))
        self.window_seconds = max(1.0, float(window_seconds))
        self.clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = Lock()

    def _evict(self, now: float) -> None:
        cutoff = now - self.window_seconds
        for key in list(self._hits):
            history = self._hits[key]
            while history and history[0] <= cutoff:
                history.popleft()
            if not history:
                del self._hits[key]

    def hit(self, key: str) -> bool:
        now = self.clock()
        with self._lock:
            self._evict(now)
            history = self._hits.setdefault(key, deque())
            if len(history) >= self.limit:
                return False
            history.append(now)
            return True

    def retry_after(self, key: str) -> int:
        now = self.clock()
        with self._lock:
            history = self._hits.get(key)
            if not history or len(history) < self.limit:
                return 0
            return max(1, int(history[0] + self.window_seconds - now) + 1)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
