import threading
import time
from collections import deque


class RateLimiter:
    """Sliding-window limiter for administrative requests, keyed by actor."""

    def __init__(self, attempts: int, sliding_window: int = 60):
        self.attempts = attempts
        self.sliding_window = sliding_window
        self.buckets: dict[str, deque] = {}
        self._lock = threading.Lock()

    def check(self, key: str, attempts: int | None = None) -> bool:
        limit = attempts if attempts is not None else self.attempts
        now = time.time()
        window_start = now - self.sliding_window

        with self._lock:
            bucket = self.buckets.setdefault(key, deque())
            while bucket and bucket[0] < window_start:
                bucket.popleft()
            if len(bucket) >= limit:
                return False
            bucket.append(now)
            return True

    def retry_after(self, key: str) -> int:
        with self._lock:
            bucket = self.buckets.get(key)
            if not bucket:
                return 0
            return max(0, int(bucket[0] + self.sliding_window - time.time()) + 1)

    def reset(self) -> None:
        with self._lock:
            self.buckets.clear()
