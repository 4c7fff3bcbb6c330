"""Fixed-window request counter.

State is process-local and best-effort: two requests racing on the same key
right at a window boundary may both be admitted. Deployments running more than
one worker must back this with a shared counter store (e.g. Redis INCR+EXPIRE)
to enforce limits across instances. Expired windows are swept every
``sweep_interval`` seconds so only live keys are kept.
"""
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from errors import RateLimited


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_interval: float = 60.0):
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def _sweep(self, now: float) -> None:
        # caller holds the lock
        expired = [k for k, w in self._windows.items() if now >= w.reset_at]
        for k in expired:
            del self._windows[k]
        self._next_sweep = now + self._sweep_interval

    def allow(self, key: str, max_count: int, window_seconds: float) -> bool:
        """Count one call against ``key``; False once ``max_count`` is reached in the window."""
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            w = self._windows.get(key)
            if w is None or now >= w.reset_at:
                self._windows[key] = _Window(count=1, reset_at=now + window_seconds)
                return True
            if w.count < max_count:
                w.count += 1
                return True
            return False

    def retry_after(self, key: str) -> int:
        """Seconds until the key's current window resets (at least 1)."""
        with self._lock:
            w = self._windows.get(key)
            if w is None:
                return 1
            return max(1, math.ceil(w.reset_at - self._clock()))

    def enforce(self, key: str, max_count: int, window_seconds: float) -> None:
        if not self.allow(key, max_count, window_seconds):
            raise RateLimited(retry_after=self.retry_after(key))

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)
