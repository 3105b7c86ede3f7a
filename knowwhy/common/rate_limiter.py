"""
Rate Limiter

Token bucket shared by every collaborator call in a process. Callers block
in ``acquire`` until a token is available.
"""

import threading
import time
from typing import Callable, Optional


class RateLimiter:
    """Thread-safe token bucket.

    The bucket holds at most ``max_calls`` tokens and refills continuously at
    ``max_calls / period_seconds`` tokens per second.
    """

    def __init__(
        self,
        max_calls: int = 20,
        period_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_calls < 1:
            raise ValueError("max_calls must be >= 1")
        if period_seconds <= 0:
            raise ValueError("period_seconds must be > 0")
        self.max_calls = max_calls
        self.period_seconds = period_seconds
        self._rate = max_calls / period_seconds
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(max_calls)
        self._last = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last)
        self._tokens = min(float(self.max_calls), self._tokens + elapsed * self._rate)
        self._last = now

    def try_acquire(self) -> bool:
        """Take a token without blocking."""
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """Block until a token is taken. Returns False if ``timeout`` elapses first."""
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
                wait = (1.0 - self._tokens) / self._rate
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)
            self._sleep(wait)

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens
