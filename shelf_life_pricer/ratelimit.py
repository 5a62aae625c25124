"""
Token-bucket limiter for outbound Shopify calls.

Every GraphQL request takes one token. The bucket refills at ``rate`` tokens
per second up to ``burst``; when it is empty the caller sleeps until the next
token is due. ``waited`` and ``acquired`` make the throttling visible to the
status page and to tests.
"""

from __future__ import annotations

import time
import threading
import typing as t


class RateLimiter:
    def __init__(
        self,
        rate: float,
        burst: int = 1,
        clock: t.Callable[[], float] = time.monotonic,
        sleep: t.Callable[[float], None] = time.sleep,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.rate = float(rate)
        self.burst = int(burst)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()
        self.acquired = 0
        self.waited = 0.0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last)
        self._last = now
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)

    def acquire(self) -> float:
        """Take one token, sleeping if needed. Returns seconds slept."""
        with self._lock:
            self._refill()
            delay = 0.0
            if self._tokens < 1.0:
                delay = (1.0 - self._tokens) / self.rate
                self._sleep(delay)
                self._refill()
                # clock may not advance under a fake sleep
                self._tokens = max(self._tokens, 1.0)
            self._tokens -= 1.0
            self.acquired += 1
            self.waited += delay
            return delay

    def stats(self) -> dict:
        return {"rate_per_sec": self.rate, "burst": self.burst, "acquired": self.acquired, "waited_sec": round(self.waited, 3)}
