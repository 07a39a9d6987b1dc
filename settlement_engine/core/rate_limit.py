from __future__ import annotations

import time
from collections.abc import Callable
from threading import Lock


class HostRateLimiter:
    """Spaces requests to the same host at most ``qps`` per second."""

    def __init__(
        self,
        *,
        qps: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be positive")
        self.interval_seconds = 1.0 / qps
        self._clock = clock
        self._sleep = sleep
        self._next_slot: dict[str, float] = {}
        self._lock = Lock()

    def allow(self, host: str) -> bool:
        now = self._clock()
        with self._lock:
            if now < self._next_slot.get(host, 0.0):
                return False
            self._next_slot[host] = now + self.interval_seconds
            return True

    def acquire(self, host: str) -> float:
        """Block until ``host`` has a free slot and return the time waited."""

        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot.get(host, 0.0))
            self._next_slot[host] = slot + self.interval_seconds
        wait_seconds = slot - now
        if wait_seconds > 0:
            self._sleep(wait_seconds)
        return wait_seconds
