"""
Fixed-delay throttle shared by all workers calling the same endpoint.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable


class Throttle:
    """
    Enforce a minimum interval between successive calls.

    Thread-safe: workers reserve their slot under a lock and sleep outside
    it, so N workers calling ``wait()`` at once are spread out by
    ``min_interval`` each.

    Usage:
        throttle = Throttle(0.15)
        throttle.wait()
        response = session.get(url)
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = max(min_interval, 0.0)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def wait(self) -> float:
        """
        Block until this caller may issue its request.

        Returns:
            Seconds slept
        """
        if self.min_interval <= 0:
            return 0.0

        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.min_interval

        delay = slot - now
        if delay > 0:
            self._sleep(delay)
        return delay
