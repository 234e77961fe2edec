"""
Request pacing

One RateLimiter is created per process and handed to every component that
talks to the game backend. All waits go through a Sleeper so that stopping
the process interrupts them.
"""

import logging
import threading
import time
from typing import Callable, Optional

from .errors import ShutdownRequested

logger = logging.getLogger(__name__)


class Sleeper:
    """Interruptible sleep shared by the limiter, retry backoff and batch delays"""

    def __init__(self):
        self._stop = threading.Event()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def sleep(self, seconds: float):
        if self._stop.is_set():
            raise ShutdownRequested("shutdown requested")
        if seconds <= 0:
            return
        if self._stop.wait(seconds):
            raise ShutdownRequested("shutdown requested")

    def stop(self):
        self._stop.set()


class RateLimiter:
    """Minimum interval between any two outbound requests"""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleeper: Optional[Sleeper] = None,
    ):
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock
        self._sleeper = sleeper or Sleeper()
        self._lock = threading.Lock()
        self._last_request_time: Optional[float] = None

    def acquire(self) -> float:
        """Block until a request may be sent; returns the time spent waiting"""
        # The lock is held while sleeping so callers leave in arrival order
        with self._lock:
            waited = 0.0
            now = self._clock()
            if self._last_request_time is not None:
                wait_time = self.min_interval - (now - self._last_request_time)
                if wait_time > 0:
                    logger.debug(f"Rate limiter: waiting {wait_time:.2f}s")
                    self._sleeper.sleep(wait_time)
                    waited = wait_time
                    now = self._clock()
            self._last_request_time = now
            return waited
