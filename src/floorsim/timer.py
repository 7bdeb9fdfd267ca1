from __future__ import annotations
from typing import Callable, Optional
import logging
import math
import time

logger = logging.getLogger(__name__)


class RunTimer:
    """
    Run/pause control with an optional countdown.

    Elapsed time accumulates across pauses. `remaining` is -1 when there is
    no limit. `poll()` is the periodic check: once the countdown reaches zero
    the timer pauses itself and reports the expiry.
    """

    def __init__(self, limit_sec: float = 0.0, clock: Callable[[], float] = time.monotonic,
                 running: bool = True):
        self._clock = clock
        self._elapsed = 0.0
        self._started: Optional[float] = None
        self.limit_sec = float(max(0, math.floor(limit_sec)))
        if running:
            self._started = self._clock()

    @property
    def running(self) -> bool:
        return self._started is not None

    @property
    def elapsed(self) -> float:
        live = self._clock() - self._started if self._started is not None else 0.0
        e = self._elapsed + live
        return min(e, self.limit_sec) if self.limit_sec > 0 else e

    @property
    def remaining(self) -> float:
        if self.limit_sec <= 0:
            return -1.0
        return max(0.0, self.limit_sec - self.elapsed)

    def start(self) -> None:
        if self._started is None:
            self._started = self._clock()

    def pause(self) -> None:
        if self._started is not None:
            self._elapsed += self._clock() - self._started
            self._started = None

    def reset(self) -> None:
        self._elapsed = 0.0
        self._started = self._clock() if self.running else None

    def set_limit(self, limit_sec: float) -> None:
        """Changing the limit restarts the count."""
        new = float(max(0, math.floor(limit_sec)))
        if new != self.limit_sec:
            self.limit_sec = new
            self.reset()

    def poll(self) -> bool:
        """True exactly when this call expired the countdown."""
        if not self.running or self.limit_sec <= 0:
            return False
        if self.remaining <= 0:
            self._elapsed = self.limit_sec
            self._started = None
            logger.info("time limit of %.0f s reached, pausing", self.limit_sec)
            return True
        return False


class VirtualClock:
    """Manually advanced clock for headless runs and tests."""

    def __init__(self, t0: float = 0.0):
        self.t = t0

    def advance(self, dt: float) -> None:
        self.t += dt

    def __call__(self) -> float:
        return self.t
