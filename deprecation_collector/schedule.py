"""
schedule.py - When to hand the aggregated window to storage.

Each process flushes on its own timer. A random jitter on top of the interval
spreads the writes of a large fleet that was started at the same moment.
"""

from __future__ import annotations

import random
import time
from typing import Callable, Optional

# In production hundreds of workers share one store; writes must be rare.
DEFAULT_WRITE_INTERVAL = 900.0
DEFAULT_WRITE_INTERVAL_JITTER = 60.0


class FlushSchedule:
    """Interval + jitter flush timer.

    Attributes:
        write_interval: Seconds between flushes.
        write_interval_jitter: Upper bound of the random extra delay used by
            opportunistic flushes.
        last_write_time: Clock value of the last flush (or of construction).
    """

    def __init__(
        self,
        write_interval: float = DEFAULT_WRITE_INTERVAL,
        write_interval_jitter: float = DEFAULT_WRITE_INTERVAL_JITTER,
        clock: Optional[Callable[[], float]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.write_interval = write_interval
        self.write_interval_jitter = write_interval_jitter
        self._clock = clock or time.time
        self._rng = rng or random.Random()
        self.last_write_time = self._clock()

    def now(self) -> float:
        return self._clock()

    def due(self) -> bool:
        """True when interval plus a fresh random jitter has passed."""
        jitter = self._rng.uniform(0, self.write_interval_jitter) if self.write_interval_jitter > 0 else 0.0
        return self.now() - self.last_write_time > self.write_interval + jitter

    def elapsed(self) -> bool:
        """True when the plain interval has passed."""
        return self.now() > self.last_write_time + self.write_interval

    def mark(self) -> None:
        self.last_write_time = self.now()
