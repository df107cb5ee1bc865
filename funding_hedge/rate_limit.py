from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Tuple

from .config import API_WEIGHT_LIMIT_PER_MINUTE

logger = logging.getLogger(__name__)

WINDOW_SEC = 60.0


class RequestWeightBudget:
    """Process-wide request weight budget over a rolling one-minute window.

    Every outbound request calls ``acquire(weight)`` first; when the window is
    full the caller blocks until enough weight has aged out. Safe to share
    between threads.
    """

    def __init__(
        self,
        limit: int = API_WEIGHT_LIMIT_PER_MINUTE,
        window_sec: float = WINDOW_SEC,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if limit <= 0:
            raise ValueError(f"weight limit must be positive (got {limit})")
        self.limit = limit
        self.window_sec = window_sec
        self._clock = clock
        self._sleep = sleep
        self._entries: Deque[Tuple[float, int]] = deque()
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        while self._entries and now - self._entries[0][0] >= self.window_sec:
            self._entries.popleft()

    @property
    def used(self) -> int:
        with self._lock:
            self._purge(self._clock())
            return sum(w for _, w in self._entries)

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def _wait_needed(self, weight: int, now: float) -> float:
        used = sum(w for _, w in self._entries)
        if used + weight <= self.limit:
            return 0.0
        # walk the window oldest-first until enough weight has expired
        excess = used + weight - self.limit
        freed = 0
        for ts, w in self._entries:
            freed += w
            if freed >= excess:
                return max(0.0, ts + self.window_sec - now)
        return self.window_sec

    def acquire(self, weight: int = 1) -> float:
        """Reserve ``weight``; returns the total seconds spent waiting."""
        if weight > self.limit:
            raise ValueError(f"request weight {weight} exceeds budget {self.limit}")

        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                self._purge(now)
                wait = self._wait_needed(weight, now)
                if wait <= 0:
                    self._entries.append((now, weight))
                    return waited
            logger.warning(
                "Request weight budget exhausted (%d/%d), waiting %.2fs",
                self.limit - self.remaining, self.limit, wait,
            )
            self._sleep(wait)
            waited += wait

    def observe_server_usage(self, used_weight: int) -> None:
        """Align with the exchange's own count (``X-MBX-USED-WEIGHT-1M``).

        Only ever raises the local count; weight spent by other processes on the
        same IP shows up here.
        """
        with self._lock:
            now = self._clock()
            self._purge(now)
            local = sum(w for _, w in self._entries)
            if used_weight > local:
                self._entries.append((now, used_weight - local))
