"""Local-vs-exchange clock offset.

Signed Binance requests carry a ``timestamp`` that must sit inside the
server's ``recvWindow``. Instead of a hand-tuned constant the offset is
probed from the exchange time endpoint, cached, and refreshed on a timer
or when the exchange rejects a timestamp.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .errors import ExchangeError

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL_SEC = 30 * 60

# Offsets above this are logged loudly; they usually mean a broken local clock.
LARGE_OFFSET_WARN_MS = 1000


def _local_ms() -> int:
    return int(time.time() * 1000)


class ServerClock:
    """Cached exchange time offset.

    Parameters
    ----------
    fetch_server_time : Callable[[], int]
        Returns the exchange's current time in epoch milliseconds.
    refresh_interval_sec : float
        Age after which the cached offset is re-probed.
    initial_offset_ms : int
        Offset used until the first successful probe.
    local_ms : Callable[[], int]
        Local clock in epoch milliseconds. Replaced in tests.
    monotonic : Callable[[], float]
        Monotonic seconds used for the refresh timer.
    """

    def __init__(
        self,
        fetch_server_time: Callable[[], int],
        refresh_interval_sec: float = DEFAULT_REFRESH_INTERVAL_SEC,
        initial_offset_ms: int = 0,
        local_ms: Callable[[], int] = _local_ms,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch_server_time = fetch_server_time
        self._refresh_interval_sec = refresh_interval_sec
        self._offset_ms = int(initial_offset_ms)
        self._local_ms = local_ms
        self._monotonic = monotonic
        self._synced_at: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def offset_ms(self) -> int:
        return self._offset_ms

    @property
    def synced(self) -> bool:
        return self._synced_at is not None

    def is_stale(self) -> bool:
        if self._synced_at is None:
            return True
        return self._monotonic() - self._synced_at >= self._refresh_interval_sec

    def sync(self) -> int:
        """Probe the exchange time and store the new offset.

        The local reference point is the midpoint of the request, so one-way
        latency does not skew the offset.
        """
        with self._lock:
            before = self._local_ms()
            server_ms = int(self._fetch_server_time())
            after = self._local_ms()
            offset = server_ms - (before + after) // 2
            self._offset_ms = offset
            self._synced_at = self._monotonic()

        if abs(offset) > LARGE_OFFSET_WARN_MS:
            logger.warning("Large clock offset vs exchange: %d ms (rtt=%d ms)", offset, after - before)
        else:
            logger.info("Clock offset vs exchange: %d ms (rtt=%d ms)", offset, after - before)
        return offset

    def try_sync(self) -> bool:
        """Like ``sync`` but keeps the previous offset if the probe fails."""
        try:
            self.sync()
            return True
        except ExchangeError as exc:
            logger.warning(
                "Clock sync failed, keeping offset %d ms: %s", self._offset_ms, exc
            )
            return False

    def now_ms(self) -> int:
        if self.is_stale():
            self.try_sync()
        return self._local_ms() + self._offset_ms

    def invalidate(self) -> None:
        self._synced_at = None
