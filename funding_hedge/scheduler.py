from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .errors import AuthError

logger = logging.getLogger(__name__)


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def wait(self, timeout: Optional[float]) -> bool:
        """Sleep up to ``timeout`` seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)


class PeriodicTask:
    """Runs ``fn`` every ``interval_sec`` until cancelled.

    The wait between runs is interruptible, so ``cancel()`` followed by
    ``join()`` returns promptly. ``AuthError`` stops the task (credentials
    will not fix themselves); any other exception is logged and the next run
    goes ahead.
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[], object],
        interval_sec: float,
        token: Optional[CancellationToken] = None,
        run_immediately: bool = True,
        max_runs: Optional[int] = None,
    ):
        if interval_sec <= 0:
            raise ValueError(f"interval_sec must be positive (got {interval_sec})")
        self.name = name
        self.fn = fn
        self.interval_sec = interval_sec
        self.token = token or CancellationToken()
        self.run_immediately = run_immediately
        self.max_runs = max_runs
        self.runs = 0
        self.failures = 0
        self.error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def cancel(self) -> None:
        self.token.cancel()

    def _run_once(self) -> bool:
        started = time.monotonic()
        try:
            self.fn()
        except AuthError as exc:
            logger.error("[%s] authentication failed, stopping: %s", self.name, exc)
            self.error = exc
            self.token.cancel()
            return False
        except Exception:
            self.failures += 1
            logger.exception("[%s] run %d failed", self.name, self.runs + 1)
        finally:
            self.runs += 1
        logger.debug("[%s] run %d took %.2fs", self.name, self.runs, time.monotonic() - started)
        return True

    def run(self) -> None:
        """Blocking loop on the calling thread."""
        if not self.run_immediately and self.token.wait(self.interval_sec):
            return
        while not self.token.cancelled:
            if not self._run_once():
                break
            if self.max_runs is not None and self.runs >= self.max_runs:
                break
            if self.token.wait(self.interval_sec):
                break
        logger.info("[%s] stopped after %d runs", self.name, self.runs)

    def start(self) -> "PeriodicTask":
        if self._thread is not None:
            raise RuntimeError(f"task {self.name} already started")
        self._thread = threading.Thread(target=self.run, name=self.name, daemon=True)
        self._thread.start()
        return self

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
