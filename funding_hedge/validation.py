from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from .config import HedgeConfig
from .errors import AuthError, ExchangeError, ImbalanceTimeoutError
from .scheduler import CancellationToken
from .types import HedgeEvaluation, ValidationResult, ValidationState

logger = logging.getLogger(__name__)

PollFn = Callable[[str], Optional[HedgeEvaluation]]
SettledFn = Callable[[Optional[HedgeEvaluation]], bool]


def balanced_or_flat(evaluation: Optional[HedgeEvaluation]) -> bool:
    """Default success condition: balanced, or no exposure left at all."""
    return evaluation is None or evaluation.is_balanced


def futures_closed(evaluation: Optional[HedgeEvaluation]) -> bool:
    return evaluation is None or evaluation.futures_size == 0


class HedgeValidationLoop:
    """Polls an asset after a corrective order until it settles.

    PENDING -> poll -> BALANCED | RETRY | TIMED_OUT. RETRY is entered while
    attempts remain and the overall ceiling has not passed; otherwise the
    loop ends in TIMED_OUT. Failed polls other than ``AuthError`` are recorded
    and count as attempts. A TIMED_OUT result is never reported as success:
    callers either inspect it or call ``raise_for_timeout``.
    """

    def __init__(
        self,
        poll: PollFn,
        config: HedgeConfig,
        token: Optional[CancellationToken] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], object]] = None,
    ):
        self.poll = poll
        self.max_attempts = config.validation_max_attempts
        self.retry_interval_sec = config.validation_retry_interval_sec
        self.max_wait_sec = config.validation_max_wait_sec
        self.token = token or CancellationToken()
        self._clock = clock
        self._sleep = sleep or self.token.wait

    def run(self, asset: str, settled: SettledFn = balanced_or_flat) -> ValidationResult:
        started = self._clock()
        attempts = 0
        errors: List[str] = []
        history: List[ValidationState] = [ValidationState.PENDING]
        last: Optional[HedgeEvaluation] = None

        def _result(state: ValidationState) -> ValidationResult:
            history.append(state)
            return ValidationResult(
                asset=asset,
                state=state,
                attempts=attempts,
                elapsed_sec=self._clock() - started,
                last_evaluation=last,
                errors=errors,
                history=history,
            )

        while True:
            attempts += 1
            try:
                evaluation = self.poll(asset)
            except AuthError:
                raise
            except ExchangeError as exc:
                errors.append(f"attempt {attempts}: {exc}")
                logger.warning("%s: validation poll %d/%d failed: %s", asset, attempts, self.max_attempts, exc)
            else:
                last = evaluation
                if settled(evaluation):
                    logger.info("%s: hedge confirmed after %d attempt(s)", asset, attempts)
                    return _result(ValidationState.BALANCED)

            elapsed = self._clock() - started
            if attempts >= self.max_attempts or elapsed >= self.max_wait_sec:
                logger.warning(
                    "%s: still imbalanced after %d attempts / %.1fs", asset, attempts, elapsed
                )
                return _result(ValidationState.TIMED_OUT)
            if self.token.cancelled:
                errors.append("cancelled")
                return _result(ValidationState.TIMED_OUT)

            history.append(ValidationState.RETRY)
            ratio = f"{last.ratio:.4f}" if last is not None and last.ratio is not None else "n/a"
            logger.info(
                "%s: waiting for hedge (%d/%d, ratio=%s)", asset, attempts, self.max_attempts, ratio
            )
            self._sleep(min(self.retry_interval_sec, max(0.0, self.max_wait_sec - elapsed)))


def raise_for_timeout(result: ValidationResult) -> ValidationResult:
    if result.state == ValidationState.TIMED_OUT:
        raise ImbalanceTimeoutError(result)
    return result
