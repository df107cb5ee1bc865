"""Exception hierarchy for the hedge consistency system."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .types import ValidationResult


class FundingHedgeError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(FundingHedgeError):
    """Invalid or missing configuration."""


class ExchangeError(FundingHedgeError):
    """An error reported by (or on the way to) the exchange."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        status: Optional[int] = None,
        path: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.status = status
        self.path = path


class AuthError(ExchangeError):
    """Bad API key, secret or signature. Never retried."""


class ClockSkewError(ExchangeError):
    """Timestamp rejected by the exchange. Retried once after a clock resync."""


class NetworkError(ExchangeError):
    """Transport failure or transient server error."""


class RateLimitError(NetworkError):
    """HTTP 429 / 418 from the exchange."""


class DuplicateOrderError(ExchangeError):
    """The client order id was already used, so an earlier attempt reached the exchange."""


class UnknownSymbolError(ExchangeError):
    """The symbol is not listed for futures trading."""

    def __init__(self, symbol: str, message: Optional[str] = None, **kwargs: Any):
        super().__init__(message or f"{symbol}: not listed for futures trading", **kwargs)
        self.symbol = symbol


class ExchangeRuleViolation(ExchangeError):
    """An order would break lot size / notional rules.

    Fatal for that one order: reported, never retried.
    """

    def __init__(
        self,
        symbol: str,
        message: str,
        values: Optional[Dict[str, float]] = None,
        **kwargs: Any,
    ):
        super().__init__(f"{symbol}: {message}", **kwargs)
        self.symbol = symbol
        self.values = dict(values or {})


class ImbalanceTimeoutError(FundingHedgeError):
    """The validation loop ran out of attempts or time with the pair still imbalanced."""

    def __init__(self, result: "ValidationResult"):
        evaluation = result.last_evaluation
        if evaluation is not None and evaluation.ratio is not None:
            detail = (
                f"ratio={evaluation.ratio:.4f} spot={evaluation.spot_size:g} "
                f"futures={evaluation.futures_size:g}"
            )
        elif evaluation is not None:
            detail = f"spot={evaluation.spot_size:g} futures={evaluation.futures_size:g}"
        else:
            detail = "no successful poll"
        super().__init__(
            f"{result.asset}: position still imbalanced after {result.attempts} attempts "
            f"/ {result.elapsed_sec:.1f}s ({detail})"
        )
        self.result = result
