from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict

from .types import AccountSnapshot, TradingRules


class AccountDataSource(ABC):
    """Read-only view of the spot + futures account."""

    @abstractmethod
    def get_account_snapshot(self) -> AccountSnapshot:
        raise NotImplementedError

    @abstractmethod
    def get_trading_rules(self, symbol: str) -> TradingRules:
        raise NotImplementedError

    @abstractmethod
    def get_mark_price(self, symbol: str) -> float:
        raise NotImplementedError

    def get_futures_account(self) -> Dict[str, Any]:
        return {}

    def get_prices(self) -> Dict[str, float]:
        return {}
