from __future__ import annotations

import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Set

from .errors import DuplicateOrderError, NetworkError
from .types import OrderResult, RebalanceOrder

logger = logging.getLogger(__name__)


class ExchangeExecutionClient(ABC):
    @abstractmethod
    def place_order(
        self,
        symbol: str,
        side: str,
        qty: float,
        order_type: str,
        reduce_only: bool,
        client_order_id: str,
    ) -> Dict:
        raise NotImplementedError


def new_client_order_id(symbol: str) -> str:
    # Binance caps newClientOrderId at 36 chars
    return f"hg-{symbol[:12].lower()}-{uuid.uuid4().hex[:16]}"


class ExecutionService:
    """Submits planned corrective orders.

    Only ``NetworkError`` is retried, always with the same client order id.
    Auth failures and rule violations are logged and re-raised: they will not
    succeed on a second attempt. After a network failure the order may still
    have reached the exchange, so the result is marked ``unconfirmed``.
    """

    def __init__(
        self,
        client: ExchangeExecutionClient,
        max_retries: int = 2,
        dry_run: bool = False,
        retry_delay_sec: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.max_retries = max_retries
        self.dry_run = dry_run
        self.retry_delay_sec = retry_delay_sec
        self._sleep = sleep
        self._submitted_ids: Set[str] = set()
        self._history: List[OrderResult] = []

    @property
    def history(self) -> List[OrderResult]:
        return list(self._history)

    def submit(self, order: RebalanceOrder, client_order_id: Optional[str] = None) -> OrderResult:
        client_order_id = client_order_id or new_client_order_id(order.symbol)
        if client_order_id in self._submitted_ids:
            result = OrderResult(
                success=False,
                order_id=None,
                symbol=order.symbol,
                side=order.side,
                qty=order.quantity,
                error="DUPLICATE_ORDER",
            )
            self._history.append(result)
            return result
        self._submitted_ids.add(client_order_id)

        if self.dry_run:
            logger.info(
                "[DRY RUN] %s %s %g reduce_only=%s (%s)",
                order.symbol, order.side.value, order.quantity, order.reduce_only, order.reason,
            )
            result = OrderResult(
                success=True,
                order_id=client_order_id,
                symbol=order.symbol,
                side=order.side,
                qty=order.quantity,
                dry_run=True,
            )
            self._history.append(result)
            return result

        last_err: Optional[str] = None
        for attempt in range(self.max_retries + 1):
            try:
                raw = self.client.place_order(
                    symbol=order.symbol,
                    side=order.side.value,
                    qty=order.quantity,
                    order_type=order.order_type.value,
                    reduce_only=order.reduce_only,
                    client_order_id=client_order_id,
                )
            except DuplicateOrderError:
                if last_err is None:
                    raise
                logger.warning(
                    "%s: order %s already known to the exchange after a failed attempt",
                    order.symbol, client_order_id,
                )
                result = OrderResult(
                    success=True,
                    order_id=client_order_id,
                    symbol=order.symbol,
                    side=order.side,
                    qty=order.quantity,
                    unconfirmed=True,
                )
                self._history.append(result)
                return result
            except NetworkError as exc:
                last_err = str(exc)
                logger.warning(
                    "%s: order attempt %d/%d failed: %s",
                    order.symbol, attempt + 1, self.max_retries + 1, exc,
                )
                if attempt < self.max_retries:
                    self._sleep(self.retry_delay_sec * (attempt + 1))
                continue
            except Exception as exc:
                logger.error(
                    "%s: order %s %g rejected: %s", order.symbol, order.side.value, order.quantity, exc
                )
                raise

            result = OrderResult(
                success=True,
                order_id=str(raw.get("id")),
                symbol=order.symbol,
                side=order.side,
                qty=order.quantity,
                avg_price=float(raw.get("average", 0.0) or 0.0),
            )
            self._history.append(result)
            return result

        result = OrderResult(
            success=False,
            order_id=None,
            symbol=order.symbol,
            side=order.side,
            qty=order.quantity,
            error=last_err or "UNKNOWN_ERROR",
            unconfirmed=True,
        )
        self._history.append(result)
        return result
