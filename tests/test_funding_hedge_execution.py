from typing import Dict, List

import pytest

from funding_hedge.errors import AuthError, DuplicateOrderError, NetworkError
from funding_hedge.execution import ExchangeExecutionClient, ExecutionService, new_client_order_id
from funding_hedge.types import OrderSide, RebalanceOrder


class FakeClient(ExchangeExecutionClient):
    def __init__(self):
        self.calls = []
        self.fail_with: List[Exception] = []

    def place_order(
        self,
        symbol: str,
        side: str,
        qty: float,
        order_type: str,
        reduce_only: bool,
        client_order_id: str,
    ) -> Dict:
        self.calls.append((symbol, side, qty, order_type, reduce_only, client_order_id))
        if self.fail_with:
            raise self.fail_with.pop(0)
        return {"id": 42, "average": 100.5}


def _order(reduce_only: bool = False) -> RebalanceOrder:
    return RebalanceOrder(
        symbol="BTCUSDT",
        side=OrderSide.BUY if reduce_only else OrderSide.SELL,
        quantity=0.45,
        reason="under_hedged 0.5000 -> 0.9500 (target 0.95)",
        reduce_only=reduce_only,
    )


def test_client_order_id_fits_exchange_limit():
    coid = new_client_order_id("1000SHIBUSDT")

    assert coid.startswith("hg-1000shibusdt-")
    assert len(coid) <= 36
    assert new_client_order_id("BTCUSDT") != new_client_order_id("BTCUSDT")


def test_submit_passes_order_fields():
    client = FakeClient()
    svc = ExecutionService(client)

    result = svc.submit(_order(reduce_only=True), client_order_id="hg-btc-1")

    assert result.success
    assert result.order_id == "42"
    assert result.avg_price == 100.5
    assert client.calls == [("BTCUSDT", "BUY", 0.45, "MARKET", True, "hg-btc-1")]
    assert svc.history == [result]


def test_duplicate_client_order_id_blocked():
    client = FakeClient()
    svc = ExecutionService(client)

    first = svc.submit(_order(), client_order_id="dup")
    second = svc.submit(_order(), client_order_id="dup")

    assert first.success
    assert not second.success
    assert second.error == "DUPLICATE_ORDER"
    assert len(client.calls) == 1


def test_dry_run_never_calls_exchange():
    client = FakeClient()
    svc = ExecutionService(client, dry_run=True)

    result = svc.submit(_order())

    assert result.success
    assert result.dry_run
    assert client.calls == []


def test_network_errors_are_retried():
    client = FakeClient()
    client.fail_with = [NetworkError("reset"), NetworkError("reset")]
    sleeps = []
    svc = ExecutionService(client, max_retries=2, sleep=sleeps.append)

    result = svc.submit(_order())

    assert result.success
    assert len(client.calls) == 3
    assert sleeps == [1.0, 2.0]
    # same client order id on every attempt
    assert len({c[5] for c in client.calls}) == 1


def test_retries_exhausted_returns_failure():
    client = FakeClient()
    client.fail_with = [NetworkError("down")] * 3
    svc = ExecutionService(client, max_retries=1, sleep=lambda s: None)

    result = svc.submit(_order())

    assert not result.success
    assert result.unconfirmed
    assert result.error == "down"
    assert len(client.calls) == 2


def test_auth_error_is_not_retried():
    client = FakeClient()
    client.fail_with = [AuthError("bad key")]
    svc = ExecutionService(client, sleep=lambda s: None)

    with pytest.raises(AuthError):
        svc.submit(_order())
    assert len(client.calls) == 1


def test_duplicate_id_after_network_error_means_order_landed():
    client = FakeClient()
    client.fail_with = [NetworkError("read timed out"), DuplicateOrderError("code=-4116")]
    svc = ExecutionService(client, sleep=lambda s: None)

    result = svc.submit(_order(), client_order_id="hg-btc-2")

    assert result.success
    assert result.unconfirmed
    assert result.order_id == "hg-btc-2"
    assert len(client.calls) == 2


def test_duplicate_id_on_first_attempt_is_raised():
    client = FakeClient()
    client.fail_with = [DuplicateOrderError("code=-4116")]
    svc = ExecutionService(client, sleep=lambda s: None)

    with pytest.raises(DuplicateOrderError):
        svc.submit(_order())
