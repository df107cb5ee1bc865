import pytest

from funding_hedge.config import HedgeConfig
from funding_hedge.hedge import HedgeRatioEvaluator, build_asset_positions, classify, hedge_ratio
from funding_hedge.types import (
    AccountSnapshot,
    AssetPosition,
    FuturesPosition,
    HedgeClassification,
    SpotBalance,
)


def _position(asset: str, spot: float, futures_amt: float, mark: float = 100.0) -> AssetPosition:
    return AssetPosition(
        asset=asset,
        symbol=f"{asset}USDT",
        spot_free=spot,
        spot_locked=0.0,
        futures_amt=futures_amt,
        mark_price=mark,
    )


def test_bounds_are_inclusive():
    assert classify(10.0, -9.0, 0.90, 1.10) == HedgeClassification.BALANCED
    assert classify(10.0, -11.0, 0.90, 1.10) == HedgeClassification.BALANCED
    assert classify(10.0, -8.99, 0.90, 1.10) == HedgeClassification.UNDER_HEDGED
    assert classify(10.0, -11.01, 0.90, 1.10) == HedgeClassification.OVER_HEDGED


def test_no_hedge_and_naked_futures():
    assert classify(5.0, 0.0, 0.90, 1.10) == HedgeClassification.NO_HEDGE
    assert classify(0.0, -2.0, 0.90, 1.10) == HedgeClassification.NAKED_FUTURES
    with pytest.raises(ValueError):
        classify(0.0, 0.0, 0.90, 1.10)


def test_ratio_uses_absolute_futures_size():
    assert hedge_ratio(10.0, -9.5) == pytest.approx(0.95)
    assert hedge_ratio(10.0, 9.5) == pytest.approx(0.95)
    assert hedge_ratio(0.0, -1.0) is None


def test_evaluate_is_pure():
    evaluator = HedgeRatioEvaluator(HedgeConfig())
    pos = _position("BTC", 1.0, -0.5)

    first = evaluator.evaluate(pos)
    second = evaluator.evaluate(pos)

    assert first == second
    assert first.classification == HedgeClassification.UNDER_HEDGED
    assert first.ratio == pytest.approx(0.5)
    assert first.futures_size == pytest.approx(0.5)
    assert pos.futures_amt == -0.5


def test_naked_futures_is_critical():
    evaluator = HedgeRatioEvaluator(HedgeConfig())
    ev = evaluator.evaluate(_position("ETH", 0.0, -3.0))

    assert ev.is_critical
    assert not ev.is_balanced
    assert ev.ratio is None


def test_build_asset_positions_joins_spot_and_futures():
    cfg = HedgeConfig()
    spot = {
        "BTC": SpotBalance("BTC", free=0.8, locked=0.2),
        "USDT": SpotBalance("USDT", free=500.0),
        "SOL": SpotBalance("SOL", free=3.0),
    }
    futures = [
        FuturesPosition("BTCUSDT", -1.0, 30000.0, 31000.0),
        FuturesPosition("SOLUSDT", 0.0, 0.0, 150.0),
        FuturesPosition("ETHUSDT", -2.0, 2000.0, 2100.0),
    ]

    positions = build_asset_positions(spot, futures, cfg)

    assert [p.asset for p in positions] == ["BTC", "ETH", "SOL"]
    btc, eth, sol = positions
    assert btc.spot_total == pytest.approx(1.0)
    assert btc.futures_amt == -1.0
    assert eth.spot_total == 0.0
    assert eth.futures_amt == -2.0
    assert sol.futures_amt == 0.0
    # mark price taken from the flat position entry
    assert sol.mark_price == 150.0


def test_dust_threshold_drops_tiny_balances():
    cfg = HedgeConfig(dust_threshold=0.001)
    spot = {"BTC": SpotBalance("BTC", free=0.0005), "ETH": SpotBalance("ETH", free=1.0)}

    positions = build_asset_positions(spot, [], cfg)

    assert [p.asset for p in positions] == ["ETH"]


def test_evaluate_snapshot_and_asset_lookup():
    evaluator = HedgeRatioEvaluator(HedgeConfig())
    snapshot = AccountSnapshot(
        spot_balances={"BTC": SpotBalance("BTC", free=1.0)},
        futures_positions=[FuturesPosition("BTCUSDT", -0.95, 30000.0, 30000.0)],
    )

    evaluations = evaluator.evaluate_snapshot(snapshot)

    assert len(evaluations) == 1
    assert evaluations[0].is_balanced
    assert evaluator.evaluate_asset(snapshot, "BTC") == evaluations[0]
    assert evaluator.evaluate_asset(snapshot, "ETH") is None
