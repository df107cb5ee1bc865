from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from .config import HedgeConfig
from .types import (
    AccountSnapshot,
    AssetPosition,
    FuturesPosition,
    HedgeClassification,
    HedgeEvaluation,
    SpotBalance,
)

logger = logging.getLogger(__name__)


def classify(
    spot_total: float,
    futures_amt: float,
    min_ratio: float,
    max_ratio: float,
) -> HedgeClassification:
    """Classify one spot/futures pairing. Bounds are inclusive.

    Callers must not pass a pairing with no exposure on either side.
    """
    futures_size = abs(futures_amt)
    if spot_total <= 0:
        if futures_size > 0:
            return HedgeClassification.NAKED_FUTURES
        raise ValueError("no exposure to classify (spot=0, futures=0)")
    if futures_size == 0:
        return HedgeClassification.NO_HEDGE

    ratio = futures_size / spot_total
    if ratio < min_ratio:
        return HedgeClassification.UNDER_HEDGED
    if ratio > max_ratio:
        return HedgeClassification.OVER_HEDGED
    return HedgeClassification.BALANCED


def hedge_ratio(spot_total: float, futures_amt: float) -> Optional[float]:
    if spot_total <= 0:
        return None
    return abs(futures_amt) / spot_total


def build_asset_positions(
    spot_balances: Dict[str, SpotBalance],
    futures_positions: Iterable[FuturesPosition],
    config: HedgeConfig,
) -> List[AssetPosition]:
    """Join spot balances with the matching ``<ASSET><QUOTE>`` perpetuals.

    Only assets with non-zero exposure on at least one side are returned,
    sorted by asset. Quote/stable assets in ``config.ignored_assets`` are
    skipped.
    """
    futures_by_asset: Dict[str, FuturesPosition] = {}
    mark_by_asset: Dict[str, float] = {}
    for pos in futures_positions:
        asset = config.asset_from_symbol(pos.symbol)
        if asset is None:
            continue
        if pos.mark_price:
            mark_by_asset[asset] = pos.mark_price
        if pos.is_open:
            futures_by_asset[asset] = pos

    assets = set(futures_by_asset)
    for asset, bal in spot_balances.items():
        if bal.total > config.dust_threshold:
            assets.add(asset)

    positions: List[AssetPosition] = []
    for asset in sorted(assets - set(config.ignored_assets)):
        bal = spot_balances.get(asset)
        fut = futures_by_asset.get(asset)
        spot_free = bal.free if bal else 0.0
        spot_locked = bal.locked if bal else 0.0
        if spot_free + spot_locked <= config.dust_threshold:
            spot_free = spot_locked = 0.0
        positions.append(
            AssetPosition(
                asset=asset,
                symbol=config.futures_symbol(asset),
                spot_free=spot_free,
                spot_locked=spot_locked,
                futures_amt=fut.position_amt if fut else 0.0,
                entry_price=fut.entry_price if fut else 0.0,
                mark_price=mark_by_asset.get(asset, 0.0),
                unrealized_pnl=fut.unrealized_profit if fut else 0.0,
            )
        )
    return [p for p in positions if p.spot_total > 0 or p.futures_amt != 0]


class HedgeRatioEvaluator:
    """Stateless spot-vs-futures hedge classification."""

    def __init__(self, config: HedgeConfig):
        self.config = config

    def evaluate(self, position: AssetPosition) -> HedgeEvaluation:
        classification = classify(
            position.spot_total,
            position.futures_amt,
            self.config.min_hedge_ratio,
            self.config.max_hedge_ratio,
        )
        return HedgeEvaluation(
            asset=position.asset,
            symbol=position.symbol,
            spot_size=position.spot_total,
            futures_size=position.futures_size,
            futures_amt=position.futures_amt,
            ratio=hedge_ratio(position.spot_total, position.futures_amt),
            classification=classification,
            mark_price=position.mark_price,
        )

    def evaluate_all(self, positions: Iterable[AssetPosition]) -> List[HedgeEvaluation]:
        out = [self.evaluate(p) for p in positions]
        for ev in out:
            if ev.is_critical:
                logger.warning(
                    "%s: naked futures position %g with no spot holding", ev.symbol, ev.futures_amt
                )
        return out

    def evaluate_snapshot(self, snapshot: AccountSnapshot) -> List[HedgeEvaluation]:
        positions = build_asset_positions(
            snapshot.spot_balances, snapshot.futures_positions, self.config
        )
        return self.evaluate_all(positions)

    def evaluate_asset(self, snapshot: AccountSnapshot, asset: str) -> Optional[HedgeEvaluation]:
        """Evaluation for a single asset, or None when it has no exposure left."""
        for ev in self.evaluate_snapshot(snapshot):
            if ev.asset == asset:
                return ev
        return None
