from __future__ import annotations

import logging
from decimal import ROUND_FLOOR, Decimal
from typing import Dict, Optional

from .config import HedgeConfig
from .types import (
    HedgeClassification,
    HedgeEvaluation,
    ImbalancePolicy,
    OrderSide,
    PlanStatus,
    RebalanceOrder,
    RebalancePlan,
    TradingRules,
)

logger = logging.getLogger(__name__)


def floor_to_step(qty: float, step: float) -> float:
    """Largest multiple of ``step`` that is <= ``qty``.

    Decimal arithmetic keeps 10.07 * 0.95 = 9.5665 from flooring to 9.4999...
    """
    if step <= 0:
        return qty
    q = Decimal(str(qty))
    s = Decimal(str(step))
    return float((q / s).to_integral_value(rounding=ROUND_FLOOR) * s)


class RebalancePlanner:
    """Turns a hedge evaluation into at most one exchange-legal futures order.

    The hedge leg is assumed to be short futures against long spot. An
    existing long futures position keeps its own direction: increasing the
    hedge means growing the position in the direction it already has.
    """

    def __init__(self, config: HedgeConfig):
        self.config = config

    def _distance(self, size: float, spot: float, target_size: float, closing: bool) -> float:
        if closing or spot <= 0:
            return abs(size - target_size)
        return abs(size / spot - self.config.target_hedge_ratio)

    def plan(
        self,
        evaluation: HedgeEvaluation,
        rules: TradingRules,
        policy: ImbalancePolicy = ImbalancePolicy.REBALANCE,
        mark_price: Optional[float] = None,
    ) -> RebalancePlan:
        ev = evaluation
        target_ratio = self.config.target_hedge_ratio
        base = dict(
            asset=ev.asset,
            symbol=ev.symbol,
            current_ratio=ev.ratio,
        )
        values: Dict[str, float] = {
            "spot": ev.spot_size,
            "futures": ev.futures_amt,
            "target_ratio": target_ratio,
            "step_size": rules.step_size,
            "min_qty": rules.min_qty,
            "min_notional": rules.min_notional,
        }
        if ev.ratio is not None:
            values["ratio"] = ev.ratio

        if ev.is_balanced:
            return RebalancePlan(
                status=PlanStatus.NOT_NEEDED,
                reason=f"balanced at ratio {ev.ratio:.4f}",
                values=values,
                **base,
            )

        price = mark_price if mark_price else ev.mark_price
        if not price or price <= 0:
            return RebalancePlan(
                status=PlanStatus.NO_PRICE,
                reason=f"no mark price available (spot={ev.spot_size:g}, futures={ev.futures_amt:g})",
                values=values,
                **base,
            )
        values["mark_price"] = price

        closing = policy == ImbalancePolicy.CLOSE or ev.classification == HedgeClassification.NAKED_FUTURES
        if closing:
            target_size = 0.0
        else:
            target_size = floor_to_step(ev.spot_size * target_ratio, rules.step_size)
        values["target_size"] = target_size

        current = ev.futures_size
        # short hedge unless the existing position is already long
        hedge_side = OrderSide.BUY if ev.futures_amt > 0 else OrderSide.SELL
        delta = float(Decimal(str(target_size)) - Decimal(str(current)))
        if delta >= 0:
            side = hedge_side
            reduce_only = False
            qty = floor_to_step(delta, rules.step_size)
        else:
            side = hedge_side.opposite
            reduce_only = True
            qty = floor_to_step(-delta, rules.step_size)

        capped = False
        max_notional = self.config.max_order_notional_usdt
        if qty * price > max_notional:
            qty = floor_to_step(max_notional / price, rules.step_size)
            capped = True
        if rules.max_qty is not None and qty > rules.max_qty:
            qty = floor_to_step(rules.max_qty, rules.step_size)
            capped = True

        notional = qty * price
        values["quantity"] = qty
        values["notional"] = notional

        if qty <= 0:
            return RebalancePlan(
                status=PlanStatus.NO_IMPROVEMENT,
                reason=(
                    f"no improvement possible: target size {target_size:g} vs current {current:g} "
                    f"differs by less than step {rules.step_size:g}"
                ),
                target_quantity=target_size,
                values=values,
                **base,
            )

        change = Decimal(str(qty)) if side == hedge_side else -Decimal(str(qty))
        new_size = float(Decimal(str(current)) + change)
        if self._distance(new_size, ev.spot_size, target_size, closing) >= self._distance(
            current, ev.spot_size, target_size, closing
        ):
            return RebalancePlan(
                status=PlanStatus.NO_IMPROVEMENT,
                reason=f"no improvement possible: {side.value} {qty:g} leaves futures at {new_size:g}",
                target_quantity=target_size,
                values=values,
                **base,
            )

        min_notional = max(rules.min_notional, self.config.min_order_notional_usdt)
        if qty < rules.min_qty or notional < min_notional:
            return RebalancePlan(
                status=PlanStatus.BELOW_MINIMUMS,
                reason=(
                    f"cannot rebalance - below exchange minimums: qty={qty:g} (min {rules.min_qty:g}), "
                    f"notional={notional:.2f} (min {min_notional:.2f}) at mark {price:g}"
                ),
                target_quantity=target_size,
                capped=capped,
                values=values,
                **base,
            )

        projected = new_size / ev.spot_size if ev.spot_size > 0 else None
        if closing:
            why = f"{ev.classification.value.lower()}: close futures {current:g}"
        else:
            why = (
                f"{ev.classification.value.lower()} {ev.ratio:.4f} -> {projected:.4f} "
                f"(target {target_ratio:.2f})"
            )
        if capped:
            why += f", capped at {max_notional:.2f} USDT"

        order = RebalanceOrder(
            symbol=ev.symbol,
            side=side,
            quantity=qty,
            reason=why,
            reduce_only=reduce_only,
        )
        logger.info("%s: plan %s %g (%s)", ev.symbol, side.value, qty, why)
        return RebalancePlan(
            status=PlanStatus.ORDER,
            reason=why,
            order=order,
            projected_ratio=projected,
            target_quantity=target_size,
            capped=capped,
            values=values,
            **base,
        )
