from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from .account import AccountDataSource
from .binance_client import BinanceAccountAdapter, BinanceFuturesExecutionClient, BinanceRESTClient
from .config import BinanceSettings, HedgeConfig, RiskConfiguration
from .context import RunContext
from .errors import AuthError, ExchangeError, UnknownSymbolError
from .execution import ExecutionService
from .hedge import HedgeRatioEvaluator
from .monitoring import (
    LoggingNotifier,
    Notifier,
    imbalance_timeout_event,
    naked_futures_event,
    plan_failure_event,
    risk_alert_event,
)
from .planner import RebalancePlanner
from .rate_limit import RequestWeightBudget
from .risk import RiskService
from .scheduler import CancellationToken, PeriodicTask
from .types import (
    FuturesPosition,
    HedgeClassification,
    HedgeEvaluation,
    ImbalancePolicy,
    OrderResult,
    PlanStatus,
    ValidationState,
)
from .validation import HedgeValidationLoop, balanced_or_flat, futures_closed

logger = logging.getLogger(__name__)

# a futures short sized against spot held in the same account
HEDGE_LEVERAGE = 1.0


@dataclass
class AssetOutcome:
    asset: str
    symbol: str
    classification: HedgeClassification
    plan_status: Optional[PlanStatus] = None
    order_result: Optional[OrderResult] = None
    validation_state: Optional[ValidationState] = None
    error: Optional[str] = None

    @property
    def summary(self) -> str:
        if self.error:
            return f"error: {self.error}"
        parts = [self.classification.value]
        if self.plan_status is not None:
            parts.append(self.plan_status.value)
        if self.order_result is not None:
            parts.append("order ok" if self.order_result.success else f"order failed ({self.order_result.error})")
        if self.validation_state is not None:
            parts.append(self.validation_state.value)
        return " / ".join(parts)


@dataclass
class CycleResult:
    timestamp: datetime
    evaluated: int = 0
    balanced: int = 0
    imbalanced: int = 0
    orders_submitted: int = 0
    plan_failures: int = 0
    timeouts: int = 0
    errors: int = 0
    trading_halted: bool = False
    outcomes: List[AssetOutcome] = field(default_factory=list)


@dataclass
class Holding:
    asset: str
    total: float
    price: float
    value: float


@dataclass
class PositionReport:
    quote_asset: str
    spot_quote_free: float
    futures_available: float
    holdings: List[Holding]
    futures: List[FuturesPosition]
    evaluations: List[HedgeEvaluation]

    @property
    def total_unrealized_pnl(self) -> float:
        return sum(p.unrealized_profit for p in self.futures)

    @property
    def hedged_count(self) -> int:
        return sum(1 for ev in self.evaluations if ev.is_balanced)


class HedgeOrchestrator:
    """One hedge-maintenance cycle: snapshot, evaluate, plan, submit, validate.

    Parameters
    ----------
    account : AccountDataSource
        Read side of the exchange (snapshots, rules, prices).
    execution : ExecutionService
        Write side; the only place orders leave the process.
    risk : RiskService
        Its emergency stop halts order submission. Evaluation still runs.
    policy : ImbalancePolicy
        ``REBALANCE`` resizes the futures leg toward the target ratio,
        ``CLOSE`` flattens it.
    """

    def __init__(
        self,
        config: HedgeConfig,
        account: AccountDataSource,
        evaluator: HedgeRatioEvaluator,
        planner: RebalancePlanner,
        execution: ExecutionService,
        risk: RiskService,
        notifier: Optional[Notifier] = None,
        context: Optional[RunContext] = None,
        policy: ImbalancePolicy = ImbalancePolicy.REBALANCE,
        token: Optional[CancellationToken] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], object]] = None,
    ):
        self.config = config
        self.account = account
        self.evaluator = evaluator
        self.planner = planner
        self.execution = execution
        self.risk = risk
        self.notifier = notifier or LoggingNotifier()
        self.context = context or RunContext()
        self.policy = policy
        self.token = token or CancellationToken()
        self._clock = clock
        self._sleep = sleep
        self.risk.add_listener(lambda alert: self.notify(risk_alert_event(alert)))

    def notify(self, event) -> None:
        """Deliver ``event``; a failing sink is logged, never raised."""
        try:
            self.notifier.send(event)
        except Exception:
            logger.exception("Notifier failed for %s", event.title)

    def _poll(self, asset: str) -> Optional[HedgeEvaluation]:
        return self.evaluator.evaluate_asset(self.account.get_account_snapshot(), asset)

    def _validation_loop(self) -> HedgeValidationLoop:
        return HedgeValidationLoop(
            self._poll,
            self.config,
            token=self.token,
            clock=self._clock,
            sleep=self._sleep,
        )

    def _update_risk_metrics(self, evaluations: List[HedgeEvaluation]) -> None:
        exposure = sum(ev.futures_size * ev.mark_price for ev in evaluations)
        open_positions = sum(1 for ev in evaluations if ev.futures_size > 0)
        m = self.risk.metrics
        self.risk.update_risk_metrics(
            current_exposure=exposure,
            daily_pnl=m.daily_pnl,
            open_positions=open_positions,
            market_volatility=m.market_volatility,
        )

    def _handle_asset(self, ev: HedgeEvaluation, result: CycleResult) -> AssetOutcome:
        outcome = AssetOutcome(asset=ev.asset, symbol=ev.symbol, classification=ev.classification)

        if ev.is_critical:
            self.notify(naked_futures_event(ev))

        try:
            rules = self.account.get_trading_rules(ev.symbol)
        except UnknownSymbolError:
            logger.info("%s: no futures market for %s, cannot hedge", ev.asset, ev.symbol)
            outcome.error = f"no futures market {ev.symbol}"
            result.errors += 1
            return outcome

        mark_price = ev.mark_price
        if not mark_price:
            mark_price = self.account.get_mark_price(ev.symbol)

        plan = self.planner.plan(ev, rules, policy=self.policy, mark_price=mark_price)
        outcome.plan_status = plan.status
        if not plan.actionable:
            if plan.failed:
                result.plan_failures += 1
                logger.warning("%s: %s", ev.symbol, plan.reason)
                self.notify(plan_failure_event(plan))
            return outcome

        if result.trading_halted:
            logger.warning("%s: emergency stop active, skipping %s", ev.symbol, plan.reason)
            outcome.error = "emergency stop active"
            return outcome

        if not plan.order.reduce_only:
            decision = self.risk.evaluate_trade_risk(
                investment=plan.order.quantity * mark_price,
                leverage=HEDGE_LEVERAGE,
                volatility=self.risk.metrics.market_volatility,
                liquidity=self.risk.metrics.liquidity_score,
            )
            if not decision.approved:
                logger.warning("%s: risk gate rejected %s", ev.symbol, plan.reason)
                outcome.error = "risk rejected: " + "; ".join(decision.warnings)
                return outcome

        logger.info("%s: %s", ev.symbol, plan.reason)
        order_result = self.execution.submit(plan.order)
        outcome.order_result = order_result
        if order_result.success:
            result.orders_submitted += 1
        else:
            result.errors += 1
            if not order_result.unconfirmed:
                return outcome
            logger.warning("%s: order outcome unknown, validating position anyway", ev.symbol)

        if order_result.dry_run:
            return outcome

        settled = futures_closed if self.policy == ImbalancePolicy.CLOSE else balanced_or_flat
        validation = self._validation_loop().run(ev.asset, settled=settled)
        outcome.validation_state = validation.state
        if validation.state == ValidationState.TIMED_OUT:
            result.timeouts += 1
            self.notify(imbalance_timeout_event(validation))
        return outcome

    def run_cycle(self) -> CycleResult:
        result = CycleResult(timestamp=datetime.utcnow())
        result.trading_halted = self.risk.emergency_stop_active

        snapshot = self.account.get_account_snapshot()
        evaluations = self.evaluator.evaluate_snapshot(snapshot)
        result.evaluated = len(evaluations)
        self._update_risk_metrics(evaluations)
        # metrics update may itself trip the emergency stop
        result.trading_halted = result.trading_halted or self.risk.emergency_stop_active

        for ev in evaluations:
            if self.token.cancelled:
                break
            if ev.is_balanced:
                result.balanced += 1
                result.outcomes.append(
                    AssetOutcome(asset=ev.asset, symbol=ev.symbol, classification=ev.classification)
                )
                continue
            result.imbalanced += 1
            try:
                outcome = self._handle_asset(ev, result)
            except AuthError:
                raise
            except ExchangeError as exc:
                logger.error("%s: %s", ev.symbol, exc)
                result.errors += 1
                outcome = AssetOutcome(
                    asset=ev.asset, symbol=ev.symbol, classification=ev.classification, error=str(exc)
                )
            result.outcomes.append(outcome)

        logger.info(
            "Cycle done: %d/%d balanced, %d orders, %d plan failures, %d timeouts, %d errors",
            result.balanced, result.evaluated, result.orders_submitted,
            result.plan_failures, result.timeouts, result.errors,
        )
        return result

    def build_report(self) -> PositionReport:
        snapshot = self.account.get_account_snapshot()
        quote = self.config.quote_asset
        prices = self.account.get_prices()
        futures_account = self.account.get_futures_account()

        quote_balance = snapshot.spot_balances.get(quote)
        holdings: List[Holding] = []
        for asset, bal in sorted(snapshot.spot_balances.items()):
            if asset in self.config.ignored_assets or bal.total <= 0:
                continue
            price = prices.get(self.config.futures_symbol(asset), 0.0)
            holdings.append(Holding(asset=asset, total=bal.total, price=price, value=bal.total * price))

        return PositionReport(
            quote_asset=quote,
            spot_quote_free=quote_balance.free if quote_balance else 0.0,
            futures_available=float(futures_account.get("availableBalance", 0) or 0),
            holdings=holdings,
            futures=[p for p in snapshot.futures_positions if p.is_open],
            evaluations=self.evaluator.evaluate_snapshot(snapshot),
        )

    def start(self, interval_sec: Optional[float] = None, max_runs: Optional[int] = None) -> PeriodicTask:
        """Run ``run_cycle`` on a background thread until the context closes."""
        task = PeriodicTask(
            "hedge-cycle",
            self.run_cycle,
            interval_sec or self.config.rebalance_interval_sec,
            token=self.token,
            max_runs=max_runs,
        )
        self.context.register_task(task)
        return task.start()


def create_orchestrator(
    settings: BinanceSettings,
    context: Optional[RunContext] = None,
    notifier: Optional[Notifier] = None,
    policy: ImbalancePolicy = ImbalancePolicy.REBALANCE,
    risk_config: Optional[RiskConfiguration] = None,
) -> HedgeOrchestrator:
    """Wire the Binance adapters, services and shared context from settings."""
    context = context or RunContext(budget=RequestWeightBudget(limit=settings.weight_limit_per_minute))
    rest = BinanceRESTClient.from_settings(settings, budget=context.budget)
    config = settings.hedge_config()
    risk = RiskService(
        config=risk_config or settings.risk_config(),
        alerts=context.alerts,
    )

    return HedgeOrchestrator(
        config=config,
        account=BinanceAccountAdapter(rest, rules_cache=context.rules),
        evaluator=HedgeRatioEvaluator(config),
        planner=RebalancePlanner(config),
        execution=ExecutionService(BinanceFuturesExecutionClient(rest), dry_run=settings.dry_run),
        risk=risk,
        notifier=notifier,
        context=context,
        policy=policy,
    )
