from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from .errors import ExchangeRuleViolation


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class HedgeClassification(str, Enum):
    BALANCED = "BALANCED"
    UNDER_HEDGED = "UNDER_HEDGED"
    OVER_HEDGED = "OVER_HEDGED"
    # spot held, no futures at all
    NO_HEDGE = "NO_HEDGE"
    # futures held, no spot: unhedged directional exposure
    NAKED_FUTURES = "NAKED_FUTURES"


class PlanStatus(str, Enum):
    ORDER = "ORDER"
    NOT_NEEDED = "NOT_NEEDED"
    BELOW_MINIMUMS = "BELOW_MINIMUMS"
    NO_IMPROVEMENT = "NO_IMPROVEMENT"
    NO_PRICE = "NO_PRICE"


class ValidationState(str, Enum):
    PENDING = "PENDING"
    RETRY = "RETRY"
    BALANCED = "BALANCED"
    TIMED_OUT = "TIMED_OUT"

    @property
    def is_terminal(self) -> bool:
        return self in (ValidationState.BALANCED, ValidationState.TIMED_OUT)


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    EXTREME = "EXTREME"

    @property
    def severity(self) -> int:
        return _RISK_ORDER.index(self)

    def worst(self, other: "RiskLevel") -> "RiskLevel":
        return self if self.severity >= other.severity else other


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.EXTREME]


class AlertType(str, Enum):
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    EMERGENCY = "EMERGENCY"


class AlertAction(str, Enum):
    MONITOR = "MONITOR"
    REDUCE_EXPOSURE = "REDUCE_EXPOSURE"
    STOP_TRADING = "STOP_TRADING"
    CLOSE_POSITIONS = "CLOSE_POSITIONS"


class RiskStatus(str, Enum):
    SAFE = "SAFE"
    CAUTION = "CAUTION"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    EMERGENCY = "EMERGENCY"


class ImbalancePolicy(str, Enum):
    REBALANCE = "REBALANCE"
    CLOSE = "CLOSE"


# ---------------------------------------------------------------------------
# Exchange snapshots
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SpotBalance:
    asset: str
    free: float
    locked: float = 0.0

    @property
    def total(self) -> float:
        return self.free + self.locked


@dataclass(frozen=True)
class FuturesPosition:
    symbol: str
    position_amt: float
    entry_price: float
    mark_price: float
    unrealized_profit: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.position_amt != 0


@dataclass(frozen=True)
class TradingRules:
    symbol: str
    step_size: float
    min_qty: float
    min_notional: float = 0.0
    max_qty: Optional[float] = None
    tick_size: Optional[float] = None


@dataclass
class AccountSnapshot:
    spot_balances: Dict[str, SpotBalance]
    futures_positions: List[FuturesPosition]
    fetched_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class AssetPosition:
    asset: str
    symbol: str
    spot_free: float
    spot_locked: float
    futures_amt: float
    entry_price: float = 0.0
    mark_price: float = 0.0
    unrealized_pnl: float = 0.0

    @property
    def spot_total(self) -> float:
        return self.spot_free + self.spot_locked

    @property
    def futures_size(self) -> float:
        return abs(self.futures_amt)


# ---------------------------------------------------------------------------
# Hedge evaluation / planning
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HedgeEvaluation:
    asset: str
    symbol: str
    spot_size: float
    futures_size: float
    futures_amt: float
    ratio: Optional[float]
    classification: HedgeClassification
    mark_price: float = 0.0

    @property
    def is_balanced(self) -> bool:
        return self.classification == HedgeClassification.BALANCED

    @property
    def is_critical(self) -> bool:
        return self.classification == HedgeClassification.NAKED_FUTURES


@dataclass(frozen=True)
class RebalanceOrder:
    symbol: str
    side: OrderSide
    quantity: float
    reason: str
    reduce_only: bool = False
    order_type: OrderType = OrderType.MARKET


@dataclass
class RebalancePlan:
    asset: str
    symbol: str
    status: PlanStatus
    reason: str
    order: Optional[RebalanceOrder] = None
    current_ratio: Optional[float] = None
    projected_ratio: Optional[float] = None
    target_quantity: Optional[float] = None
    capped: bool = False
    values: Dict[str, float] = field(default_factory=dict)

    @property
    def actionable(self) -> bool:
        return self.status == PlanStatus.ORDER and self.order is not None

    @property
    def failed(self) -> bool:
        return self.status in (
            PlanStatus.BELOW_MINIMUMS,
            PlanStatus.NO_IMPROVEMENT,
            PlanStatus.NO_PRICE,
        )

    def raise_for_status(self) -> None:
        if self.failed:
            raise ExchangeRuleViolation(self.symbol, self.reason, values=self.values)


@dataclass
class OrderResult:
    success: bool
    order_id: Optional[str]
    symbol: str
    side: OrderSide
    qty: float
    avg_price: Optional[float] = None
    error: Optional[str] = None
    dry_run: bool = False
    # the exchange may have accepted the order; only a position check can tell
    unconfirmed: bool = False


@dataclass
class ValidationResult:
    asset: str
    state: ValidationState
    attempts: int
    elapsed_sec: float
    last_evaluation: Optional[HedgeEvaluation] = None
    errors: List[str] = field(default_factory=list)
    history: List[ValidationState] = field(default_factory=list)

    @property
    def balanced(self) -> bool:
        return self.state == ValidationState.BALANCED


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------

@dataclass
class RiskMetrics:
    current_exposure: float = 0.0
    daily_pnl: float = 0.0
    open_positions: int = 0
    risk_score: float = 0.0
    market_volatility: float = 0.0
    liquidity_score: float = 10.0
    last_updated: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class RiskAlert:
    id: str
    type: AlertType
    message: str
    timestamp: datetime
    metric: str
    value: float
    threshold: float
    action: AlertAction


@dataclass
class TradeRiskDecision:
    approved: bool
    risk_level: RiskLevel
    warnings: List[str]
    max_allowed_investment: float


@dataclass
class PositionSizingRecommendation:
    recommended_amount: float
    reason: str
    adjustment_pct: float


@dataclass
class RiskStatusReport:
    metrics: RiskMetrics
    alerts: List[RiskAlert]
    emergency_stop_active: bool
    status: RiskStatus
