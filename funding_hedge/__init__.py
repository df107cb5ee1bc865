"""Spot/futures hedge consistency system for Binance."""

from .account import AccountDataSource
from .binance_client import BinanceAccountAdapter, BinanceFuturesExecutionClient, BinanceRESTClient
from .config import BinanceSettings, HedgeConfig, RiskConfiguration, load_settings
from .context import RunContext
from .execution import ExchangeExecutionClient, ExecutionService
from .hedge import HedgeRatioEvaluator
from .monitoring import Notifier, TelegramNotifier, build_notifier
from .orchestrator import CycleResult, HedgeOrchestrator, PositionReport, create_orchestrator
from .planner import RebalancePlanner
from .risk import RiskService
from .types import (
    HedgeClassification,
    HedgeEvaluation,
    ImbalancePolicy,
    PlanStatus,
    RebalancePlan,
    ValidationState,
)
from .validation import HedgeValidationLoop

__all__ = [
    "AccountDataSource",
    "BinanceAccountAdapter",
    "BinanceFuturesExecutionClient",
    "BinanceRESTClient",
    "BinanceSettings",
    "CycleResult",
    "ExchangeExecutionClient",
    "ExecutionService",
    "HedgeClassification",
    "HedgeConfig",
    "HedgeEvaluation",
    "HedgeOrchestrator",
    "HedgeRatioEvaluator",
    "HedgeValidationLoop",
    "ImbalancePolicy",
    "Notifier",
    "PlanStatus",
    "PositionReport",
    "RebalancePlan",
    "RebalancePlanner",
    "RiskConfiguration",
    "RiskService",
    "RunContext",
    "TelegramNotifier",
    "ValidationState",
    "build_notifier",
    "create_orchestrator",
    "load_settings",
]
