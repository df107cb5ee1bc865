from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from .config import RiskConfiguration
from .context import AlertHistory
from .types import (
    AlertAction,
    AlertType,
    PositionSizingRecommendation,
    RiskAlert,
    RiskLevel,
    RiskMetrics,
    RiskStatus,
    RiskStatusReport,
    TradeRiskDecision,
)

logger = logging.getLogger(__name__)

RISK_SCORE_ALERT = 80.0
RISK_SCORE_WARNING = 60.0
RISK_SCORE_CAUTION = 30.0
# fraction of a hard limit at which an early alert fires
ALERT_FRACTION = 0.8
SAFE_EXPOSURE_FRACTION = 0.8


def _ratio(value: float, limit: float) -> float:
    return value / limit if limit > 0 else 0.0


class RiskService:
    """Pre-trade approval gate and running 0-100 risk score.

    Independent of the hedge logic: it only sees exposure, PnL, position
    count, volatility and liquidity figures. Alerts go into the shared
    ``AlertHistory`` and can trigger the emergency stop.
    """

    def __init__(
        self,
        config: Optional[RiskConfiguration] = None,
        alerts: Optional[AlertHistory] = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.config = config or RiskConfiguration()
        self.alerts = alerts if alerts is not None else AlertHistory()
        self.metrics = RiskMetrics()
        self.emergency_stop_active = False
        self._now = now
        self._listeners: List[Callable[[RiskAlert], None]] = []

    def add_listener(self, listener: Callable[[RiskAlert], None]) -> None:
        """Called for every alert that survives de-duplication."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # pre-trade gate
    # ------------------------------------------------------------------

    def evaluate_trade_risk(
        self,
        investment: float,
        leverage: float,
        volatility: float,
        liquidity: float,
    ) -> TradeRiskDecision:
        cfg = self.config
        m = self.metrics

        if self.emergency_stop_active:
            return TradeRiskDecision(
                approved=False,
                risk_level=RiskLevel.EXTREME,
                warnings=["Emergency stop is active - no new trades allowed"],
                max_allowed_investment=0.0,
            )

        warnings: List[str] = []
        approved = True
        level = RiskLevel.LOW

        if m.daily_pnl < -cfg.max_daily_loss:
            warnings.append(f"Daily loss limit exceeded: {m.daily_pnl:.2f} < -{cfg.max_daily_loss:.2f}")
            approved = False
            level = level.worst(RiskLevel.EXTREME)

        max_allowed = min(
            investment,
            cfg.max_position_size,
            cfg.max_total_exposure - m.current_exposure,
        )
        if investment > max_allowed:
            warnings.append(f"Position size reduced from {investment:.2f} to {max_allowed:.2f}")
            if max_allowed <= 0:
                approved = False
                level = level.worst(RiskLevel.HIGH)

        if leverage > cfg.max_leverage:
            warnings.append(f"Leverage exceeds maximum: {leverage:g}x > {cfg.max_leverage:g}x")
            approved = False
            level = level.worst(RiskLevel.HIGH)

        if m.open_positions >= cfg.max_concurrent_trades:
            warnings.append(
                f"Maximum concurrent trades reached: {m.open_positions} >= {cfg.max_concurrent_trades}"
            )
            approved = False
            level = level.worst(RiskLevel.MEDIUM)

        if volatility > cfg.volatility_threshold:
            warnings.append(f"Market volatility too high: {volatility:g}% > {cfg.volatility_threshold:g}%")
            if volatility > cfg.volatility_threshold * 1.5:
                approved = False
                level = level.worst(RiskLevel.HIGH)
            else:
                level = level.worst(RiskLevel.MEDIUM)

        if liquidity < cfg.liquidity_threshold:
            warnings.append(f"Insufficient liquidity: {liquidity:g} < {cfg.liquidity_threshold:g}")
            if liquidity < cfg.liquidity_threshold * 0.5:
                approved = False
                level = level.worst(RiskLevel.EXTREME)
            else:
                level = level.worst(RiskLevel.HIGH)

        if not approved:
            logger.warning("Trade rejected (%s): %s", level.value, "; ".join(warnings))

        return TradeRiskDecision(
            approved=approved,
            risk_level=level,
            warnings=warnings,
            max_allowed_investment=max(0.0, max_allowed),
        )

    # ------------------------------------------------------------------
    # running metrics / score / alerts
    # ------------------------------------------------------------------

    def update_risk_metrics(
        self,
        current_exposure: float,
        daily_pnl: float,
        open_positions: int,
        market_volatility: float,
        liquidity_score: Optional[float] = None,
    ) -> RiskMetrics:
        self.metrics = RiskMetrics(
            current_exposure=current_exposure,
            daily_pnl=daily_pnl,
            open_positions=open_positions,
            market_volatility=market_volatility,
            liquidity_score=self.metrics.liquidity_score if liquidity_score is None else liquidity_score,
            last_updated=self._now(),
        )
        self.metrics.risk_score = self.calculate_risk_score()
        self._check_risk_alerts()
        return self.metrics

    def calculate_risk_score(self) -> float:
        cfg = self.config
        m = self.metrics
        score = 0.0
        score += min(_ratio(m.current_exposure, cfg.max_total_exposure) * 30, 30.0)
        if m.daily_pnl < 0:
            score += min(_ratio(abs(m.daily_pnl), cfg.max_daily_loss) * 25, 25.0)
        score += min(_ratio(m.open_positions, cfg.max_concurrent_trades) * 20, 20.0)
        score += min(_ratio(m.market_volatility, cfg.volatility_threshold) * 25, 25.0)
        return min(score, 100.0)

    def _alert(
        self,
        key: str,
        alert_type: AlertType,
        message: str,
        metric: str,
        value: float,
        threshold: float,
        action: AlertAction,
    ) -> None:
        now = self._now()
        alert = RiskAlert(
            id=f"{key}-{int(now.timestamp() * 1000)}",
            type=alert_type,
            message=message,
            timestamp=now,
            metric=metric,
            value=value,
            threshold=threshold,
            action=action,
        )
        if self.alerts.add(alert):
            self._handle_auto_action(alert)
            for listener in self._listeners:
                listener(alert)

    def _check_risk_alerts(self) -> None:
        cfg = self.config
        m = self.metrics
        over_daily_limit = m.daily_pnl < -cfg.max_daily_loss

        if m.daily_pnl < -cfg.max_daily_loss * ALERT_FRACTION:
            self._alert(
                "daily-loss",
                AlertType.EMERGENCY if over_daily_limit else AlertType.CRITICAL,
                f"Daily loss approaching limit: {m.daily_pnl:.2f} USDT (limit -{cfg.max_daily_loss:.2f})",
                "daily_pnl",
                m.daily_pnl,
                -cfg.max_daily_loss,
                AlertAction.STOP_TRADING if over_daily_limit else AlertAction.REDUCE_EXPOSURE,
            )

        if m.current_exposure > cfg.max_total_exposure * ALERT_FRACTION:
            self._alert(
                "exposure",
                AlertType.WARNING,
                f"High exposure: {m.current_exposure:.2f} USDT (max {cfg.max_total_exposure:.2f})",
                "current_exposure",
                m.current_exposure,
                cfg.max_total_exposure,
                AlertAction.MONITOR,
            )

        if m.market_volatility > cfg.volatility_threshold:
            self._alert(
                "volatility",
                AlertType.CRITICAL,
                f"High market volatility: {m.market_volatility:.2f}% (threshold {cfg.volatility_threshold:g}%)",
                "market_volatility",
                m.market_volatility,
                cfg.volatility_threshold,
                AlertAction.REDUCE_EXPOSURE,
            )

        if m.risk_score > RISK_SCORE_ALERT:
            self._alert(
                "risk-score",
                AlertType.EMERGENCY if over_daily_limit else AlertType.CRITICAL,
                f"High risk score: {m.risk_score:.1f}/100",
                "risk_score",
                m.risk_score,
                RISK_SCORE_ALERT,
                AlertAction.STOP_TRADING if over_daily_limit else AlertAction.REDUCE_EXPOSURE,
            )

    def _handle_auto_action(self, alert: RiskAlert) -> None:
        if alert.action == AlertAction.STOP_TRADING:
            if self.config.emergency_stop_enabled:
                self.emergency_stop_active = True
                logger.error("[RISK] Emergency stop activated: %s", alert.message)
            else:
                logger.error("[RISK] Stop trading requested (emergency stop disabled): %s", alert.message)
        elif alert.action == AlertAction.CLOSE_POSITIONS:
            logger.error("[RISK] Position closure required: %s", alert.message)
        elif alert.action == AlertAction.REDUCE_EXPOSURE:
            logger.warning("[RISK] Exposure reduction recommended: %s", alert.message)
        else:
            logger.info("[RISK] Monitoring alert: %s", alert.message)

    # ------------------------------------------------------------------
    # status / admin
    # ------------------------------------------------------------------

    def get_risk_status(self, alert_limit: int = 10) -> RiskStatusReport:
        score = self.metrics.risk_score
        if self.emergency_stop_active:
            status = RiskStatus.EMERGENCY
        elif score > RISK_SCORE_ALERT:
            status = RiskStatus.CRITICAL
        elif score > RISK_SCORE_WARNING:
            status = RiskStatus.WARNING
        elif score > RISK_SCORE_CAUTION:
            status = RiskStatus.CAUTION
        else:
            status = RiskStatus.SAFE
        return RiskStatusReport(
            metrics=self.metrics,
            alerts=self.alerts.recent(alert_limit),
            emergency_stop_active=self.emergency_stop_active,
            status=status,
        )

    def reset_emergency_stop(self) -> None:
        self.emergency_stop_active = False
        logger.info("[RISK] Emergency stop reset")

    def update_configuration(self, **changes) -> RiskConfiguration:
        self.config = self.config.replace(**changes)
        return self.config

    def get_position_sizing_recommendation(self, requested_amount: float) -> PositionSizingRecommendation:
        max_safe = min(
            self.config.max_position_size,
            (self.config.max_total_exposure - self.metrics.current_exposure) * SAFE_EXPOSURE_FRACTION,
        )
        if requested_amount <= max_safe:
            return PositionSizingRecommendation(
                recommended_amount=requested_amount,
                reason="Amount within safe limits",
                adjustment_pct=0.0,
            )
        adjustment = (max_safe - requested_amount) / requested_amount * 100 if requested_amount else 0.0
        return PositionSizingRecommendation(
            recommended_amount=max(max_safe, 0.0),
            reason=f"Reduced for risk management ({adjustment:.1f}% reduction)",
            adjustment_pct=adjustment,
        )
