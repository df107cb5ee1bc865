"""Per-run state shared by the components of one process.

Everything that would otherwise live in module globals (alert history,
request weight budget, cached trading rules, background tasks) hangs off a
``RunContext`` that is built at startup and closed on shutdown.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Deque, Dict, List, Optional

from .rate_limit import RequestWeightBudget
from .types import RiskAlert, TradingRules

if TYPE_CHECKING:
    from .scheduler import PeriodicTask

logger = logging.getLogger(__name__)

MAX_ALERT_HISTORY = 50
ALERT_DEDUP_WINDOW = timedelta(minutes=5)


class AlertHistory:
    """Newest-first alert log capped at ``max_size`` entries."""

    def __init__(self, max_size: int = MAX_ALERT_HISTORY, dedup_window: timedelta = ALERT_DEDUP_WINDOW):
        self.max_size = max_size
        self.dedup_window = dedup_window
        self._alerts: Deque[RiskAlert] = deque(maxlen=max_size)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._alerts)

    def is_duplicate(self, alert: RiskAlert) -> bool:
        return any(
            a.type == alert.type
            and a.metric == alert.metric
            and abs(alert.timestamp - a.timestamp) < self.dedup_window
            for a in self._alerts
        )

    def add(self, alert: RiskAlert) -> bool:
        """Record ``alert`` unless a same type/metric alert is inside the window."""
        with self._lock:
            if self.is_duplicate(alert):
                logger.debug("Suppressed duplicate alert %s/%s", alert.type.value, alert.metric)
                return False
            self._alerts.appendleft(alert)
            return True

    def recent(self, limit: Optional[int] = None) -> List[RiskAlert]:
        alerts = list(self._alerts)
        return alerts if limit is None else alerts[:limit]

    def clear(self) -> None:
        self._alerts.clear()


class TradingRulesCache:
    """Exchange trading rules, loaded once per run and never mutated after."""

    def __init__(self) -> None:
        self._rules: Dict[str, TradingRules] = {}
        self._loaded_at: Optional[datetime] = None

    @property
    def loaded(self) -> bool:
        return self._loaded_at is not None

    def load(self, rules: Dict[str, TradingRules]) -> None:
        self._rules = dict(rules)
        self._loaded_at = datetime.utcnow()

    def get(self, symbol: str) -> Optional[TradingRules]:
        return self._rules.get(symbol)

    def invalidate(self) -> None:
        self._rules = {}
        self._loaded_at = None


@dataclass
class RunContext:
    budget: RequestWeightBudget = field(default_factory=RequestWeightBudget)
    alerts: AlertHistory = field(default_factory=AlertHistory)
    rules: TradingRulesCache = field(default_factory=TradingRulesCache)
    started_at: datetime = field(default_factory=datetime.utcnow)
    tasks: List["PeriodicTask"] = field(default_factory=list)
    closed: bool = False

    def register_task(self, task: "PeriodicTask") -> "PeriodicTask":
        if self.closed:
            raise RuntimeError("RunContext is closed")
        self.tasks.append(task)
        return task

    def close(self, timeout: Optional[float] = 10.0) -> None:
        """Cancel and join every registered task. Idempotent."""
        if self.closed:
            return
        self.closed = True
        for task in self.tasks:
            task.cancel()
        for task in self.tasks:
            task.join(timeout)
        logger.info("RunContext closed (%d tasks)", len(self.tasks))

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
