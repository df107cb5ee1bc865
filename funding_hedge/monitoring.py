from __future__ import annotations

import html
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional
from urllib import request

import requests

from .types import HedgeEvaluation, RebalancePlan, RiskAlert, ValidationResult

if TYPE_CHECKING:
    from .config import BinanceSettings
    from .orchestrator import CycleResult, PositionReport

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"
# Telegram rejects messages over 4096 chars
TELEGRAM_MAX_LEN = 3900


@dataclass
class AlertEvent:
    level: str
    title: str
    message: str
    context: Dict[str, str] = field(default_factory=dict)


class Notifier(ABC):
    """Outbound status sink. The hedge/risk core only ever talks to this."""

    @abstractmethod
    def send(self, event: AlertEvent) -> bool:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def send(self, event: AlertEvent) -> bool:
        level = logging.WARNING if event.level in ("WARNING", "CRITICAL", "EMERGENCY") else logging.INFO
        logger.log(level, "[%s] %s: %s %s", event.level, event.title, event.message, event.context or "")
        return True


class CompositeNotifier(Notifier):
    def __init__(self, notifiers: Iterable[Notifier]):
        self.notifiers = list(notifiers)

    def send(self, event: AlertEvent) -> bool:
        ok = False
        for notifier in self.notifiers:
            try:
                ok = notifier.send(event) or ok
            except Exception:
                logger.exception("%s failed for %s", type(notifier).__name__, event.title)
        return ok


class WebhookNotifier(Notifier):
    def __init__(self, webhook_url: Optional[str] = None, timeout_sec: int = 5):
        self.webhook_url = webhook_url
        self.timeout_sec = timeout_sec

    def send(self, event: AlertEvent) -> bool:
        if not self.webhook_url:
            return False

        body = {
            "timestamp": datetime.utcnow().isoformat(),
            "level": event.level,
            "title": event.title,
            "message": event.message,
            "context": event.context,
        }
        payload = json.dumps(body).encode("utf-8")
        req = request.Request(
            self.webhook_url,
            data=payload,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.timeout_sec) as resp:
                return 200 <= resp.status < 300
        except OSError as exc:
            logger.warning("Webhook delivery failed (%s): %s", event.title, exc)
            return False


def split_long_message(text: str, max_len: int = TELEGRAM_MAX_LEN) -> List[str]:
    """Split ``text`` under ``max_len``, preferring blank lines, then line breaks."""
    s = (text or "").strip()
    if not s:
        return []
    if len(s) <= max_len:
        return [s]

    parts: List[str] = []
    buf = ""
    for chunk in s.split("\n\n"):
        cand = f"{buf}\n\n{chunk}".strip() if buf else chunk.strip()
        if len(cand) <= max_len:
            buf = cand
            continue
        if buf:
            parts.append(buf)
            buf = ""
        if len(chunk) <= max_len:
            buf = chunk.strip()
            continue
        line_buf = ""
        for line in chunk.splitlines():
            cand2 = f"{line_buf}\n{line}" if line_buf else line
            if len(cand2) <= max_len:
                line_buf = cand2
            else:
                if line_buf:
                    parts.append(line_buf)
                line_buf = line[:max_len]
        if line_buf:
            parts.append(line_buf)
    if buf:
        parts.append(buf)
    return [p for p in parts if p.strip()]


def format_event_html(event: AlertEvent) -> str:
    lines = [f"<b>[{html.escape(event.level)}] {html.escape(event.title)}</b>", html.escape(event.message)]
    for key, value in event.context.items():
        lines.append(f"• {html.escape(str(key))}: <code>{html.escape(str(value))}</code>")
    return "\n".join(lines)


class TelegramNotifier(Notifier):
    """Telegram Bot API ``sendMessage`` with HTML parse mode."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        timeout_sec: float = 10.0,
        session: Optional[requests.Session] = None,
        api_url: str = TELEGRAM_API_URL,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout_sec = timeout_sec
        self.api_url = api_url.rstrip("/")
        self._session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def send_text(self, text: str) -> bool:
        if not self.configured:
            return False
        url = f"{self.api_url}/bot{self.bot_token}/sendMessage"
        ok = True
        for part in split_long_message(text):
            try:
                resp = self._session.post(
                    url,
                    json={
                        "chat_id": self.chat_id,
                        "text": part,
                        "parse_mode": "HTML",
                        "disable_web_page_preview": True,
                    },
                    timeout=self.timeout_sec,
                )
                resp.raise_for_status()
            except requests.RequestException as exc:
                # never log the URL: it contains the bot token
                logger.warning("Telegram sendMessage failed: %s", type(exc).__name__)
                ok = False
        return ok

    def send(self, event: AlertEvent) -> bool:
        return self.send_text(format_event_html(event))


# ---------------------------------------------------------------------------
# message builders
# ---------------------------------------------------------------------------

def _fmt_ratio(ratio: Optional[float]) -> str:
    return "n/a" if ratio is None else f"{ratio * 100:.1f}%"


def imbalance_timeout_event(result: ValidationResult) -> AlertEvent:
    ev = result.last_evaluation
    context = {
        "asset": result.asset,
        "attempts": str(result.attempts),
        "elapsed_sec": f"{result.elapsed_sec:.1f}",
    }
    if ev is not None:
        context.update(
            symbol=ev.symbol,
            spot=f"{ev.spot_size:g}",
            futures=f"{ev.futures_amt:g}",
            ratio=_fmt_ratio(ev.ratio),
            classification=ev.classification.value,
        )
    if result.errors:
        context["errors"] = "; ".join(result.errors[-3:])
    return AlertEvent(
        level="CRITICAL",
        title=f"{result.asset}: position still imbalanced",
        message=f"Hedge not confirmed after {result.attempts} attempts / {result.elapsed_sec:.1f}s",
        context=context,
    )


def plan_failure_event(plan: RebalancePlan) -> AlertEvent:
    return AlertEvent(
        level="WARNING",
        title=f"{plan.symbol}: cannot rebalance",
        message=plan.reason,
        context={k: f"{v:g}" for k, v in plan.values.items()},
    )


def naked_futures_event(evaluation: HedgeEvaluation) -> AlertEvent:
    return AlertEvent(
        level="CRITICAL",
        title=f"{evaluation.symbol}: naked futures",
        message=f"Futures {evaluation.futures_amt:g} with no spot holding of {evaluation.asset}",
        context={"futures": f"{evaluation.futures_amt:g}", "mark_price": f"{evaluation.mark_price:g}"},
    )


def risk_alert_event(alert: RiskAlert) -> AlertEvent:
    return AlertEvent(
        level=alert.type.value,
        title=f"Risk: {alert.metric}",
        message=alert.message,
        context={
            "value": f"{alert.value:.2f}",
            "threshold": f"{alert.threshold:.2f}",
            "action": alert.action.value,
        },
    )


def cycle_summary_event(result: "CycleResult") -> AlertEvent:
    level = "WARNING" if (result.timeouts or result.plan_failures or result.errors) else "INFO"
    return AlertEvent(
        level=level,
        title="Hedge cycle",
        message=(
            f"{result.balanced}/{result.evaluated} balanced, {result.orders_submitted} orders, "
            f"{result.plan_failures} plan failures, {result.timeouts} timeouts"
        ),
        context={outcome.asset: outcome.summary for outcome in result.outcomes},
    )


def format_position_report(report: "PositionReport") -> str:
    rule = "=" * 70
    lines = [rule, "ACCOUNT STATUS", rule]
    lines.append(f"Spot {report.quote_asset}: ${report.spot_quote_free:.2f}")
    lines.append(f"Futures {report.quote_asset} available: ${report.futures_available:.2f}")

    lines.append("")
    lines.append("SPOT HOLDINGS:")
    if not report.holdings:
        lines.append("  (none)")
    for h in report.holdings:
        lines.append(f"  {h.asset}: {h.total:g} (${h.value:.2f})")

    lines.append("")
    lines.append("FUTURES POSITIONS:")
    if not report.futures:
        lines.append("  (none)")
    for p in report.futures:
        lines.append(f"  {p.symbol}: {p.position_amt:g} (PnL: ${p.unrealized_profit:.2f})")

    lines.append("")
    lines.append("HEDGE RATIOS:")
    for ev in report.evaluations:
        mark = "✅" if ev.is_balanced else "❌"
        lines.append(
            f"  {mark} {ev.asset}: {_fmt_ratio(ev.ratio)} hedged "
            f"({ev.spot_size:g} spot vs {ev.futures_size:g} futures) [{ev.classification.value}]"
        )

    lines.append("")
    lines.append(rule)
    lines.append(f"Active futures positions: {len(report.futures)}")
    lines.append(f"Total unrealized PnL: ${report.total_unrealized_pnl:.2f}")
    lines.append(f"Properly hedged: {report.hedged_count}/{len(report.evaluations)}")
    lines.append(rule)
    return "\n".join(lines)


def build_notifier(settings: "BinanceSettings") -> Notifier:
    """Logging always; Telegram and webhook when configured."""
    notifiers: List[Notifier] = [LoggingNotifier()]
    if settings.telegram_bot_token and settings.telegram_chat_id:
        notifiers.append(TelegramNotifier(settings.telegram_bot_token, settings.telegram_chat_id))
    if settings.alert_webhook_url:
        notifiers.append(WebhookNotifier(settings.alert_webhook_url))
    if len(notifiers) == 1:
        return notifiers[0]
    return CompositeNotifier(notifiers)
