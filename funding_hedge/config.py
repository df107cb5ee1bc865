from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from typing import Dict, FrozenSet, List, Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigError

logger = logging.getLogger(__name__)

TRUE_VALUES = frozenset({"1", "true", "yes", "on", "enabled"})

SPOT_BASE_URLS = {
    "live": "https://api.binance.com",
    "testnet": "https://testnet.binance.vision",
}
FUTURES_BASE_URLS = {
    "live": "https://fapi.binance.com",
    "testnet": "https://testnet.binancefuture.com",
}

# Binance request weight budget per rolling minute.
API_WEIGHT_LIMIT_PER_MINUTE = 1200

DEFAULT_IGNORED_ASSETS = frozenset({"USDT", "USDC", "FDUSD", "BUSD", "TUSD", "DAI"})


@dataclass
class HedgeConfig:
    min_hedge_ratio: float = 0.90
    max_hedge_ratio: float = 1.10
    target_hedge_ratio: float = 0.95
    quote_asset: str = "USDT"
    ignored_assets: FrozenSet[str] = DEFAULT_IGNORED_ASSETS
    # spot balances at or below this are treated as empty
    dust_threshold: float = 0.0

    validation_max_attempts: int = 5
    validation_retry_interval_sec: float = 2.0
    validation_max_wait_sec: float = 30.0

    min_order_notional_usdt: float = 5.0
    max_order_notional_usdt: float = 1000.0
    rebalance_interval_sec: float = 300.0

    def __post_init__(self) -> None:
        if not 0 < self.min_hedge_ratio <= self.target_hedge_ratio <= self.max_hedge_ratio:
            raise ConfigError(
                "hedge ratios must satisfy 0 < min <= target <= max "
                f"(min={self.min_hedge_ratio}, target={self.target_hedge_ratio}, "
                f"max={self.max_hedge_ratio})"
            )
        if self.validation_max_attempts < 1:
            raise ConfigError(
                f"validation_max_attempts must be >= 1 (got {self.validation_max_attempts})"
            )
        if self.min_order_notional_usdt > self.max_order_notional_usdt:
            raise ConfigError(
                f"min_order_notional_usdt={self.min_order_notional_usdt} exceeds "
                f"max_order_notional_usdt={self.max_order_notional_usdt}"
            )

    def futures_symbol(self, asset: str) -> str:
        return f"{asset}{self.quote_asset}"

    def asset_from_symbol(self, symbol: str) -> Optional[str]:
        if symbol.endswith(self.quote_asset) and len(symbol) > len(self.quote_asset):
            return symbol[: -len(self.quote_asset)]
        return None


@dataclass
class RiskConfiguration:
    max_daily_loss: float = 50.0
    max_position_size: float = 100.0
    max_total_exposure: float = 200.0
    max_concurrent_trades: int = 3
    volatility_threshold: float = 5.0
    liquidity_threshold: float = 5.0
    max_leverage: float = 5.0
    emergency_stop_enabled: bool = True

    def replace(self, **changes) -> "RiskConfiguration":
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ConfigError(f"unknown risk configuration keys: {sorted(unknown)}")
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update(changes)
        return RiskConfiguration(**values)


@dataclass
class BinanceSettings:
    api_key: str = ""
    api_secret: str = ""
    env: str = "live"
    dry_run: bool = False
    max_leverage: int = 20
    min_order_size_usdt: float = 5.0
    max_order_size_usdt: float = 1000.0
    recv_window: int = 10000
    timestamp_offset: int = 0
    log_level: str = "INFO"
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    alert_webhook_url: str = ""
    weight_limit_per_minute: int = API_WEIGHT_LIMIT_PER_MINUTE

    @property
    def is_testnet(self) -> bool:
        return self.env == "testnet"

    @property
    def spot_base_url(self) -> str:
        return SPOT_BASE_URLS[self.env]

    @property
    def futures_base_url(self) -> str:
        return FUTURES_BASE_URLS[self.env]

    def validate(self) -> List[str]:
        errors: List[str] = []
        if not self.api_key:
            errors.append("BINANCE_API_KEY is required")
        elif len(self.api_key) < 10:
            errors.append("BINANCE_API_KEY appears to be too short")
        if not self.api_secret:
            errors.append("BINANCE_API_SECRET (or BINANCE_SECRET_KEY) is required")
        elif len(self.api_secret) < 10:
            errors.append("BINANCE_API_SECRET appears to be too short")
        return errors

    def sanitized(self) -> Dict[str, object]:
        """Settings safe to log: secrets are replaced by their lengths."""
        return {
            "BINANCE_ENV": self.env,
            "IS_TESTNET": self.is_testnet,
            "DRY_RUN": self.dry_run,
            "SPOT_BASE_URL": self.spot_base_url,
            "FUTURES_BASE_URL": self.futures_base_url,
            "RECV_WINDOW": self.recv_window,
            "TIMESTAMP_OFFSET": self.timestamp_offset,
            "LOG_LEVEL": self.log_level,
            "MAX_LEVERAGE": self.max_leverage,
            "MIN_ORDER_SIZE_USDT": self.min_order_size_usdt,
            "MAX_ORDER_SIZE_USDT": self.max_order_size_usdt,
            "API_KEY_LENGTH": len(self.api_key),
            "API_SECRET_LENGTH": len(self.api_secret),
            "TELEGRAM_CONFIGURED": bool(self.telegram_bot_token and self.telegram_chat_id),
        }

    def hedge_config(self, **overrides) -> HedgeConfig:
        values = {
            "min_order_notional_usdt": self.min_order_size_usdt,
            "max_order_notional_usdt": self.max_order_size_usdt,
        }
        values.update(overrides)
        return HedgeConfig(**values)

    def risk_config(self, **overrides) -> RiskConfiguration:
        values = {"max_leverage": float(self.max_leverage)}
        values.update(overrides)
        return RiskConfiguration(**values)


# ---------------------------------------------------------------------------
# env parsing
# ---------------------------------------------------------------------------

def parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in TRUE_VALUES


def _parse_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning("%s=%r is not an integer, using default %d", name, raw, default)
        return default


def _parse_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning("%s=%r is not a number, using default %s", name, raw, default)
        return default


def _parse_str(env: Mapping[str, str], name: str, default: str = "") -> str:
    raw = env.get(name)
    return raw.strip() if raw is not None else default


def load_settings(env: Optional[Mapping[str, str]] = None, dotenv: bool = True) -> BinanceSettings:
    """Build ``BinanceSettings`` from environment variables.

    Parameters
    ----------
    env : Optional[Mapping[str, str]]
        Source of values. Defaults to ``os.environ`` (after ``.env`` is loaded).
    dotenv : bool
        Load ``.env`` into the process environment first. Ignored when ``env``
        is given explicitly.

    Raises
    ------
    ConfigError
        ``BINANCE_ENV`` is neither ``live`` nor ``testnet``.
    """
    if env is None:
        if dotenv:
            load_dotenv()
        env = os.environ

    binance_env = _parse_str(env, "BINANCE_ENV", "live").lower() or "live"
    if binance_env not in SPOT_BASE_URLS:
        raise ConfigError(f"BINANCE_ENV must be 'live' or 'testnet' (got {binance_env!r})")

    api_secret = _parse_str(env, "BINANCE_API_SECRET") or _parse_str(env, "BINANCE_SECRET_KEY")

    return BinanceSettings(
        api_key=_parse_str(env, "BINANCE_API_KEY"),
        api_secret=api_secret,
        env=binance_env,
        dry_run=parse_bool(env.get("DRY_RUN")),
        max_leverage=_parse_int(env, "MAX_LEVERAGE", 20),
        min_order_size_usdt=_parse_float(env, "MIN_ORDER_SIZE_USDT", 5.0),
        max_order_size_usdt=_parse_float(env, "MAX_ORDER_SIZE_USDT", 1000.0),
        recv_window=_parse_int(env, "RECV_WINDOW", 10000),
        timestamp_offset=_parse_int(env, "TIMESTAMP_OFFSET", 0),
        log_level=_parse_str(env, "LOG_LEVEL", "INFO").upper() or "INFO",
        telegram_bot_token=_parse_str(env, "TELEGRAM_BOT_TOKEN"),
        telegram_chat_id=_parse_str(env, "TELEGRAM_CHAT_ID"),
        alert_webhook_url=_parse_str(env, "ALERT_WEBHOOK_URL"),
    )
