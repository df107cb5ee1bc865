"""Binance spot + USDⓈ-M futures REST adapter.

Read side: spot balances, futures position risk, exchange trading rules.
Write side: a single futures market order endpoint used by ``ExecutionService``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import requests

from .account import AccountDataSource
from .config import BinanceSettings
from .context import TradingRulesCache
from .errors import (
    AuthError,
    ClockSkewError,
    DuplicateOrderError,
    ExchangeError,
    ExchangeRuleViolation,
    NetworkError,
    RateLimitError,
    UnknownSymbolError,
)
from .execution import ExchangeExecutionClient
from .rate_limit import RequestWeightBudget
from .time_sync import ServerClock
from .types import AccountSnapshot, FuturesPosition, SpotBalance, TradingRules

logger = logging.getLogger(__name__)

SPOT_BASE_URL = "https://api.binance.com"
FUTURES_BASE_URL = "https://fapi.binance.com"

AUTH_ERROR_CODES = frozenset({-2008, -2014, -2015, -1022})
CLOCK_SKEW_CODES = frozenset({-1021})
UNKNOWN_SYMBOL_CODES = frozenset({-1121})
DUPLICATE_ORDER_CODES = frozenset({-4116})
# LOT_SIZE / MIN_NOTIONAL / precision / max qty rejections
RULE_VIOLATION_CODES = frozenset({-1013, -1111, -4003, -4005, -4164})

USED_WEIGHT_HEADER = "X-MBX-USED-WEIGHT-1M"


def format_quantity(qty: float) -> str:
    text = f"{qty:.8f}".rstrip("0").rstrip(".")
    return text or "0"


def parse_trading_rules(sym: Dict[str, Any]) -> TradingRules:
    """Parse one ``exchangeInfo`` symbol entry into ``TradingRules``."""
    step_size = None
    min_qty = None
    max_qty = None
    tick_size = None
    min_notional = 0.0

    for f in sym.get("filters", []):
        t = f.get("filterType")
        if t == "LOT_SIZE":
            step_size = float(f["stepSize"])
            min_qty = float(f["minQty"])
            max_qty = float(f["maxQty"]) if f.get("maxQty") else None
        elif t == "PRICE_FILTER":
            tick_size = float(f["tickSize"])
        elif t in ("MIN_NOTIONAL", "NOTIONAL"):
            min_notional = float(f.get("notional", f.get("minNotional", 0)) or 0)

    if step_size is None or min_qty is None:
        raise ValueError(f"LOT_SIZE filter missing for symbol {sym.get('symbol')}")

    return TradingRules(
        symbol=sym["symbol"],
        step_size=step_size,
        min_qty=min_qty,
        min_notional=min_notional,
        max_qty=max_qty,
        tick_size=tick_size,
    )


class BinanceRESTClient:
    """Signed/public REST transport with clock sync, weight budget and retries.

    Parameters
    ----------
    api_key, api_secret : str
        Account credentials. Only needed for signed endpoints.
    recv_window : int
        ``recvWindow`` sent with signed requests (ms).
    max_retries : int
        Attempts for transient (``NetworkError``) failures.
    backoff_base : float
        Linear backoff: sleep ``backoff_base * attempt`` between attempts.
    budget : Optional[RequestWeightBudget]
        Shared process-wide weight budget. A private one is created if omitted.
    sync_time : bool
        Probe the exchange clock on construction.
    session : Optional[requests.Session]
        Replaceable for tests.
    """

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        *,
        spot_base_url: str = SPOT_BASE_URL,
        futures_base_url: str = FUTURES_BASE_URL,
        recv_window: int = 10000,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        budget: Optional[RequestWeightBudget] = None,
        initial_offset_ms: int = 0,
        sync_time: bool = True,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.spot_base_url = spot_base_url.rstrip("/")
        self.futures_base_url = futures_base_url.rstrip("/")
        self.api_key = api_key or ""
        self._api_secret = (api_secret or "").encode("utf-8")
        self.recv_window = int(recv_window)
        self.timeout = float(timeout)
        self.max_retries = max(1, int(max_retries))
        self.backoff_base = float(backoff_base)
        self.budget = budget or RequestWeightBudget()
        self._sleep = sleep

        self.session = session or requests.Session()
        if self.api_key:
            self.session.headers.update({"X-MBX-APIKEY": self.api_key})

        self.clock = ServerClock(self.fetch_server_time, initial_offset_ms=initial_offset_ms)
        if sync_time:
            self.clock.try_sync()

    @classmethod
    def from_settings(
        cls,
        settings: BinanceSettings,
        budget: Optional[RequestWeightBudget] = None,
        **kwargs: Any,
    ) -> "BinanceRESTClient":
        return cls(
            settings.api_key,
            settings.api_secret,
            spot_base_url=settings.spot_base_url,
            futures_base_url=settings.futures_base_url,
            recv_window=settings.recv_window,
            initial_offset_ms=settings.timestamp_offset,
            budget=budget,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # signing
    # ------------------------------------------------------------------

    def sign(self, params: Dict[str, Any], timestamp_ms: int) -> str:
        """Return the signed query string for ``params``.

        Parameters keep insertion order; ``recvWindow`` and ``timestamp`` are
        appended, then ``signature`` = HMAC-SHA256(secret, query) in hex.
        """
        if not self._api_secret:
            raise AuthError("signed request requires BINANCE_API_SECRET")
        p: Dict[str, Any] = dict(params)
        p.setdefault("recvWindow", self.recv_window)
        p["timestamp"] = timestamp_ms
        query = urlencode(p, doseq=True)
        signature = hmac.new(self._api_secret, query.encode("utf-8"), hashlib.sha256).hexdigest()
        return f"{query}&signature={signature}"

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------

    def _send(self, method: str, url: str) -> requests.Response:
        try:
            return self.session.request(method=method, url=url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise NetworkError(f"{method} {url.split('?')[0]}: {exc}") from exc

    def _observe_weight(self, resp: requests.Response) -> None:
        headers = getattr(resp, "headers", None) or {}
        raw = headers.get(USED_WEIGHT_HEADER)
        if raw is None:
            return
        try:
            self.budget.observe_server_usage(int(raw))
        except (TypeError, ValueError):
            pass

    @staticmethod
    def _raise_for_response(resp: requests.Response, method: str, path: str, symbol: str) -> None:
        status = resp.status_code
        if status < 400:
            return

        code: Optional[int] = None
        msg = ""
        try:
            payload = resp.json()
            if isinstance(payload, dict):
                code = payload.get("code")
                msg = str(payload.get("msg", ""))
        except ValueError:
            msg = (resp.text or "")[:500]

        text = f"Binance HTTP {status} {method} {path}: code={code} msg={msg}"
        kwargs = {"code": code, "status": status, "path": path}

        if status in (418, 429):
            raise RateLimitError(text, **kwargs)
        if status >= 500:
            raise NetworkError(text, **kwargs)
        if code in CLOCK_SKEW_CODES:
            raise ClockSkewError(text, **kwargs)
        if status == 401 or code in AUTH_ERROR_CODES:
            raise AuthError(text, **kwargs)
        if code in UNKNOWN_SYMBOL_CODES:
            raise UnknownSymbolError(symbol or "?", text, **kwargs)
        if code in DUPLICATE_ORDER_CODES:
            raise DuplicateOrderError(text, **kwargs)
        if code in RULE_VIOLATION_CODES:
            raise ExchangeRuleViolation(symbol or "?", text, **kwargs)
        raise ExchangeError(text, **kwargs)

    def request(
        self,
        method: str,
        base_url: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
        weight: int = 1,
        retry_network: bool = True,
    ) -> Any:
        """Issue one logical request.

        ``AuthError`` propagates immediately. ``ClockSkewError`` triggers one
        clock resync and a single retry. ``NetworkError`` is retried up to
        ``max_retries`` with linear backoff unless ``retry_network`` is false.
        """
        params = dict(params or {})
        symbol = str(params.get("symbol", ""))
        resynced = False
        attempt = 0

        while True:
            attempt += 1
            self.budget.acquire(weight)
            if signed:
                query = self.sign(params, self.clock.now_ms())
            else:
                query = urlencode(params, doseq=True)
            url = f"{base_url}{path}?{query}" if query else f"{base_url}{path}"

            try:
                resp = self._send(method, url)
                self._observe_weight(resp)
                self._raise_for_response(resp, method, path, symbol)
            except ClockSkewError:
                if resynced:
                    raise
                logger.warning("Timestamp rejected on %s %s, resyncing clock", method, path)
                self.clock.sync()
                resynced = True
                continue
            except NetworkError as exc:
                if not retry_network or attempt >= self.max_retries:
                    raise
                delay = self.backoff_base * attempt
                logger.warning(
                    "Binance request error (%s %s), retry %d/%d in %.1fs: %s",
                    method, path, attempt, self.max_retries, delay, exc,
                )
                self._sleep(delay)
                continue

            if not resp.text:
                return {}
            try:
                return resp.json()
            except ValueError as exc:
                raise ExchangeError(
                    f"Binance {method} {path}: invalid JSON response", status=resp.status_code, path=path
                ) from exc

    def fetch_server_time(self) -> int:
        data = self.request("GET", self.spot_base_url, "/api/v3/time", weight=1)
        return int(data["serverTime"])


class BinanceAccountAdapter(AccountDataSource):
    """Normalized read access to spot + futures account state.

    Holds no state of its own besides the trading rules cache it is given.
    """

    def __init__(self, rest: BinanceRESTClient, rules_cache: Optional[TradingRulesCache] = None):
        self.rest = rest
        self.rules_cache = rules_cache or TradingRulesCache()

    def get_spot_balances(self) -> Dict[str, SpotBalance]:
        data = self.rest.request(
            "GET", self.rest.spot_base_url, "/api/v3/account",
            params={"omitZeroBalances": "true"}, signed=True, weight=20,
        )
        balances: Dict[str, SpotBalance] = {}
        for b in data.get("balances", []):
            free = float(b.get("free", 0) or 0)
            locked = float(b.get("locked", 0) or 0)
            if free == 0 and locked == 0:
                continue
            balances[b["asset"]] = SpotBalance(asset=b["asset"], free=free, locked=locked)
        return balances

    def get_futures_positions(self, open_only: bool = True) -> List[FuturesPosition]:
        data = self.rest.request(
            "GET", self.rest.futures_base_url, "/fapi/v2/positionRisk", signed=True, weight=5,
        )
        positions: List[FuturesPosition] = []
        for p in data or []:
            pos = FuturesPosition(
                symbol=p["symbol"],
                position_amt=float(p.get("positionAmt", 0) or 0),
                entry_price=float(p.get("entryPrice", 0) or 0),
                mark_price=float(p.get("markPrice", 0) or 0),
                unrealized_profit=float(p.get("unRealizedProfit", p.get("unrealizedProfit", 0)) or 0),
            )
            if open_only and not pos.is_open:
                continue
            positions.append(pos)
        return positions

    def get_account_snapshot(self) -> AccountSnapshot:
        """Fetch spot balances and futures positions concurrently."""
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="snapshot") as pool:
            spot_future = pool.submit(self.get_spot_balances)
            futures_future = pool.submit(self.get_futures_positions, False)
            spot = spot_future.result()
            futures = futures_future.result()
        return AccountSnapshot(spot_balances=spot, futures_positions=futures)

    def get_futures_account(self) -> Dict[str, Any]:
        return self.rest.request(
            "GET", self.rest.futures_base_url, "/fapi/v2/account", signed=True, weight=5,
        )

    def get_prices(self) -> Dict[str, float]:
        data = self.rest.request("GET", self.rest.spot_base_url, "/api/v3/ticker/price", weight=4)
        return {row["symbol"]: float(row["price"]) for row in data or []}

    def get_mark_price(self, symbol: str) -> float:
        data = self.rest.request(
            "GET", self.rest.futures_base_url, "/fapi/v1/premiumIndex",
            params={"symbol": symbol}, weight=1,
        )
        return float(data.get("markPrice", 0) or 0)

    def _load_trading_rules(self) -> None:
        data = self.rest.request("GET", self.rest.futures_base_url, "/fapi/v1/exchangeInfo", weight=1)
        rules: Dict[str, TradingRules] = {}
        for sym in data.get("symbols", []):
            if sym.get("status", "TRADING") != "TRADING":
                continue
            try:
                rules[sym["symbol"]] = parse_trading_rules(sym)
            except (KeyError, ValueError) as exc:
                logger.warning("Skipping %s: %s", sym.get("symbol"), exc)
        self.rules_cache.load(rules)
        logger.info("Loaded futures trading rules for %d symbols", len(rules))

    def get_trading_rules(self, symbol: str) -> TradingRules:
        if not self.rules_cache.loaded:
            self._load_trading_rules()
        rules = self.rules_cache.get(symbol)
        if rules is None:
            raise UnknownSymbolError(symbol)
        return rules


class BinanceFuturesExecutionClient(ExchangeExecutionClient):
    def __init__(self, rest: BinanceRESTClient):
        self.rest = rest

    def place_order(
        self,
        symbol: str,
        side: str,
        qty: float,
        order_type: str,
        reduce_only: bool,
        client_order_id: str,
    ) -> Dict:
        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": side,
            "type": order_type,
            "quantity": format_quantity(qty),
            "newClientOrderId": client_order_id,
            "newOrderRespType": "RESULT",
        }
        if reduce_only:
            params["reduceOnly"] = "true"
        logger.info("[Binance] futures order: %s %s %s reduce_only=%s", symbol, side, params["quantity"], reduce_only)
        raw = self.rest.request(
            "POST", self.rest.futures_base_url, "/fapi/v1/order", params=params, signed=True, weight=1,
            retry_network=False,
        )
        return {
            "id": raw.get("orderId"),
            "average": float(raw.get("avgPrice", 0) or 0),
            "filled": float(raw.get("executedQty", 0) or 0),
            "status": raw.get("status"),
        }
