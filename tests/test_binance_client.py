import json
from unittest.mock import MagicMock

import pytest
import requests

from funding_hedge.binance_client import (
    BinanceAccountAdapter,
    BinanceFuturesExecutionClient,
    BinanceRESTClient,
    format_quantity,
    parse_trading_rules,
)
from funding_hedge.errors import (
    AuthError,
    ClockSkewError,
    DuplicateOrderError,
    ExchangeError,
    ExchangeRuleViolation,
    NetworkError,
    RateLimitError,
    UnknownSymbolError,
)
from funding_hedge.time_sync import ServerClock

# Example key pair and signature from the Binance API documentation.
DOC_SECRET = "NhqPtmdSJYdKjVHjA7PZj4Mge3R5YNiP1e3UZjInClVN65XAbvqqM6A7H5fATj0j"
DOC_SIGNATURE = "c8db56825ae71d6d79447849e617115f4a920fa2acdcab2b053c4b2838bd6b71"


def _response(status=200, payload=None, headers=None):
    resp = MagicMock()
    resp.status_code = status
    resp.headers = headers or {}
    if payload is None:
        resp.text = ""
        resp.json.side_effect = ValueError("no body")
    else:
        resp.text = json.dumps(payload)
        resp.json.return_value = payload
    return resp


def _client(responses=None, router=None, **kwargs):
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    if router is not None:
        session.request.side_effect = lambda method, url, timeout: router(method, url)
    else:
        session.request.side_effect = list(responses or [])
    sleeps = []
    client = BinanceRESTClient(
        "api-key-123",
        "secret",
        sync_time=False,
        session=session,
        sleep=sleeps.append,
        **kwargs,
    )
    client.clock = ServerClock(lambda: 1_700_000_000_000, local_ms=lambda: 1_700_000_000_000)
    return client, session, sleeps


def _url(session, index=-1):
    return session.request.call_args_list[index].kwargs["url"]


def test_signature_matches_documented_example():
    client = BinanceRESTClient("key", DOC_SECRET, sync_time=False, session=MagicMock(headers={}))
    params = {
        "symbol": "LTCBTC",
        "side": "BUY",
        "type": "LIMIT",
        "timeInForce": "GTC",
        "quantity": 1,
        "price": 0.1,
        "recvWindow": 5000,
    }

    query = client.sign(params, 1499827319559)

    assert query == (
        "symbol=LTCBTC&side=BUY&type=LIMIT&timeInForce=GTC&quantity=1&price=0.1"
        f"&recvWindow=5000&timestamp=1499827319559&signature={DOC_SIGNATURE}"
    )


def test_sign_adds_default_recv_window():
    client, _, _ = _client()

    query = client.sign({"symbol": "BTCUSDT"}, 1)

    assert query.startswith("symbol=BTCUSDT&recvWindow=10000&timestamp=1&signature=")


def test_signing_without_secret_is_auth_error():
    client = BinanceRESTClient("key", "", sync_time=False, session=MagicMock(headers={}))

    with pytest.raises(AuthError):
        client.sign({}, 1)


def test_api_key_header_set():
    _, session, _ = _client()

    assert session.headers["X-MBX-APIKEY"] == "api-key-123"


@pytest.mark.parametrize(
    "status,code,expected",
    [
        (401, -2015, AuthError),
        (400, -2014, AuthError),
        (400, -1021, ClockSkewError),
        (429, -1003, RateLimitError),
        (418, -1003, RateLimitError),
        (503, None, NetworkError),
        (400, -1121, UnknownSymbolError),
        (400, -4164, ExchangeRuleViolation),
        (400, -1013, ExchangeRuleViolation),
        (400, -4116, DuplicateOrderError),
    ],
)
def test_error_mapping(status, code, expected):
    resp = _response(status, {"code": code, "msg": "nope"})

    with pytest.raises(expected) as exc:
        BinanceRESTClient._raise_for_response(resp, "POST", "/fapi/v1/order", "BTCUSDT")

    assert exc.value.status == status
    assert exc.value.code == code


def test_unmapped_code_is_plain_exchange_error():
    resp = _response(400, {"code": -9999, "msg": "weird"})

    with pytest.raises(ExchangeError) as exc:
        BinanceRESTClient._raise_for_response(resp, "GET", "/x", "")

    assert type(exc.value) is ExchangeError
    assert "weird" in str(exc.value)


def test_rate_limit_is_a_network_error():
    assert issubclass(RateLimitError, NetworkError)


def test_clock_skew_resyncs_once_then_succeeds():
    client, session, _ = _client([_response(400, {"code": -1021, "msg": "ahead"}), _response(200, {"ok": 1})])
    probes = []
    client.clock = ServerClock(lambda: probes.append(1) or 1_000, local_ms=lambda: 1_000)

    data = client.request("GET", client.futures_base_url, "/fapi/v2/account", signed=True)

    assert data == {"ok": 1}
    assert session.request.call_count == 2
    # initial sync + one forced resync
    assert len(probes) == 2


def test_clock_skew_twice_is_raised():
    client, session, _ = _client([_response(400, {"code": -1021, "msg": "ahead"})] * 2)

    with pytest.raises(ClockSkewError):
        client.request("GET", client.futures_base_url, "/fapi/v2/account", signed=True)
    assert session.request.call_count == 2


def test_network_errors_retry_with_backoff():
    client, session, sleeps = _client([requests.ConnectionError("reset"), _response(200, {"ok": 1})])

    assert client.request("GET", client.spot_base_url, "/api/v3/ping") == {"ok": 1}
    assert sleeps == [1.0]


def test_network_errors_exhaust_retries():
    client, session, sleeps = _client([_response(503, {"code": None, "msg": "busy"})] * 3)

    with pytest.raises(NetworkError):
        client.request("GET", client.spot_base_url, "/api/v3/ping")
    assert session.request.call_count == 3
    assert sleeps == [1.0, 2.0]


def test_broken_transport_is_a_retried_network_error():
    broken = requests.exceptions.ChunkedEncodingError("Connection broken: IncompleteRead")
    client, session, sleeps = _client([broken] * 3)
    adapter = BinanceAccountAdapter(client)

    with pytest.raises(NetworkError) as exc:
        adapter.get_spot_balances()
    assert isinstance(exc.value.__cause__, requests.exceptions.ChunkedEncodingError)
    assert session.request.call_count == 3
    assert sleeps == [1.0, 2.0]


def test_clock_probe_survives_broken_transport():
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    session.request.side_effect = requests.exceptions.ContentDecodingError("bad gzip")

    client = BinanceRESTClient("api-key-123", "secret", session=session, sleep=lambda s: None, initial_offset_ms=-40)

    assert not client.clock.synced
    assert client.clock.offset_ms == -40


def test_auth_error_not_retried():
    client, session, sleeps = _client([_response(401, {"code": -2015, "msg": "Invalid API-key"})])

    with pytest.raises(AuthError):
        client.request("GET", client.spot_base_url, "/api/v3/account", signed=True)
    assert session.request.call_count == 1
    assert sleeps == []


def test_invalid_json_is_exchange_error():
    resp = _response(200, {"x": 1})
    resp.json.side_effect = ValueError("bad json")
    client, _, _ = _client([resp])

    with pytest.raises(ExchangeError):
        client.request("GET", client.spot_base_url, "/api/v3/time")


def test_request_consumes_weight_and_tracks_server_usage():
    client, _, _ = _client([_response(200, {"balances": []}, headers={"X-MBX-USED-WEIGHT-1M": "500"})])

    client.request("GET", client.spot_base_url, "/api/v3/account", signed=True, weight=20)

    assert client.budget.used == 500


def test_signed_request_url_carries_signature():
    client, session, _ = _client([_response(200, {})])

    client.request("GET", client.futures_base_url, "/fapi/v2/positionRisk", signed=True)

    url = _url(session)
    assert url.startswith("https://fapi.binance.com/fapi/v2/positionRisk?recvWindow=10000&timestamp=")
    assert "&signature=" in url


def test_format_quantity():
    assert format_quantity(0.5) == "0.5"
    assert format_quantity(1.0) == "1"
    assert format_quantity(0.00012345) == "0.00012345"
    assert format_quantity(1e-10) == "0"


def test_parse_trading_rules():
    rules = parse_trading_rules(
        {
            "symbol": "BTCUSDT",
            "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
                {"filterType": "LOT_SIZE", "stepSize": "0.001", "minQty": "0.001", "maxQty": "1000"},
                {"filterType": "MIN_NOTIONAL", "notional": "5"},
            ],
        }
    )

    assert rules.step_size == 0.001
    assert rules.min_qty == 0.001
    assert rules.max_qty == 1000.0
    assert rules.min_notional == 5.0
    assert rules.tick_size == 0.1

    with pytest.raises(ValueError):
        parse_trading_rules({"symbol": "X", "filters": []})


def _account_router(method, url):
    if "/api/v3/account" in url:
        return _response(200, {"balances": [
            {"asset": "BTC", "free": "0.5", "locked": "0.1"},
            {"asset": "USDT", "free": "100", "locked": "0"},
            {"asset": "DOGE", "free": "0", "locked": "0"},
        ]})
    if "/fapi/v2/positionRisk" in url:
        return _response(200, [
            {"symbol": "BTCUSDT", "positionAmt": "-0.6", "entryPrice": "30000", "markPrice": "31000", "unRealizedProfit": "-600"},
            {"symbol": "ETHUSDT", "positionAmt": "0", "entryPrice": "0", "markPrice": "2000", "unRealizedProfit": "0"},
        ])
    if "/fapi/v1/exchangeInfo" in url:
        lot = {"filterType": "LOT_SIZE", "stepSize": "0.001", "minQty": "0.001", "maxQty": "1000"}
        return _response(200, {"symbols": [
            {"symbol": "BTCUSDT", "status": "TRADING", "filters": [lot, {"filterType": "MIN_NOTIONAL", "notional": "100"}]},
            {"symbol": "OLDUSDT", "status": "SETTLING", "filters": [lot]},
        ]})
    if "/fapi/v1/order" in url:
        return _response(200, {"orderId": 123, "avgPrice": "31000.5", "executedQty": "0.45", "status": "FILLED"})
    raise AssertionError(f"unexpected {method} {url}")


def test_account_snapshot_joins_spot_and_futures():
    client, _, _ = _client(router=_account_router)
    adapter = BinanceAccountAdapter(client)

    snapshot = adapter.get_account_snapshot()

    assert set(snapshot.spot_balances) == {"BTC", "USDT"}
    assert snapshot.spot_balances["BTC"].total == pytest.approx(0.6)
    symbols = {p.symbol: p for p in snapshot.futures_positions}
    assert symbols["BTCUSDT"].position_amt == -0.6
    assert symbols["BTCUSDT"].unrealized_profit == -600.0
    # flat positions are kept for their mark price
    assert not symbols["ETHUSDT"].is_open
    assert [p.symbol for p in adapter.get_futures_positions()] == ["BTCUSDT"]


def test_trading_rules_loaded_once_and_cached():
    client, session, _ = _client(router=_account_router)
    adapter = BinanceAccountAdapter(client)

    rules = adapter.get_trading_rules("BTCUSDT")
    adapter.get_trading_rules("BTCUSDT")

    assert rules.min_notional == 100.0
    assert session.request.call_count == 1
    with pytest.raises(UnknownSymbolError):
        adapter.get_trading_rules("OLDUSDT")
    with pytest.raises(UnknownSymbolError):
        adapter.get_trading_rules("XYZUSDT")


def test_futures_order_is_signed_market_order():
    client, session, _ = _client(router=_account_router)
    exec_client = BinanceFuturesExecutionClient(client)

    raw = exec_client.place_order(
        symbol="BTCUSDT",
        side="SELL",
        qty=0.45,
        order_type="MARKET",
        reduce_only=True,
        client_order_id="hg-btcusdt-abc",
    )

    call = session.request.call_args
    assert call.kwargs["method"] == "POST"
    url = call.kwargs["url"]
    assert url.startswith("https://fapi.binance.com/fapi/v1/order?symbol=BTCUSDT&side=SELL&type=MARKET&quantity=0.45")
    assert "newClientOrderId=hg-btcusdt-abc" in url
    assert "reduceOnly=true" in url
    assert "&signature=" in url
    assert raw == {"id": 123, "average": 31000.5, "filled": 0.45, "status": "FILLED"}


def test_futures_order_post_is_sent_once_on_network_error():
    client, session, sleeps = _client([requests.Timeout("read timed out")])
    exec_client = BinanceFuturesExecutionClient(client)

    with pytest.raises(NetworkError):
        exec_client.place_order(
            symbol="BTCUSDT",
            side="SELL",
            qty=0.45,
            order_type="MARKET",
            reduce_only=False,
            client_order_id="hg-btcusdt-abc",
        )
    assert session.request.call_count == 1
    assert sleeps == []
