import hashlib
import hmac
import json
from decimal import Decimal
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qsl, urlsplit

import pytest
import requests

from autotrade.binance_adapter import BinanceAdapter
from autotrade.config import TESTNET_URL, ExchangeConfig
from autotrade.errors import (
    ConfigurationError,
    ExchangeAPIError,
    OrderValidationError,
    RateLimitError,
    UnexpectedResponseError,
)
from autotrade.models import OrderSide, OrderStatus
from autotrade.secrets import BinanceCredentials

REQUEST = "autotrade.binance_adapter.requests.Session.request"


def make_response(status_code=200, body=None, headers=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = status_code < 400
    resp.headers = headers or {}
    resp.text = json.dumps(body) if body is not None else ""
    resp.json.return_value = body
    return resp


@pytest.fixture
def adapter():
    return BinanceAdapter("test_key", "test_secret")


def sent(mock_request, index=-1):
    """(method, path, params) of a captured request."""
    method, url = mock_request.call_args_list[index][0]
    parts = urlsplit(url)
    return method, parts.path, dict(parse_qsl(parts.query))


def test_from_config():
    config = ExchangeConfig(testnet=False, connect_timeout=3, read_timeout=7, recv_window=6000)
    adapter = BinanceAdapter.from_config(config, BinanceCredentials("k", "s"))
    assert adapter.base_url == "https://api.binance.com"
    assert adapter.timeout == (3, 7)
    assert adapter.recv_window == 6000
    assert adapter.has_credentials

    assert BinanceAdapter().base_url == TESTNET_URL


def test_signature_is_hmac_of_query(adapter):
    query = adapter._sign({"symbol": "ETHUSDC"})
    payload, signature = query.rsplit("&signature=", 1)
    expected = hmac.new(b"test_secret", payload.encode(), hashlib.sha256).hexdigest()
    assert signature == expected
    params = dict(parse_qsl(payload))
    assert params["recvWindow"] == "5000"
    assert int(params["timestamp"]) > 0


def test_signed_endpoint_requires_credentials():
    with pytest.raises(ConfigurationError):
        BinanceAdapter().get_account()


@patch(REQUEST)
def test_get_trading_rules(mock_request, adapter):
    mock_request.return_value = make_response(body={
        "symbols": [{
            "symbol": "ETHUSDC",
            "baseAsset": "ETH",
            "quoteAsset": "USDC",
            "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.01000000"},
                {"filterType": "LOT_SIZE", "stepSize": "0.00010000", "minQty": "0.00010000"},
                {"filterType": "NOTIONAL", "minNotional": "5.00000000"},
            ],
        }]
    })

    rules = adapter.get_trading_rules("ETHUSDC")

    assert rules.quantity_step == Decimal("0.0001")
    assert rules.min_notional == Decimal("5")
    method, path, params = sent(mock_request)
    assert (method, path) == ("GET", "/api/v3/exchangeInfo")
    assert params == {"symbol": "ETHUSDC"}
    assert mock_request.call_args[1]["timeout"] == (5.0, 10.0)


@patch(REQUEST)
def test_get_current_price(mock_request, adapter):
    mock_request.return_value = make_response(body={"symbol": "ETHUSDC", "price": "1950.12000000"})
    assert adapter.get_current_price("ETHUSDC") == Decimal("1950.12")

    mock_request.return_value = make_response(body={"symbol": "ETHUSDC"})
    with pytest.raises(UnexpectedResponseError):
        adapter.get_current_price("ETHUSDC")


@patch(REQUEST)
def test_market_buy_uses_quote_order_qty(mock_request, adapter):
    mock_request.return_value = make_response(body={
        "symbol": "ETHUSDC",
        "orderId": 28,
        "orderListId": -1,
        "clientOrderId": "at-abc",
        "transactTime": 1700000000000,
        "price": "0.00000000",
        "origQty": "0.05120000",
        "executedQty": "0.05120000",
        "cummulativeQuoteQty": "99.84000000",
        "status": "FILLED",
        "type": "MARKET",
        "side": "BUY",
    })

    order = adapter.place_market_buy_quote("ETHUSDC", Decimal("100.00"), client_order_id="at-abc")

    assert order.status == OrderStatus.FILLED
    assert order.average_price == Decimal("1950.00000000")
    method, path, params = sent(mock_request)
    assert (method, path) == ("POST", "/api/v3/order")
    assert params["quoteOrderQty"] == "100"
    assert params["type"] == "MARKET"
    assert params["newClientOrderId"] == "at-abc"
    assert params["newOrderRespType"] == "FULL"
    assert "signature" in params
    assert mock_request.call_args[1]["headers"] == {"X-MBX-APIKEY": "test_key"}


@patch(REQUEST)
def test_limit_order_params(mock_request, adapter):
    mock_request.return_value = make_response(body={
        "symbol": "ETHUSDC", "orderId": 29, "status": "NEW", "type": "LIMIT", "side": "SELL",
        "price": "2100.00", "origQty": "0.00001",
    })

    adapter.place_limit_order("ETHUSDC", OrderSide.SELL, Decimal("0.00001"), Decimal("2100.00"))

    _, _, params = sent(mock_request)
    assert params["quantity"] == "0.00001"
    assert params["price"] == "2100"
    assert params["timeInForce"] == "GTC"


@patch(REQUEST)
def test_oco_sell(mock_request, adapter):
    mock_request.return_value = make_response(body={
        "orderListId": 5,
        "contingencyType": "OCO",
        "listStatusType": "EXEC_STARTED",
        "listOrderStatus": "EXECUTING",
        "orders": [
            {"symbol": "ETHUSDC", "orderId": 30, "clientOrderId": "stop"},
            {"symbol": "ETHUSDC", "orderId": 31, "clientOrderId": "tp"},
        ],
    })

    oco = adapter.place_oco_sell(
        "ETHUSDC", Decimal("0.0512"), Decimal("2000.00"), Decimal("1900.00"), Decimal("1890.50")
    )

    assert oco.order_list_id == 5
    assert [c.order_id for c in oco.orders] == [30, 31]
    method, path, params = sent(mock_request)
    assert (method, path) == ("POST", "/api/v3/order/oco")
    assert params["stopPrice"] == "1900"
    assert params["stopLimitPrice"] == "1890.5"
    assert params["stopLimitTimeInForce"] == "GTC"


@patch(REQUEST)
def test_get_and_cancel_order(mock_request, adapter):
    mock_request.return_value = make_response(body={"symbol": "ETHUSDC", "orderId": 7, "status": "CANCELED"})

    adapter.get_order("ETHUSDC", order_id=7)
    assert sent(mock_request)[0] == "GET"
    assert sent(mock_request)[2]["orderId"] == "7"

    order = adapter.cancel_order("ETHUSDC", client_order_id="at-xyz")
    method, _, params = sent(mock_request)
    assert method == "DELETE"
    assert params["origClientOrderId"] == "at-xyz"
    assert order.status == OrderStatus.CANCELED

    with pytest.raises(OrderValidationError):
        adapter.get_order("ETHUSDC")


@patch(REQUEST)
def test_error_body_surfaces_code_and_message(mock_request, adapter):
    mock_request.return_value = make_response(400, body={"code": -2010, "msg": "Account has insufficient balance"})

    with pytest.raises(ExchangeAPIError) as exc_info:
        adapter.place_market_order("ETHUSDC", OrderSide.SELL, Decimal("1"))

    assert exc_info.value.status == 400
    assert exc_info.value.code == -2010
    assert exc_info.value.message == "Account has insufficient balance"


@patch(REQUEST)
def test_unknown_status_rejected(mock_request, adapter):
    mock_request.return_value = make_response(body={"symbol": "ETHUSDC", "orderId": 7, "status": "WEIRD"})
    with pytest.raises(UnexpectedResponseError):
        adapter.get_order("ETHUSDC", order_id=7)


@patch(REQUEST)
def test_network_error_wrapped(mock_request, adapter):
    mock_request.side_effect = requests.exceptions.ConnectTimeout("timed out")
    with pytest.raises(ExchangeAPIError, match="Request failed"):
        adapter.get_current_price("ETHUSDC")


@patch("autotrade.binance_adapter.time.sleep")
@patch(REQUEST)
def test_rate_limit_honors_retry_after(mock_request, mock_sleep, adapter):
    mock_request.side_effect = [
        make_response(429, body={"code": -1003, "msg": "Too many requests"}, headers={"Retry-After": "2"}),
        make_response(body={"symbol": "ETHUSDC", "price": "1950"}),
    ]

    assert adapter.get_current_price("ETHUSDC") == Decimal("1950")
    assert mock_request.call_count == 2
    mock_sleep.assert_called_once_with(2.0)


@patch("autotrade.binance_adapter.time.sleep")
@patch(REQUEST)
def test_rate_limit_exhausted(mock_request, mock_sleep, adapter):
    mock_request.return_value = make_response(418, body={"code": -1003, "msg": "IP banned"})

    with pytest.raises(RateLimitError) as exc_info:
        adapter.get_current_price("ETHUSDC")

    assert exc_info.value.status == 418
    assert mock_request.call_count == 5
    assert mock_sleep.call_count == 4


def test_jittered_backoff_bounds():
    for attempt in range(6):
        delay = BinanceAdapter._jittered_backoff(attempt, base=1.0, max_backoff=10.0)
        nominal = min(2 ** attempt, 10.0)
        assert nominal * 0.75 <= delay <= nominal * 1.25


@patch(REQUEST)
def test_trade_fee_cached(mock_request, adapter):
    mock_request.return_value = make_response(body=[
        {"symbol": "ETHUSDC", "makerCommission": "0.001", "takerCommission": "0.001"}
    ])

    fee = adapter.get_trade_fee("ETHUSDC")
    assert fee.round_trip == Decimal("0.002")
    adapter.get_trade_fee("ETHUSDC")

    assert mock_request.call_count == 1
    assert sent(mock_request)[1] == "/sapi/v1/asset/tradeFee"


@patch(REQUEST)
def test_trade_fee_falls_back_to_account(mock_request, adapter):
    mock_request.side_effect = [
        make_response(404, body={"code": -1, "msg": "Not found"}),
        make_response(body={"makerCommission": 10, "takerCommission": 10, "canTrade": True, "balances": []}),
    ]

    fee = adapter.get_trade_fee("ETHUSDC")

    assert fee.taker == Decimal("0.001")
    assert sent(mock_request)[1] == "/api/v3/account"


@patch(REQUEST)
def test_open_orders(mock_request, adapter):
    mock_request.return_value = make_response(body=[
        {"symbol": "ETHUSDC", "orderId": 1, "status": "NEW"},
        {"symbol": "ETHUSDC", "orderId": 2, "status": "PARTIALLY_FILLED"},
    ])
    orders = adapter.get_open_orders("ETHUSDC")
    assert [o.order_id for o in orders] == [1, 2]

    mock_request.return_value = make_response(body={"unexpected": True})
    with pytest.raises(UnexpectedResponseError):
        adapter.get_open_orders("ETHUSDC")
