import hashlib
import hmac
import random
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import TESTNET_URL, ExchangeConfig
from .errors import ConfigurationError, ExchangeAPIError, OrderValidationError, RateLimitError, UnexpectedResponseError
from .execution import ExchangeAdapter
from .logging_setup import logger
from .models import AccountInfo, OcoExit, Order, OrderSide, TradeFee, TradingRules
from .rate_limit_policy import RateLimitManager
from .secrets import BinanceCredentials


RATE_LIMIT_STATUSES = (418, 429)
MAX_RATE_LIMIT_ATTEMPTS = 5


def _fmt(value: Decimal) -> str:
    """Plain decimal string; Binance rejects exponent notation such as 1E-5."""
    return format(Decimal(value).normalize(), "f")


class BinanceAdapter(ExchangeAdapter):
    """Binance Spot REST adapter with request signing, retries, and rate-limit backoff.

    Features:
    - HMAC-SHA256 signing of the query string (``timestamp``, ``recvWindow``,
      ``signature``) with the API key in the ``X-MBX-APIKEY`` header.
    - urllib3 Retry for idempotent GETs on 5xx only; order placement is never
      blindly retried.
    - 429/418 handling: honors ``Retry-After`` or falls back to jittered
      exponential backoff, raising RateLimitError when attempts are exhausted.
    - Client-side per-endpoint quotas through RateLimitManager.
    - Trade fees cached per symbol for ``fee_cache_ttl`` seconds, falling back
      to account-level commissions when the fee endpoint is unavailable
      (the testnet does not serve /sapi).

    Public endpoints work without credentials; signed ones raise
    ConfigurationError when credentials are missing.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        *,
        base_url: str = TESTNET_URL,
        connect_timeout: float = 5.0,
        read_timeout: float = 10.0,
        recv_window: int = 5000,
        max_retries: int = 5,
        max_backoff_seconds: float = 60.0,
        fee_cache_ttl: float = 600.0,
        rate_limiter: Optional[RateLimitManager] = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.timeout: Tuple[float, float] = (connect_timeout, read_timeout)
        self.recv_window = recv_window
        self.max_backoff_seconds = max_backoff_seconds
        self.fee_cache_ttl = fee_cache_ttl
        self.rate_limiter = rate_limiter or RateLimitManager()
        self._fee_cache: Dict[str, Tuple[TradeFee, float]] = {}

        self.session = requests.Session()
        retries = Retry(
            total=max_retries,
            backoff_factor=0.5,
            status_forcelist=(500, 502, 503, 504),
            allowed_methods=frozenset(["GET"]),
            raise_on_status=False,
        )
        self.session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session.mount("http://", HTTPAdapter(max_retries=retries))

    @classmethod
    def from_config(
        cls,
        config: ExchangeConfig,
        credentials: Optional[BinanceCredentials] = None,
        **kwargs,
    ) -> "BinanceAdapter":
        """Create a BinanceAdapter from ExchangeConfig and optional credentials."""
        return cls(
            api_key=credentials.api_key if credentials else None,
            api_secret=credentials.api_secret if credentials else None,
            base_url=config.resolved_base_url,
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            recv_window=config.recv_window,
            max_retries=config.max_retries,
            max_backoff_seconds=config.max_backoff_seconds,
            **kwargs,
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def _sign(self, params: Dict[str, Any]) -> str:
        """Return the signed query string for params (timestamp and recvWindow added)."""
        if not self.has_credentials:
            raise ConfigurationError("Binance API key and secret are required for signed endpoints")
        signed = dict(params)
        signed["recvWindow"] = self.recv_window
        signed["timestamp"] = int(time.time() * 1000)
        query = urlencode(signed)
        signature = hmac.new(self.api_secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256).hexdigest()
        return f"{query}&signature={signature}"

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 60.0) -> float:
        delay = min(base * (2 ** attempt), max_backoff)
        jitter = delay * 0.25 * (2 * random.random() - 1)  # ±25%
        return max(0, delay + jitter)

    @staticmethod
    def _get_retry_after(resp: requests.Response) -> Optional[float]:
        """Seconds from the Retry-After header, if present and numeric."""
        value = resp.headers.get("Retry-After")
        if value is None:
            return None
        try:
            return float(value)
        except (ValueError, TypeError):
            return None

    @staticmethod
    def _raise_for_error(resp: requests.Response) -> None:
        code = None
        message = resp.text
        try:
            body = resp.json()
            if isinstance(body, dict):
                code = body.get("code")
                message = body.get("msg") or message
        except ValueError:
            pass
        raise ExchangeAPIError(message, status=resp.status_code, code=code)

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
        attempt: int = 0,
    ) -> Any:
        request_path = path if path.startswith("/") else f"/{path}"
        params = params or {}
        query = self._sign(params) if signed else urlencode(params)
        url = f"{self.base_url}{request_path}"
        if query:
            url = f"{url}?{query}"
        headers = {"X-MBX-APIKEY": self.api_key} if self.api_key else {}

        if not self.rate_limiter.wait_if_needed(request_path, max_wait=self.max_backoff_seconds):
            raise RateLimitError(f"Client-side rate limit wait exceeded for {request_path}")

        try:
            resp = self.session.request(method, url, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ExchangeAPIError(f"Request failed: {e}")

        if resp.status_code in RATE_LIMIT_STATUSES:
            if attempt + 1 >= MAX_RATE_LIMIT_ATTEMPTS:
                raise RateLimitError(
                    "Rate limited and max backoff attempts exceeded", status=resp.status_code
                )
            delay = self._get_retry_after(resp)
            if delay is None:
                delay = self._jittered_backoff(attempt, base=1.0, max_backoff=self.max_backoff_seconds)
            delay = min(delay, self.max_backoff_seconds)
            logger.warning(
                f"Rate limited by exchange | path={request_path} status={resp.status_code} "
                f"attempt={attempt} sleep={delay:.2f}"
            )
            time.sleep(delay)
            return self._request(method, path, params=params, signed=signed, attempt=attempt + 1)

        if not resp.ok:
            self._raise_for_error(resp)

        if not resp.text:
            return None
        try:
            return resp.json()
        except ValueError:
            raise UnexpectedResponseError(f"Non-JSON response from {request_path}", status=resp.status_code)

    # --- market data ---

    def get_trading_rules(self, symbol: str) -> TradingRules:
        res = self._request("GET", "/api/v3/exchangeInfo", params={"symbol": symbol})
        for info in (res or {}).get("symbols", []):
            if info.get("symbol") == symbol:
                return TradingRules.from_symbol_info(info)
        raise UnexpectedResponseError(f"Symbol {symbol} not found in exchangeInfo")

    def get_current_price(self, symbol: str) -> Decimal:
        res = self._request("GET", "/api/v3/ticker/price", params={"symbol": symbol})
        if not isinstance(res, dict) or res.get("price") is None:
            raise UnexpectedResponseError(f"Ticker response missing price: {res!r}")
        return Decimal(str(res["price"]))

    # --- account ---

    def get_account(self) -> AccountInfo:
        return AccountInfo.from_exchange(self._request("GET", "/api/v3/account", signed=True))

    def get_trade_fee(self, symbol: str) -> TradeFee:
        cached = self._fee_cache.get(symbol)
        if cached is not None and time.monotonic() - cached[1] < self.fee_cache_ttl:
            return cached[0]

        try:
            res = self._request("GET", "/sapi/v1/asset/tradeFee", params={"symbol": symbol}, signed=True)
            entries = res if isinstance(res, list) else [res]
            matching = [e for e in entries if isinstance(e, dict) and e.get("symbol") == symbol]
            if not matching:
                raise UnexpectedResponseError(f"No trade fee returned for {symbol}")
            fee = TradeFee.from_exchange(matching[0])
        except ExchangeAPIError as e:
            logger.warning(f"Trade fee endpoint unavailable, using account commissions | symbol={symbol} error={e}")
            fee = self.get_account().trade_fee(symbol)

        self._fee_cache = {**self._fee_cache, symbol: (fee, time.monotonic())}
        logger.debug(f"Trade fee cached | symbol={symbol} maker={fee.maker} taker={fee.taker}")
        return fee

    # --- orders ---

    def _place_order(self, params: Dict[str, Any], client_order_id: Optional[str]) -> Order:
        if client_order_id:
            params["newClientOrderId"] = client_order_id
        params["newOrderRespType"] = "FULL"
        return Order.from_exchange(self._request("POST", "/api/v3/order", params=params, signed=True))

    def place_market_buy_quote(
        self, symbol: str, quote_amount: Decimal, client_order_id: Optional[str] = None
    ) -> Order:
        params = {"symbol": symbol, "side": "BUY", "type": "MARKET", "quoteOrderQty": _fmt(quote_amount)}
        return self._place_order(params, client_order_id)

    def place_market_order(
        self, symbol: str, side: OrderSide, quantity: Decimal, client_order_id: Optional[str] = None
    ) -> Order:
        params = {"symbol": symbol, "side": side.value, "type": "MARKET", "quantity": _fmt(quantity)}
        return self._place_order(params, client_order_id)

    def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
        client_order_id: Optional[str] = None,
    ) -> Order:
        params = {
            "symbol": symbol,
            "side": side.value,
            "type": "LIMIT",
            "timeInForce": "GTC",
            "quantity": _fmt(quantity),
            "price": _fmt(price),
        }
        return self._place_order(params, client_order_id)

    def place_oco_sell(
        self,
        symbol: str,
        quantity: Decimal,
        take_profit: Decimal,
        stop_price: Decimal,
        stop_limit_price: Decimal,
    ) -> OcoExit:
        params = {
            "symbol": symbol,
            "side": "SELL",
            "quantity": _fmt(quantity),
            "price": _fmt(take_profit),
            "stopPrice": _fmt(stop_price),
            "stopLimitPrice": _fmt(stop_limit_price),
            "stopLimitTimeInForce": "GTC",
        }
        return OcoExit.from_exchange(self._request("POST", "/api/v3/order/oco", params=params, signed=True))

    @staticmethod
    def _order_ref(symbol: str, order_id: Optional[int], client_order_id: Optional[str]) -> Dict[str, Any]:
        if order_id is not None:
            return {"symbol": symbol, "orderId": order_id}
        if client_order_id:
            return {"symbol": symbol, "origClientOrderId": client_order_id}
        raise OrderValidationError("Either order_id or client_order_id is required")

    def get_order(
        self, symbol: str, order_id: Optional[int] = None, client_order_id: Optional[str] = None
    ) -> Order:
        params = self._order_ref(symbol, order_id, client_order_id)
        return Order.from_exchange(self._request("GET", "/api/v3/order", params=params, signed=True))

    def cancel_order(
        self, symbol: str, order_id: Optional[int] = None, client_order_id: Optional[str] = None
    ) -> Order:
        params = self._order_ref(symbol, order_id, client_order_id)
        return Order.from_exchange(self._request("DELETE", "/api/v3/order", params=params, signed=True))

    def get_open_orders(self, symbol: str) -> List[Order]:
        res = self._request("GET", "/api/v3/openOrders", params={"symbol": symbol}, signed=True)
        if not isinstance(res, list):
            raise UnexpectedResponseError(f"openOrders response is not a list: {res!r}")
        return [Order.from_exchange(o) for o in res]
