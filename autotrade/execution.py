"""
Order execution for spot trading.

Turns admitted proposals into exchange orders (market, limit, OCO exit) through
an abstract adapter, so the same executor runs against Binance or the in-memory
simulated exchange used by tests and demos.
"""

import itertools
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Any, Callable, Dict, List, Optional

from .errors import ExchangeAPIError, OrderValidationError
from .logging_setup import logger
from .models import (
    AccountInfo,
    AmountUnit,
    Balance,
    EntryType,
    OcoExit,
    Order,
    OrderSide,
    Proposal,
    Signal,
    TradeFee,
    TradingRules,
)
from .normalizer import (
    TradingRulesCache,
    check_notional,
    check_quote_amount,
    normalize_price,
    normalize_quantity,
    normalize_quote_amount,
    quote_to_base,
)


def new_client_order_id(prefix: str = "at") -> str:
    # Binance accepts up to 36 chars matching ^[.A-Z:/a-z0-9_-]{1,36}$
    return f"{prefix}-{uuid.uuid4().hex[:24]}"


class ExchangeAdapter(ABC):
    """Abstract exchange gateway.

    All price/qty values use Decimal. Order-returning methods return the
    exchange's view of the order parsed into domain types; failures raise
    ExchangeAPIError (or a subclass) carrying the exchange's code and message.
    """

    @abstractmethod
    def get_trading_rules(self, symbol: str) -> TradingRules:
        """Fetch LOT_SIZE / MIN_NOTIONAL / PRICE_FILTER rules for a symbol."""

    @abstractmethod
    def get_current_price(self, symbol: str) -> Decimal:
        """Latest traded price."""

    @abstractmethod
    def get_account(self) -> AccountInfo:
        """Balances and account-level commissions (signed)."""

    @abstractmethod
    def get_trade_fee(self, symbol: str) -> TradeFee:
        """Maker/taker commission for a symbol as fractions (signed)."""

    @abstractmethod
    def place_market_buy_quote(
        self, symbol: str, quote_amount: Decimal, client_order_id: Optional[str] = None
    ) -> Order:
        """Market buy spending quote_amount of the quote asset (quoteOrderQty)."""

    @abstractmethod
    def place_market_order(
        self, symbol: str, side: OrderSide, quantity: Decimal, client_order_id: Optional[str] = None
    ) -> Order:
        """Market order for a base quantity."""

    @abstractmethod
    def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
        client_order_id: Optional[str] = None,
    ) -> Order:
        """Good-till-cancelled limit order."""

    @abstractmethod
    def place_oco_sell(
        self,
        symbol: str,
        quantity: Decimal,
        take_profit: Decimal,
        stop_price: Decimal,
        stop_limit_price: Decimal,
    ) -> OcoExit:
        """OCO sell: take-profit limit leg plus stop-limit leg, both GTC."""

    @abstractmethod
    def get_order(
        self, symbol: str, order_id: Optional[int] = None, client_order_id: Optional[str] = None
    ) -> Order:
        """Query an order by exchange id, falling back to client id."""

    @abstractmethod
    def cancel_order(
        self, symbol: str, order_id: Optional[int] = None, client_order_id: Optional[str] = None
    ) -> Order:
        """Cancel an open order; returns the order as reported after cancellation."""

    @abstractmethod
    def get_open_orders(self, symbol: str) -> List[Order]:
        """All open orders for a symbol."""


class InMemoryAdapter(ExchangeAdapter):
    """Simulated exchange for tests and demos.

    Market orders fill immediately at the configured price; limit orders rest
    as NEW until a test drives them with ``fill_order`` / ``set_status``.
    Failures can be injected per method with ``fail_on``.
    """

    def __init__(
        self,
        rules: Optional[Dict[str, TradingRules]] = None,
        prices: Optional[Dict[str, Decimal]] = None,
        fee: Optional[TradeFee] = None,
        balances: Optional[Dict[str, Decimal]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.rules = dict(rules or {})
        self.prices = dict(prices or {})
        self.fee = fee
        self.balances = {a: Decimal(str(v)) for a, v in (balances or {}).items()}
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.orders: Dict[int, Dict[str, Any]] = {}
        self.order_lists: Dict[int, Dict[str, Any]] = {}
        self.oco_calls: List[Dict[str, Any]] = []
        self.cancel_calls: List[int] = []
        self._failures: Dict[str, ExchangeAPIError] = {}
        self._order_ids = itertools.count(1)
        self._list_ids = itertools.count(1)

    def fail_on(self, method: str, error: ExchangeAPIError) -> None:
        """Make the next call to ``method`` raise ``error``."""
        self._failures[method] = error

    def _maybe_fail(self, method: str) -> None:
        error = self._failures.pop(method, None)
        if error is not None:
            raise error

    def _now_ms(self) -> int:
        return int(self.clock().timestamp() * 1000)

    def _price(self, symbol: str) -> Decimal:
        if symbol not in self.prices:
            raise ExchangeAPIError("Invalid symbol.", status=400, code=-1121)
        return self.prices[symbol]

    def _new_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: str,
        quantity: Decimal,
        price: Decimal,
        client_order_id: Optional[str],
        order_list_id: int = -1,
        stop_price: Optional[Decimal] = None,
    ) -> Dict[str, Any]:
        order_id = next(self._order_ids)
        now = self._now_ms()
        order = {
            "symbol": symbol,
            "orderId": order_id,
            "orderListId": order_list_id,
            "clientOrderId": client_order_id or new_client_order_id("sim"),
            "price": str(price),
            "origQty": str(quantity),
            "executedQty": "0",
            "cummulativeQuoteQty": "0",
            "status": "NEW",
            "timeInForce": "GTC",
            "type": order_type,
            "side": side.value,
            "transactTime": now,
            "time": now,
            "updateTime": now,
        }
        if stop_price is not None:
            order["stopPrice"] = str(stop_price)
        self.orders[order_id] = order
        return order

    def _lookup(self, order_id: Optional[int], client_order_id: Optional[str]) -> Dict[str, Any]:
        if order_id is not None and order_id in self.orders:
            return self.orders[order_id]
        if client_order_id:
            for order in self.orders.values():
                if order["clientOrderId"] == client_order_id:
                    return order
        raise ExchangeAPIError("Order does not exist.", status=400, code=-2013)

    # test drivers

    def fill_order(self, order_id: int, price: Optional[Decimal] = None) -> Order:
        order = self.orders[order_id]
        fill_price = price if price is not None else Decimal(order["price"])
        qty = Decimal(order["origQty"])
        order.update(
            status="FILLED",
            executedQty=str(qty),
            cummulativeQuoteQty=str(qty * fill_price),
            updateTime=self._now_ms(),
        )
        return Order.from_exchange(order)

    def set_status(self, order_id: int, status: str) -> None:
        self.orders[order_id]["status"] = status
        self.orders[order_id]["updateTime"] = self._now_ms()

    # gateway

    def get_trading_rules(self, symbol: str) -> TradingRules:
        self._maybe_fail("get_trading_rules")
        if symbol not in self.rules:
            raise ExchangeAPIError("Invalid symbol.", status=400, code=-1121)
        return self.rules[symbol]

    def get_current_price(self, symbol: str) -> Decimal:
        self._maybe_fail("get_current_price")
        return self._price(symbol)

    def get_account(self) -> AccountInfo:
        self._maybe_fail("get_account")
        bps = int((self.fee.taker * 10000) if self.fee else 0)
        return AccountInfo(
            maker_commission_bps=bps,
            taker_commission_bps=bps,
            can_trade=True,
            balances={a: Balance(asset=a, free=v) for a, v in self.balances.items()},
        )

    def get_trade_fee(self, symbol: str) -> TradeFee:
        self._maybe_fail("get_trade_fee")
        if self.fee is None:
            raise ExchangeAPIError("Trade fee unavailable", status=503)
        return self.fee

    def place_market_buy_quote(
        self, symbol: str, quote_amount: Decimal, client_order_id: Optional[str] = None
    ) -> Order:
        self._maybe_fail("place_market_buy_quote")
        price = self._price(symbol)
        qty = (quote_amount / price).quantize(Decimal("0.00000001"), rounding=ROUND_DOWN)
        order = self._new_order(symbol, OrderSide.BUY, "MARKET", qty, Decimal("0"), client_order_id)
        order.update(
            status="FILLED",
            executedQty=str(qty),
            cummulativeQuoteQty=str(qty * price),
            origQuoteOrderQty=str(quote_amount),
        )
        return Order.from_exchange(order)

    def place_market_order(
        self, symbol: str, side: OrderSide, quantity: Decimal, client_order_id: Optional[str] = None
    ) -> Order:
        self._maybe_fail("place_market_order")
        price = self._price(symbol)
        order = self._new_order(symbol, side, "MARKET", quantity, Decimal("0"), client_order_id)
        order.update(status="FILLED", executedQty=str(quantity), cummulativeQuoteQty=str(quantity * price))
        return Order.from_exchange(order)

    def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
        client_order_id: Optional[str] = None,
    ) -> Order:
        self._maybe_fail("place_limit_order")
        order = self._new_order(symbol, side, "LIMIT", quantity, price, client_order_id)
        return Order.from_exchange(order)

    def place_oco_sell(
        self,
        symbol: str,
        quantity: Decimal,
        take_profit: Decimal,
        stop_price: Decimal,
        stop_limit_price: Decimal,
    ) -> OcoExit:
        self._maybe_fail("place_oco_sell")
        self.oco_calls.append(
            {
                "symbol": symbol,
                "quantity": quantity,
                "take_profit": take_profit,
                "stop_price": stop_price,
                "stop_limit_price": stop_limit_price,
            }
        )
        list_id = next(self._list_ids)
        stop_leg = self._new_order(
            symbol, OrderSide.SELL, "STOP_LOSS_LIMIT", quantity, stop_limit_price, None,
            order_list_id=list_id, stop_price=stop_price,
        )
        tp_leg = self._new_order(
            symbol, OrderSide.SELL, "LIMIT_MAKER", quantity, take_profit, None, order_list_id=list_id
        )
        payload = {
            "orderListId": list_id,
            "contingencyType": "OCO",
            "listStatusType": "EXEC_STARTED",
            "listOrderStatus": "EXECUTING",
            "symbol": symbol,
            "orders": [
                {"symbol": symbol, "orderId": o["orderId"], "clientOrderId": o["clientOrderId"]}
                for o in (stop_leg, tp_leg)
            ],
        }
        self.order_lists[list_id] = payload
        return OcoExit.from_exchange(payload)

    def get_order(
        self, symbol: str, order_id: Optional[int] = None, client_order_id: Optional[str] = None
    ) -> Order:
        self._maybe_fail("get_order")
        return Order.from_exchange(self._lookup(order_id, client_order_id))

    def cancel_order(
        self, symbol: str, order_id: Optional[int] = None, client_order_id: Optional[str] = None
    ) -> Order:
        self._maybe_fail("cancel_order")
        order = self._lookup(order_id, client_order_id)
        if order["status"] not in ("NEW", "PARTIALLY_FILLED"):
            raise ExchangeAPIError("Unknown order sent.", status=400, code=-2011)
        order["status"] = "CANCELED"
        order["transactTime"] = self._now_ms()
        self.cancel_calls.append(order["orderId"])
        return Order.from_exchange(order)

    def get_open_orders(self, symbol: str) -> List[Order]:
        self._maybe_fail("get_open_orders")
        return [
            Order.from_exchange(o)
            for o in self.orders.values()
            if o["symbol"] == symbol and o["status"] in ("NEW", "PARTIALLY_FILLED")
        ]


class OrderExecutor:
    """Places entry orders for admitted proposals and OCO exits for filled buys.

    Args:
        adapter: Exchange gateway
        symbol: Trading pair, e.g. "ETHUSDC"
        rules_cache: Trading rules source; built from the adapter if omitted
        stop_limit_offset: Stop-limit leg priced this fraction below the stop trigger
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        symbol: str,
        rules_cache: Optional[TradingRulesCache] = None,
        *,
        stop_limit_offset: Decimal = Decimal("0.005"),
    ):
        self.adapter = adapter
        self.symbol = symbol
        self.rules_cache = rules_cache or TradingRulesCache(adapter.get_trading_rules)
        self.stop_limit_offset = stop_limit_offset

    @property
    def trading_rules(self) -> TradingRules:
        return self.rules_cache.get(self.symbol)

    def current_price(self) -> Decimal:
        return self.adapter.get_current_price(self.symbol)

    def trade_fee(self) -> TradeFee:
        return self.adapter.get_trade_fee(self.symbol)

    def execute(self, proposal: Proposal) -> Order:
        """Place the entry order for an admitted proposal.

        Raises:
            OrderValidationError: HOLD signal, missing amount or LIMIT price,
                or a size below exchange minimums (no order is sent)
            ExchangeAPIError: The exchange rejected or failed the request
        """
        if proposal.signal == Signal.HOLD:
            raise OrderValidationError("Cannot execute a HOLD proposal")
        if proposal.amount is None or proposal.amount <= 0 or proposal.amount_unit == AmountUnit.NONE:
            raise OrderValidationError("Proposal has no executable amount")

        entry_type = proposal.entry_type or EntryType.MARKET
        if entry_type == EntryType.LIMIT and (proposal.entry_price is None or proposal.entry_price <= 0):
            raise OrderValidationError("LIMIT entry requires an entry price")

        rules = self.trading_rules
        if proposal.signal == Signal.BUY:
            if entry_type == EntryType.MARKET:
                order = self._market_buy(proposal, rules)
            else:
                order = self._limit_order(OrderSide.BUY, proposal, rules)
        else:
            if entry_type == EntryType.MARKET:
                order = self._market_sell(proposal, rules)
            else:
                order = self._limit_order(OrderSide.SELL, proposal, rules)

        logger.info(
            f"Entry order placed | order_id={order.order_id} side={proposal.signal.value} "
            f"type={entry_type.value} status={order.status.value} executed_qty={order.executed_quantity}"
        )
        return order

    def _market_buy(self, proposal: Proposal, rules: TradingRules) -> Order:
        if proposal.amount_unit == AmountUnit.QUOTE:
            quote_amount = proposal.amount
        else:
            quote_amount = proposal.amount * self.current_price()
        check_quote_amount(quote_amount, rules)
        quote_amount = normalize_quote_amount(quote_amount, rules)
        return self.adapter.place_market_buy_quote(
            self.symbol, quote_amount, client_order_id=new_client_order_id()
        )

    def _market_sell(self, proposal: Proposal, rules: TradingRules) -> Order:
        price = self.current_price()
        if proposal.amount_unit == AmountUnit.QUOTE:
            quantity = quote_to_base(proposal.amount, price, rules)
        else:
            quantity = normalize_quantity(proposal.amount, rules)
        check_notional(quantity, price, rules)
        return self.adapter.place_market_order(
            self.symbol, OrderSide.SELL, quantity, client_order_id=new_client_order_id()
        )

    def _limit_order(self, side: OrderSide, proposal: Proposal, rules: TradingRules) -> Order:
        price = normalize_price(proposal.entry_price, rules)
        if proposal.amount_unit == AmountUnit.QUOTE:
            quantity = quote_to_base(proposal.amount, price, rules)
        else:
            quantity = normalize_quantity(proposal.amount, rules)
        check_notional(quantity, price, rules)
        return self.adapter.place_limit_order(
            self.symbol, side, quantity, price, client_order_id=new_client_order_id()
        )

    def place_exit(self, filled_quantity: Decimal, take_profit: Decimal, stop_loss: Decimal) -> OcoExit:
        """Place the OCO exit (take-profit + stop-limit) for a filled buy.

        Callers must guarantee this runs at most once per fill.
        """
        rules = self.trading_rules
        quantity = normalize_quantity(filled_quantity, rules)
        tp_price = normalize_price(take_profit, rules)
        stop_price = normalize_price(stop_loss, rules)
        stop_limit_price = normalize_price(stop_loss * (Decimal(1) - self.stop_limit_offset), rules)

        oco = self.adapter.place_oco_sell(self.symbol, quantity, tp_price, stop_price, stop_limit_price)
        logger.info(
            f"OCO exit placed | order_list_id={oco.order_list_id} qty={quantity} tp={tp_price} "
            f"stop={stop_price} stop_limit={stop_limit_price}"
        )
        return oco

    def get_order(self, order_id: Optional[int] = None, client_order_id: Optional[str] = None) -> Order:
        return self.adapter.get_order(self.symbol, order_id=order_id, client_order_id=client_order_id)

    def cancel(self, order_id: Optional[int] = None, client_order_id: Optional[str] = None) -> Order:
        order = self.adapter.cancel_order(self.symbol, order_id=order_id, client_order_id=client_order_id)
        logger.info(f"Order canceled | order_id={order.order_id} status={order.status.value}")
        return order
