"""
Domain types shared by the gateway, executor, store and reconciliation loop.

Exchange-side values (order status, order type) are closed enums parsed through
explicit mapping tables; an unrecognized value raises UnexpectedResponseError
instead of flowing through the system as free text.

Proposals are pydantic models: they arrive as structured JSON from the decision
source and are validated before any other processing.

Examples:
    >>> from decimal import Decimal
    >>> OrderStatus.parse("PARTIALLY_FILLED").is_pending
    True
    >>> p = Proposal(signal="BUY", confidence="HIGH", amount=Decimal("100"),
    ...              amountType="USD", stopLoss=Decimal("1900"),
    ...              takeProfit1=Decimal("2000"), expectedRiskReward=Decimal("2.5"))
    >>> p.amount_unit
    <AmountUnit.QUOTE: 'QUOTE'>
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .errors import UnexpectedResponseError
from .logging_setup import logger

MAX_MEMORY_ITEMS = 3


class Signal(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class Confidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class AmountUnit(str, Enum):
    """Unit of a proposal amount: quote currency (USDC), base currency (ETH) or none."""

    QUOTE = "QUOTE"
    BASE = "BASE"
    NONE = "NONE"


_AMOUNT_UNIT_ALIASES = {
    "USD": AmountUnit.QUOTE,
    "USDC": AmountUnit.QUOTE,
    "USDT": AmountUnit.QUOTE,
    "ETH": AmountUnit.BASE,
    "BTC": AmountUnit.BASE,
}


class EntryType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def parse(cls, value: Any) -> "OrderSide":
        try:
            return cls(str(value).upper())
        except ValueError:
            raise UnexpectedResponseError(f"Unrecognized order side: {value!r}")


class OrderStatus(str, Enum):
    """Order lifecycle status as reported by the exchange."""

    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"
    REJECTED = "REJECTED"

    @classmethod
    def parse(cls, value: Any) -> "OrderStatus":
        try:
            return _ORDER_STATUS_TABLE[str(value).upper()]
        except KeyError:
            raise UnexpectedResponseError(f"Unrecognized order status: {value!r}")

    @property
    def is_pending(self) -> bool:
        return self in (OrderStatus.NEW, OrderStatus.PARTIALLY_FILLED)

    @property
    def is_terminal(self) -> bool:
        return not self.is_pending


_ORDER_STATUS_TABLE = {
    "NEW": OrderStatus.NEW,
    "PARTIALLY_FILLED": OrderStatus.PARTIALLY_FILLED,
    "FILLED": OrderStatus.FILLED,
    "CANCELED": OrderStatus.CANCELED,
    # unused on spot; the cancel request has already been accepted
    "PENDING_CANCEL": OrderStatus.CANCELED,
    "EXPIRED": OrderStatus.EXPIRED,
    "EXPIRED_IN_MATCH": OrderStatus.EXPIRED,
    "REJECTED": OrderStatus.REJECTED,
}


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    LIMIT_MAKER = "LIMIT_MAKER"
    STOP_LOSS = "STOP_LOSS"
    STOP_LOSS_LIMIT = "STOP_LOSS_LIMIT"
    TAKE_PROFIT = "TAKE_PROFIT"
    TAKE_PROFIT_LIMIT = "TAKE_PROFIT_LIMIT"

    @classmethod
    def parse(cls, value: Any) -> "OrderType":
        try:
            return cls(str(value).upper())
        except ValueError:
            raise UnexpectedResponseError(f"Unrecognized order type: {value!r}")


def to_decimal(value: Any, name: str = "value") -> Optional[Decimal]:
    """Parse an exchange numeric field (string or number) into a Decimal."""
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise UnexpectedResponseError(f"Malformed decimal for {name}: {value!r}")


def to_int(value: Any, name: str = "value") -> Optional[int]:
    """Parse an exchange integer field (id or millisecond timestamp)."""
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise UnexpectedResponseError(f"Malformed integer for {name}: {value!r}")


def from_millis(ms: Optional[int]) -> Optional[datetime]:
    if not ms:
        return None
    return datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc)


def step_precision(step: Decimal) -> int:
    """Number of decimal places in an exchange step size (0.0001 -> 4, 1 -> 0)."""
    normalized = step.normalize()
    exponent = normalized.as_tuple().exponent
    return max(0, -exponent)


class Proposal(BaseModel):
    """AI-generated trade proposal.

    Accepts both snake_case and the camelCase names used on the wire. The
    amount unit also accepts currency names (USD/USDC → QUOTE, ETH → BASE).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    signal: Signal
    confidence: Confidence
    amount: Optional[Decimal] = None
    amount_unit: AmountUnit = Field(
        default=AmountUnit.NONE,
        validation_alias=AliasChoices("amountUnit", "amountType", "amount_unit"),
    )
    entry_type: Optional[EntryType] = None
    entry_price: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    take_profit1: Optional[Decimal] = None
    take_profit2: Optional[Decimal] = None
    expected_risk_reward: Optional[Decimal] = None
    time_horizon_minutes: Optional[int] = None
    reasoning: str = ""
    memory: List[str] = Field(default_factory=list)

    @field_validator("amount_unit", mode="before")
    @classmethod
    def _resolve_amount_unit(cls, value: Any) -> Any:
        if value is None:
            return AmountUnit.NONE
        if isinstance(value, str):
            return _AMOUNT_UNIT_ALIASES.get(value.upper(), value.upper())
        return value

    @field_validator("memory", mode="before")
    @classmethod
    def _truncate_memory(cls, value: Any) -> Any:
        if value is None:
            return []
        if len(value) > MAX_MEMORY_ITEMS:
            logger.warning(f"Proposal memory truncated | items={len(value)} kept={MAX_MEMORY_ITEMS}")
            return list(value)[:MAX_MEMORY_ITEMS]
        return value

    @property
    def is_limit(self) -> bool:
        return self.entry_type == EntryType.LIMIT

    def is_actionable(self, min_risk_reward: Decimal = Decimal("2.0")) -> bool:
        return actionable_problem(self, min_risk_reward) is None

    def to_display_string(self) -> str:
        if self.amount is None:
            amount_str = "NONE"
        elif self.amount_unit == AmountUnit.QUOTE:
            amount_str = f"{self.amount:.2f} QUOTE"
        else:
            amount_str = f"{self.amount:.5f} BASE"

        def _fmt(label: str, value: Optional[Decimal]) -> str:
            return f"{label}: {value:.2f}" if value is not None else f"{label}: -"

        entry = "ENTRY: -"
        if self.entry_type is not None:
            entry = f"ENTRY: {self.entry_type.value}"
            if self.entry_price is not None:
                entry += f" @ {self.entry_price:.2f}"
        horizon = "HORIZON: -"
        if self.time_horizon_minutes is not None:
            horizon = f"HORIZON: {self.time_horizon_minutes}m"
        rr = f"R/R: {self.expected_risk_reward}" if self.expected_risk_reward is not None else "R/R: -"
        return (
            f"SIGNAL: {self.signal.value}\n"
            f"CONFIDENCE: {self.confidence.value}\n"
            f"AMOUNT: {amount_str}\n"
            f"{_fmt('SL', self.stop_loss)} | {_fmt('TP1', self.take_profit1)} | {_fmt('TP2', self.take_profit2)}\n"
            f"{entry} | {horizon} | {rr}\n"
            f"REASONING:\n{self.reasoning}\n"
        )


def actionable_problem(proposal: Proposal, min_risk_reward: Decimal = Decimal("2.0")) -> Optional[str]:
    """Return why a proposal is not actionable, or None if it is."""
    if proposal.signal not in (Signal.BUY, Signal.SELL):
        return "Signal is HOLD - no action needed"
    if proposal.amount is None or proposal.amount <= 0 or proposal.amount_unit == AmountUnit.NONE:
        return "No amount specified or invalid amount"
    if proposal.stop_loss is None or proposal.take_profit1 is None:
        return "Missing stop-loss or take-profit target"
    if proposal.expected_risk_reward is None or proposal.expected_risk_reward < min_risk_reward:
        return (
            f"Expected risk/reward {proposal.expected_risk_reward} "
            f"below minimum {min_risk_reward}"
        )
    if proposal.is_limit and (proposal.entry_price is None or proposal.entry_price <= 0):
        return "LIMIT entry requires an entry price"
    return None


@dataclass(frozen=True)
class TradingRules:
    """Per-symbol exchange trading rules (LOT_SIZE, MIN_NOTIONAL, PRICE_FILTER).

    Invariants:
        - quantities sent to the exchange are multiples of quantity_step and >= min_quantity
        - prices are representable at price_step precision
    """

    symbol: str
    quantity_step: Decimal
    min_quantity: Decimal
    min_notional: Decimal
    price_step: Decimal
    base_asset: str = ""
    quote_asset: str = ""

    @property
    def quantity_precision(self) -> int:
        return step_precision(self.quantity_step)

    @property
    def price_precision(self) -> int:
        return step_precision(self.price_step)

    @classmethod
    def defaults(cls, symbol: str) -> "TradingRules":
        """Fallback rules used when the exchange cannot be reached at startup."""
        return cls(
            symbol=symbol,
            quantity_step=Decimal("0.00001"),
            min_quantity=Decimal("0.00001"),
            min_notional=Decimal("5.00"),
            price_step=Decimal("0.01"),
        )

    @classmethod
    def from_symbol_info(cls, info: Dict[str, Any]) -> "TradingRules":
        """Build rules from one entry of /api/v3/exchangeInfo ``symbols``."""
        symbol = info.get("symbol")
        if not symbol:
            raise UnexpectedResponseError("exchangeInfo symbol entry has no symbol")
        fallback = cls.defaults(symbol)
        filters = {f.get("filterType"): f for f in info.get("filters", [])}

        lot = filters.get("LOT_SIZE")
        if lot:
            quantity_step = to_decimal(lot.get("stepSize"), "stepSize") or fallback.quantity_step
            min_quantity = to_decimal(lot.get("minQty"), "minQty") or fallback.min_quantity
        else:
            logger.warning(f"LOT_SIZE filter missing, using defaults | symbol={symbol}")
            quantity_step, min_quantity = fallback.quantity_step, fallback.min_quantity

        notional = filters.get("MIN_NOTIONAL") or filters.get("NOTIONAL")
        if notional:
            min_notional = to_decimal(notional.get("minNotional"), "minNotional") or Decimal("0")
        else:
            logger.warning(f"MIN_NOTIONAL filter missing, using defaults | symbol={symbol}")
            min_notional = fallback.min_notional

        price = filters.get("PRICE_FILTER")
        if price:
            price_step = to_decimal(price.get("tickSize"), "tickSize") or fallback.price_step
        else:
            logger.warning(f"PRICE_FILTER missing, using defaults | symbol={symbol}")
            price_step = fallback.price_step

        return cls(
            symbol=symbol,
            quantity_step=quantity_step,
            min_quantity=min_quantity,
            min_notional=min_notional,
            price_step=price_step,
            base_asset=info.get("baseAsset", ""),
            quote_asset=info.get("quoteAsset", ""),
        )


@dataclass
class Order:
    """Exchange-side order, referenced but never owned by the engine."""

    order_id: int
    symbol: str
    status: OrderStatus
    client_order_id: Optional[str] = None
    side: Optional[OrderSide] = None
    type: Optional[OrderType] = None
    price: Decimal = Decimal("0")
    orig_quantity: Decimal = Decimal("0")
    executed_quantity: Decimal = Decimal("0")
    cumulative_quote_quantity: Decimal = Decimal("0")
    order_list_id: Optional[int] = None
    transact_time: Optional[int] = None
    time: Optional[int] = None

    @property
    def is_filled(self) -> bool:
        return self.status == OrderStatus.FILLED

    @property
    def average_price(self) -> Decimal:
        if not self.executed_quantity:
            return Decimal("0")
        return (self.cumulative_quote_quantity / self.executed_quantity).quantize(
            Decimal("0.00000001"), rounding=ROUND_HALF_UP
        )

    @property
    def placed_at(self) -> Optional[datetime]:
        return from_millis(self.time or self.transact_time)

    @classmethod
    def from_exchange(cls, payload: Dict[str, Any]) -> "Order":
        if not isinstance(payload, dict):
            raise UnexpectedResponseError(f"Order payload is not an object: {payload!r}")
        if payload.get("orderId") is None or payload.get("status") is None:
            raise UnexpectedResponseError(f"Order payload missing orderId/status: {payload!r}")
        side = payload.get("side")
        order_type = payload.get("type")
        order_list_id = to_int(payload.get("orderListId"), "orderListId")
        return cls(
            order_id=to_int(payload["orderId"], "orderId"),
            symbol=payload.get("symbol", ""),
            status=OrderStatus.parse(payload["status"]),
            client_order_id=payload.get("clientOrderId"),
            side=OrderSide.parse(side) if side else None,
            type=OrderType.parse(order_type) if order_type else None,
            price=to_decimal(payload.get("price"), "price") or Decimal("0"),
            orig_quantity=to_decimal(payload.get("origQty"), "origQty") or Decimal("0"),
            executed_quantity=to_decimal(payload.get("executedQty"), "executedQty") or Decimal("0"),
            cumulative_quote_quantity=(
                to_decimal(payload.get("cummulativeQuoteQty"), "cummulativeQuoteQty") or Decimal("0")
            ),
            order_list_id=order_list_id if order_list_id != -1 else None,
            transact_time=to_int(payload.get("transactTime"), "transactTime"),
            time=to_int(payload.get("time"), "time"),
        )


@dataclass
class OcoChild:
    order_id: int
    client_order_id: Optional[str] = None


@dataclass
class OcoExit:
    """OCO exit pair: take-profit limit leg plus stop-limit leg."""

    order_list_id: int
    list_status_type: str = ""
    list_order_status: str = ""
    orders: List[OcoChild] = field(default_factory=list)

    @classmethod
    def from_exchange(cls, payload: Dict[str, Any]) -> "OcoExit":
        if not isinstance(payload, dict) or payload.get("orderListId") is None:
            raise UnexpectedResponseError(f"OCO payload missing orderListId: {payload!r}")
        children = []
        orders = payload.get("orders") or []
        if not isinstance(orders, list):
            raise UnexpectedResponseError(f"OCO orders is not a list: {orders!r}")
        for child in orders:
            if not isinstance(child, dict) or child.get("orderId") is None:
                raise UnexpectedResponseError(f"OCO child missing orderId: {child!r}")
            children.append(
                OcoChild(order_id=to_int(child["orderId"], "orderId"), client_order_id=child.get("clientOrderId"))
            )
        return cls(
            order_list_id=to_int(payload["orderListId"], "orderListId"),
            list_status_type=payload.get("listStatusType", ""),
            list_order_status=payload.get("listOrderStatus", ""),
            orders=children,
        )


@dataclass(frozen=True)
class TradeFee:
    """Maker/taker commission as fractions (0.001 == 0.1%)."""

    symbol: str
    maker: Decimal
    taker: Decimal

    @property
    def round_trip(self) -> Decimal:
        # both legs assumed to fill as taker
        return self.taker * 2

    @classmethod
    def from_exchange(cls, payload: Dict[str, Any]) -> "TradeFee":
        try:
            return cls(
                symbol=payload["symbol"],
                maker=to_decimal(payload["makerCommission"], "makerCommission"),
                taker=to_decimal(payload["takerCommission"], "takerCommission"),
            )
        except (KeyError, TypeError):
            raise UnexpectedResponseError(f"Trade fee payload malformed: {payload!r}")


@dataclass
class Balance:
    asset: str
    free: Decimal = Decimal("0")
    locked: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.free + self.locked


@dataclass
class AccountInfo:
    """Account snapshot from /api/v3/account (commissions in basis points)."""

    maker_commission_bps: int = 0
    taker_commission_bps: int = 0
    can_trade: bool = False
    balances: Dict[str, Balance] = field(default_factory=dict)

    def balance(self, asset: str) -> Balance:
        return self.balances.get(asset, Balance(asset=asset))

    def trade_fee(self, symbol: str) -> TradeFee:
        return TradeFee(
            symbol=symbol,
            maker=Decimal(self.maker_commission_bps) / Decimal(10000),
            taker=Decimal(self.taker_commission_bps) / Decimal(10000),
        )

    @classmethod
    def from_exchange(cls, payload: Dict[str, Any]) -> "AccountInfo":
        if not isinstance(payload, dict):
            raise UnexpectedResponseError(f"Account payload is not an object: {payload!r}")
        balances = {}
        for b in payload.get("balances") or []:
            asset = b.get("asset")
            if not asset:
                continue
            balances[asset] = Balance(
                asset=asset,
                free=to_decimal(b.get("free"), "free") or Decimal("0"),
                locked=to_decimal(b.get("locked"), "locked") or Decimal("0"),
            )
        return cls(
            maker_commission_bps=int(payload.get("makerCommission") or 0),
            taker_commission_bps=int(payload.get("takerCommission") or 0),
            can_trade=bool(payload.get("canTrade")),
            balances=balances,
        )
