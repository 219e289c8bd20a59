"""
Quantity and price normalization against exchange trading rules.

All rounding is truncation (ROUND_DOWN): an order is never sized or priced
above what the caller asked for. Normalization is idempotent, so normalized
values can be passed through again safely.
"""

import threading
from decimal import Decimal, ROUND_DOWN
from typing import Callable, Dict, Iterable, Optional

from .errors import BelowMinimumError, OrderValidationError
from .logging_setup import logger
from .models import TradingRules


def _truncate_to_step(value: Decimal, step: Decimal, places: int) -> Decimal:
    quantum = Decimal(1).scaleb(-places)
    if step > 0:
        value = (value / step).to_integral_value(rounding=ROUND_DOWN) * step
    return value.quantize(quantum, rounding=ROUND_DOWN)


def normalize_quantity(raw: Decimal, rules: TradingRules) -> Decimal:
    """Truncate a base quantity to the symbol's lot size.

    Raises:
        BelowMinimumError: If the truncated quantity is zero or below minQty
    """
    if raw is None or raw <= 0:
        raise BelowMinimumError(f"Quantity must be positive, got {raw}")
    qty = _truncate_to_step(Decimal(raw), rules.quantity_step, rules.quantity_precision)
    if qty <= 0 or qty < rules.min_quantity:
        raise BelowMinimumError(
            f"Quantity {qty} below minimum {rules.min_quantity} for {rules.symbol}"
        )
    return qty


def normalize_price(raw: Decimal, rules: TradingRules) -> Decimal:
    if raw is None or raw <= 0:
        raise OrderValidationError(f"Price must be positive, got {raw}")
    return _truncate_to_step(Decimal(raw), rules.price_step, rules.price_precision)


def check_notional(quantity: Decimal, price: Decimal, rules: TradingRules) -> Decimal:
    """Return quantity * price, raising if it is below the symbol's minimum notional."""
    notional = quantity * price
    if notional < rules.min_notional:
        raise BelowMinimumError(
            f"Order notional {notional:.8f} below minimum {rules.min_notional} for {rules.symbol}"
        )
    return notional


def check_quote_amount(amount: Decimal, rules: TradingRules) -> None:
    if amount is None or amount < rules.min_notional:
        raise BelowMinimumError(
            f"Quote amount {amount} below minimum notional {rules.min_notional} for {rules.symbol}"
        )


def normalize_quote_amount(amount: Decimal, rules: TradingRules) -> Decimal:
    """Truncate a quote-currency amount (quoteOrderQty) to price precision."""
    return Decimal(amount).quantize(Decimal(1).scaleb(-rules.price_precision), rounding=ROUND_DOWN)


def quote_to_base(amount: Decimal, price: Decimal, rules: TradingRules) -> Decimal:
    """Convert a quote amount into a normalized base quantity at the given price."""
    if price is None or price <= 0:
        raise OrderValidationError(f"Cannot convert quote amount at price {price}")
    return normalize_quantity(amount / price, rules)


class TradingRulesCache:
    """Per-symbol trading rules, fetched once and read lock-free.

    Readers see a dict snapshot; writers build a new dict and swap the
    reference under a lock, so a reader never observes a half-built mapping.
    """

    def __init__(self, loader: Callable[[str], TradingRules], use_defaults_on_error: bool = True):
        self._loader = loader
        self._use_defaults = use_defaults_on_error
        self._rules: Dict[str, TradingRules] = {}
        self._write_lock = threading.Lock()

    def _fetch(self, symbol: str) -> TradingRules:
        try:
            rules = self._loader(symbol)
        except Exception as e:
            if not self._use_defaults:
                raise
            logger.warning(f"Trading rules fetch failed, using defaults | symbol={symbol} error={e}")
            return TradingRules.defaults(symbol)
        logger.info(
            f"Trading rules loaded | symbol={symbol} qty_step={rules.quantity_step} "
            f"min_qty={rules.min_quantity} min_notional={rules.min_notional} price_step={rules.price_step}"
        )
        return rules

    def load(self, symbols: Iterable[str]) -> None:
        """Fetch rules for symbols not yet cached."""
        with self._write_lock:
            missing = [s for s in symbols if s not in self._rules]
            if not missing:
                return
            updated = dict(self._rules)
            for symbol in missing:
                updated[symbol] = self._fetch(symbol)
            self._rules = updated

    def refresh(self, symbols: Optional[Iterable[str]] = None) -> None:
        """Re-fetch rules and replace the snapshot atomically."""
        with self._write_lock:
            targets = list(symbols) if symbols is not None else list(self._rules)
            updated = dict(self._rules)
            for symbol in targets:
                updated[symbol] = self._fetch(symbol)
            self._rules = updated

    def get(self, symbol: str) -> TradingRules:
        rules = self._rules.get(symbol)
        if rules is None:
            self.load([symbol])
            rules = self._rules[symbol]
        return rules

    def snapshot(self) -> Dict[str, TradingRules]:
        return self._rules
