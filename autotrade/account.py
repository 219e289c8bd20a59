"""Account summary: balances of the traded pair and their valuation."""
from dataclasses import dataclass
from decimal import Decimal

from .execution import ExchangeAdapter
from .models import TradingRules


@dataclass
class AccountSummary:
    symbol: str
    base_asset: str
    quote_asset: str
    base_free: Decimal
    base_locked: Decimal
    quote_free: Decimal
    quote_locked: Decimal
    price: Decimal

    @property
    def base_total(self) -> Decimal:
        return self.base_free + self.base_locked

    @property
    def quote_total(self) -> Decimal:
        return self.quote_free + self.quote_locked

    @property
    def base_value(self) -> Decimal:
        """Base holdings valued in the quote asset."""
        return self.base_total * self.price

    @property
    def free_value(self) -> Decimal:
        return self.quote_free + self.base_free * self.price

    @property
    def total_value(self) -> Decimal:
        return self.quote_total + self.base_value


def summarize_account(adapter: ExchangeAdapter, rules: TradingRules) -> AccountSummary:
    """Fetch balances for the pair's assets and value them at the current price.

    Raises:
        ConfigurationError: Credentials missing (account endpoint is signed)
        ExchangeAPIError: Exchange request failed
    """
    account = adapter.get_account()
    price = adapter.get_current_price(rules.symbol)
    base = account.balance(rules.base_asset)
    quote = account.balance(rules.quote_asset)
    return AccountSummary(
        symbol=rules.symbol,
        base_asset=rules.base_asset,
        quote_asset=rules.quote_asset,
        base_free=base.free,
        base_locked=base.locked,
        quote_free=quote.free,
        quote_locked=quote.locked,
        price=price,
    )
