from decimal import Decimal

import pytest

from autotrade.errors import BelowMinimumError, OrderValidationError
from autotrade.models import TradingRules
from autotrade.normalizer import (
    TradingRulesCache,
    check_notional,
    check_quote_amount,
    normalize_price,
    normalize_quantity,
    normalize_quote_amount,
    quote_to_base,
)


@pytest.fixture
def rules():
    return TradingRules(
        symbol="ETHUSDC",
        quantity_step=Decimal("0.0001"),
        min_quantity=Decimal("0.0001"),
        min_notional=Decimal("5"),
        price_step=Decimal("0.01"),
    )


def test_normalize_quantity_truncates_to_step(rules):
    assert normalize_quantity(Decimal("0.123456"), rules) == Decimal("0.1234")


def test_normalize_quantity_is_idempotent(rules):
    once = normalize_quantity(Decimal("1.98765"), rules)
    assert normalize_quantity(once, rules) == once


def test_normalize_quantity_below_minimum_raises(rules):
    with pytest.raises(BelowMinimumError):
        normalize_quantity(Decimal("0.00005"), rules)


def test_normalize_quantity_non_positive_raises(rules):
    with pytest.raises(BelowMinimumError):
        normalize_quantity(Decimal("0"), rules)
    with pytest.raises(BelowMinimumError):
        normalize_quantity(Decimal("-1"), rules)


def test_normalize_quantity_coarse_step():
    rules = TradingRules(
        symbol="XYZUSDC",
        quantity_step=Decimal("0.5"),
        min_quantity=Decimal("0.5"),
        min_notional=Decimal("1"),
        price_step=Decimal("0.01"),
    )
    assert normalize_quantity(Decimal("1.7"), rules) == Decimal("1.5")


def test_normalize_price_truncates(rules):
    assert normalize_price(Decimal("1999.999"), rules) == Decimal("1999.99")
    assert normalize_price(Decimal("2000"), rules) == Decimal("2000.00")


def test_normalize_price_rejects_non_positive(rules):
    with pytest.raises(OrderValidationError):
        normalize_price(Decimal("0"), rules)


def test_check_notional(rules):
    assert check_notional(Decimal("0.01"), Decimal("2000"), rules) == Decimal("20.00")
    with pytest.raises(BelowMinimumError):
        check_notional(Decimal("0.001"), Decimal("2000"), rules)


def test_quote_amount_checks(rules):
    check_quote_amount(Decimal("5"), rules)
    with pytest.raises(BelowMinimumError):
        check_quote_amount(Decimal("4.99"), rules)
    assert normalize_quote_amount(Decimal("100.129"), rules) == Decimal("100.12")


def test_quote_to_base(rules):
    assert quote_to_base(Decimal("100"), Decimal("1950"), rules) == Decimal("0.0512")
    with pytest.raises(OrderValidationError):
        quote_to_base(Decimal("100"), Decimal("0"), rules)


def test_rules_cache_loads_once(rules):
    calls = []

    def loader(symbol):
        calls.append(symbol)
        return rules

    cache = TradingRulesCache(loader)
    assert cache.get("ETHUSDC") is rules
    assert cache.get("ETHUSDC") is rules
    assert calls == ["ETHUSDC"]

    cache.refresh()
    assert calls == ["ETHUSDC", "ETHUSDC"]
    assert set(cache.snapshot()) == {"ETHUSDC"}


def test_rules_cache_falls_back_to_defaults():
    def loader(symbol):
        raise RuntimeError("exchange down")

    cache = TradingRulesCache(loader)
    rules = cache.get("ETHUSDC")
    assert rules == TradingRules.defaults("ETHUSDC")
    assert rules.min_notional == Decimal("5.00")


def test_rules_cache_can_propagate_errors():
    def loader(symbol):
        raise RuntimeError("exchange down")

    cache = TradingRulesCache(loader, use_defaults_on_error=False)
    with pytest.raises(RuntimeError):
        cache.get("ETHUSDC")
