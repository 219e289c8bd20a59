from decimal import Decimal

import pytest

from autotrade.admission import AdmissionController, pct_to_target
from autotrade.errors import ExchangeAPIError
from autotrade.models import Proposal, TradeFee


def make_proposal(**overrides):
    data = {
        "signal": "BUY",
        "confidence": "HIGH",
        "amount": "100",
        "amountType": "USDC",
        "stopLoss": "1900",
        "takeProfit1": "2000",
        "expectedRiskReward": "2.5",
    }
    data.update(overrides)
    return Proposal.model_validate(data)


class FeeSource:
    def __init__(self, fee=None, error=None):
        self.fee = fee
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.fee


@pytest.fixture
def fees():
    return FeeSource(TradeFee(symbol="ETHUSDC", maker=Decimal("0.001"), taker=Decimal("0.001")))


def controller(fee_source, price=Decimal("1950"), **kwargs):
    return AdmissionController(fee_source, lambda: price, **kwargs)


def test_pct_to_target():
    assert pct_to_target(Decimal("1950"), Decimal("2000")) == Decimal("0.02564103")
    assert pct_to_target(Decimal("2000"), Decimal("1950")) == Decimal("0")
    assert pct_to_target(Decimal("0"), Decimal("1")) == Decimal("0")


def test_admits_actionable_buy(fees):
    decision = controller(fees).evaluate(make_proposal())
    assert decision.admitted
    assert decision.reason == ""
    assert decision.fee_check.round_trip_fee == Decimal("0.002")
    assert decision.fee_check.entry_price == Decimal("1950")
    assert fees.calls == 1


def test_rejects_hold_without_fetching_fees(fees):
    decision = controller(fees).evaluate(make_proposal(signal="HOLD"))
    assert not decision.admitted
    assert decision.reason == "Signal is HOLD - no action needed"
    assert fees.calls == 0


def test_rejects_low_confidence(fees):
    ctl = controller(fees)
    p = make_proposal(confidence="LOW")
    assert not ctl.should_execute(p)
    assert ctl.skip_reason(p) == "Confidence too low (LOW) - minimum MEDIUM required"
    assert ctl.evaluate(p).reason == "Confidence too low (LOW) - minimum MEDIUM required"


def test_medium_confidence_admitted(fees):
    assert controller(fees).should_execute(make_proposal(confidence="MEDIUM"))


def test_not_actionable_reported_before_confidence(fees):
    decision = controller(fees).evaluate(make_proposal(confidence="LOW", stopLoss=None))
    assert decision.reason == "Missing stop-loss or take-profit target"


def test_min_risk_reward_threshold(fees):
    p = make_proposal(expectedRiskReward="1.8")
    assert not controller(fees).should_execute(p)
    assert controller(fees, min_risk_reward=Decimal("1.5")).should_execute(p)


def test_fee_gate_rejects_thin_target(fees):
    # 0.1% to TP1 vs 0.2% round trip
    decision = controller(fees, price=Decimal("1998")).evaluate(make_proposal())
    assert not decision.admitted
    assert decision.reason == "TP1 (0.10%) does not clear round-trip fees (0.20%)"


def test_fee_gate_uses_limit_price(fees):
    p = make_proposal(entryType="LIMIT", entryPrice="1999")
    check = controller(fees, price=Decimal("1800")).fee_check(p)
    assert check.entry_price == Decimal("1999")
    assert not check.passes


def test_fee_gate_skipped_for_sell(fees):
    p = make_proposal(signal="SELL", amountType="ETH", amount="0.05")
    assert controller(fees).fee_check(p) is None
    assert controller(fees).should_execute(p)
    assert fees.calls == 0


def test_fee_unavailable_fails_open_by_default():
    fees = FeeSource(error=ExchangeAPIError("Service unavailable", status=503))
    decision = controller(fees).evaluate(make_proposal())
    assert decision.admitted
    assert not decision.fee_check.available
    assert "Service unavailable" in decision.fee_check.error


def test_fee_unavailable_fail_closed():
    fees = FeeSource(error=ExchangeAPIError("Service unavailable", status=503))
    decision = controller(fees, fail_closed=True).evaluate(make_proposal())
    assert not decision.admitted
    assert decision.reason == "Fee data unavailable - fee gate is fail-closed"
