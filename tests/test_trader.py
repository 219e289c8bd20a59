import json
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from autotrade.admission import AdmissionController
from autotrade.errors import ExchangeAPIError, InvalidProposalError
from autotrade.execution import InMemoryAdapter, OrderExecutor
from autotrade.models import OrderStatus, TradeFee, TradingRules
from autotrade.notifications import EventKind, RecordingNotifier
from autotrade.persistence_sqlite import RecommendationStore
from autotrade.reconciliation import ReconciliationLoop
from autotrade.trader import (
    AutomatedTrader,
    CycleStatus,
    DecisionSource,
    JsonFileDecisionSource,
    StaticDecisionSource,
    parse_proposal,
)

SYMBOL = "ETHUSDC"
T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

BUY_PROPOSAL = {
    "signal": "BUY",
    "confidence": "HIGH",
    "amount": 100,
    "amountType": "USD",
    "entryType": "MARKET",
    "stopLoss": 1900,
    "takeProfit1": 2000,
    "takeProfit2": 2050,
    "expectedRiskReward": 2.5,
    "timeHorizonMinutes": 240,
    "reasoning": "Higher lows on the 1h chart",
}


class Sequence(DecisionSource):
    def __init__(self, *items):
        self.items = list(items)

    def get_proposal(self):
        item = self.items.pop(0)
        if isinstance(item, Exception):
            raise item
        return parse_proposal(item) if item is not None else None


@pytest.fixture
def adapter():
    rules = TradingRules(
        symbol=SYMBOL,
        quantity_step=Decimal("0.0001"),
        min_quantity=Decimal("0.0001"),
        min_notional=Decimal("5"),
        price_step=Decimal("0.01"),
    )
    return InMemoryAdapter(
        rules={SYMBOL: rules},
        prices={SYMBOL: Decimal("1950")},
        fee=TradeFee(symbol=SYMBOL, maker=Decimal("0.001"), taker=Decimal("0.001")),
        clock=lambda: T0,
    )


@pytest.fixture
def store(tmp_path):
    s = RecommendationStore(tmp_path / "autotrade.db")
    yield s
    s.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


def make_trader(source, store, adapter, notifier, **admission_kwargs):
    executor = OrderExecutor(adapter, SYMBOL)
    admission = AdmissionController(executor.trade_fee, executor.current_price, **admission_kwargs)
    return AutomatedTrader(source, store, admission, executor, notifier=notifier, clock=lambda: T0)


def test_market_buy_executes_and_exit_follows(store, adapter, notifier):
    trader = make_trader(StaticDecisionSource(BUY_PROPOSAL), store, adapter, notifier)

    outcome = trader.run_cycle()

    assert outcome.status == CycleStatus.EXECUTED
    assert Decimal(adapter.orders[outcome.order.order_id]["origQuoteOrderQty"]) == Decimal("100")
    record = store.get(outcome.record.id)
    assert record.executed
    assert record.entry_order_status == OrderStatus.FILLED
    assert record.reasoning == "Higher lows on the 1h chart"
    assert len(store.find_recent_since(T0 - timedelta(days=1))) == 1
    # exits are left to reconciliation
    assert adapter.oco_calls == []

    ReconciliationLoop(store, trader.executor).tick(T0 + timedelta(minutes=1))

    assert len(adapter.oco_calls) == 1
    assert adapter.oco_calls[0]["take_profit"] == Decimal("2000.00")
    assert adapter.oco_calls[0]["stop_price"] == Decimal("1900.00")
    assert store.get(record.id).oco_order_list_id is not None

    kinds = [e.kind for e in notifier.events]
    assert kinds == [EventKind.PROPOSAL, EventKind.TRADE_EXECUTED]


def test_low_confidence_recorded_but_skipped(store, adapter, notifier):
    source = StaticDecisionSource(dict(BUY_PROPOSAL, confidence="LOW"))
    outcome = make_trader(source, store, adapter, notifier).run_cycle()

    assert outcome.status == CycleStatus.SKIPPED
    assert outcome.reason == "Confidence too low (LOW) - minimum MEDIUM required"
    assert adapter.orders == {}
    assert not store.get(outcome.record.id).executed
    assert notifier.of_kind(EventKind.TRADE_SKIPPED)[0].message == outcome.reason


def test_hold_recorded_without_order(store, adapter, notifier):
    source = StaticDecisionSource({"signal": "HOLD", "confidence": "MEDIUM", "reasoning": "Range-bound"})
    outcome = make_trader(source, store, adapter, notifier).run_cycle()

    assert outcome.status == CycleStatus.SKIPPED
    assert outcome.reason == "Signal is HOLD - no action needed"
    assert adapter.orders == {}
    assert store.get(outcome.record.id).reasoning == "Range-bound"


def test_invalid_proposal_not_recorded(store, adapter, notifier):
    source = Sequence({"signal": "MAYBE", "confidence": "HIGH"})
    outcome = make_trader(source, store, adapter, notifier).run_cycle()

    assert outcome.status == CycleStatus.INVALID
    assert store.find_recent_since(T0 - timedelta(days=1)) == []
    assert notifier.of_kind(EventKind.ERROR)


def test_no_proposal(store, adapter, notifier):
    outcome = make_trader(Sequence(None), store, adapter, notifier).run_cycle()
    assert outcome.status == CycleStatus.NO_PROPOSAL
    assert notifier.events == []


def test_exchange_failure_reported(store, adapter, notifier):
    adapter.fail_on("place_market_buy_quote", ExchangeAPIError("Account has insufficient balance", 400, -2010))
    trader = make_trader(StaticDecisionSource(BUY_PROPOSAL), store, adapter, notifier)

    outcome = trader.run_cycle()

    assert outcome.status == CycleStatus.FAILED
    assert outcome.reason == "Account has insufficient balance"
    errors = notifier.of_kind(EventKind.ERROR)
    assert errors[0].message == "Trade failed: Account has insufficient balance"
    record = store.get(outcome.record.id)
    assert not record.executed
    assert record.entry_order_id is None


def test_below_minimum_is_a_failed_cycle(store, adapter, notifier):
    source = StaticDecisionSource(dict(BUY_PROPOSAL, amount=3))
    outcome = make_trader(source, store, adapter, notifier).run_cycle()

    assert outcome.status == CycleStatus.FAILED
    assert adapter.orders == {}


def test_limit_order_placed_not_executed(store, adapter, notifier):
    source = StaticDecisionSource(dict(BUY_PROPOSAL, entryType="LIMIT", entryPrice=1920))
    outcome = make_trader(source, store, adapter, notifier).run_cycle()

    assert outcome.status == CycleStatus.PLACED
    record = store.get(outcome.record.id)
    assert not record.executed
    assert record.entry_order_status == OrderStatus.NEW
    assert record.entry_order_id == outcome.order.order_id
    assert record.entry_placed_at == T0


def test_fee_gate_rejection(store, adapter, notifier):
    source = StaticDecisionSource(dict(BUY_PROPOSAL, takeProfit1=1952, stopLoss=1949))
    outcome = make_trader(source, store, adapter, notifier).run_cycle()

    assert outcome.status == CycleStatus.SKIPPED
    assert outcome.reason.startswith("TP1 (0.10%) does not clear")


def test_repeated_proposal_stays_separate_records(store, adapter, notifier):
    trader = make_trader(StaticDecisionSource(BUY_PROPOSAL), store, adapter, notifier)
    trader.run_cycle(T0)
    trader.run_cycle(T0 + timedelta(hours=1))

    records = store.find_recent_since(T0 - timedelta(days=1))
    assert len(records) == 2
    assert all(r.executed for r in records)
    assert len({r.entry_order_id for r in records}) == 2


class TestJsonFileDecisionSource:
    def test_missing_file(self, tmp_path):
        assert JsonFileDecisionSource(tmp_path / "proposal.json").get_proposal() is None

    def test_reads_each_version_once(self, tmp_path):
        path = tmp_path / "proposal.json"
        path.write_text(json.dumps(BUY_PROPOSAL))
        source = JsonFileDecisionSource(path)

        proposal = source.get_proposal()
        assert proposal.amount == Decimal("100")
        assert source.get_proposal() is None

        path.write_text(json.dumps(dict(BUY_PROPOSAL, confidence="MEDIUM")))
        later = path.stat().st_mtime + 5
        os.utime(path, (later, later))
        assert source.get_proposal().confidence.value == "MEDIUM"

    def test_bad_json(self, tmp_path):
        path = tmp_path / "proposal.json"
        path.write_text("{not json")
        with pytest.raises(InvalidProposalError):
            JsonFileDecisionSource(path).get_proposal()

    def test_non_object(self, tmp_path):
        path = tmp_path / "proposal.json"
        path.write_text("[1, 2]")
        with pytest.raises(InvalidProposalError, match="JSON object"):
            JsonFileDecisionSource(path).get_proposal()
