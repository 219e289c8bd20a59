import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from autotrade.models import EntryType, OcoChild, OcoExit, Order, OrderStatus, OrderType, Proposal, Signal
from autotrade.persistence_sqlite import RecommendationStore

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


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


def make_order(order_id, status=OrderStatus.FILLED, order_type=OrderType.MARKET):
    filled = status == OrderStatus.FILLED
    return Order(
        order_id=order_id,
        symbol="ETHUSDC",
        status=status,
        client_order_id=f"at-{order_id}",
        type=order_type,
        orig_quantity=Decimal("0.05"),
        executed_quantity=Decimal("0.05") if filled else Decimal("0"),
        cumulative_quote_quantity=Decimal("97.5") if filled else Decimal("0"),
        transact_time=int(T0.timestamp() * 1000),
    )


@pytest.fixture
def store(tmp_path):
    s = RecommendationStore(tmp_path / "state" / "autotrade.db")
    yield s
    s.close()


def test_save_and_get(store):
    record = store.save(make_proposal(reasoning="breakout"), now=T0, market_context={"price": "1950"})
    assert record.id == 1

    loaded = store.get(record.id)
    assert loaded.signal == Signal.BUY
    assert loaded.amount == Decimal("100")
    assert loaded.reasoning == "breakout"
    assert loaded.market_context == {"price": "1950"}
    assert not loaded.executed
    assert store.get(999) is None


def test_attach_execution_updates_matching_record(store):
    proposal = make_proposal()
    saved = store.save(proposal, now=T0)

    record = store.attach_execution(proposal, True, make_order(11), now=T0 + timedelta(minutes=1))

    assert record.id == saved.id
    assert record.executed
    assert record.entry_order_id == 11
    assert record.execution_result.average_price == Decimal("1950.00000000")
    assert len(store.find_recent_since(T0 - timedelta(days=1))) == 1
    assert store.find_by_entry_order_id(11).id == saved.id


def test_attach_execution_picks_newest_match(store):
    proposal = make_proposal()
    store.save(proposal, now=T0)
    newer = store.save(proposal, now=T0 + timedelta(minutes=2))

    record = store.attach_execution(proposal, True, make_order(12), now=T0 + timedelta(minutes=3))
    assert record.id == newer.id
    assert [r.executed for r in store.find_recent_since(T0)] == [True, False]


def test_attach_execution_inserts_when_nothing_matches(store):
    store.save(make_proposal(confidence="MEDIUM"), now=T0)
    record = store.attach_execution(make_proposal(), True, make_order(13), now=T0)
    assert record.id == 2
    assert record.executed


def test_attach_execution_ignores_records_outside_window(store):
    proposal = make_proposal()
    store.save(proposal, now=T0)
    record = store.attach_execution(proposal, True, make_order(14), now=T0 + timedelta(minutes=6))
    assert record.id == 2
    assert not store.get(1).executed


def test_entry_order_id_is_unique(store):
    store.attach_execution(make_proposal(), True, make_order(15), now=T0)
    with pytest.raises(sqlite3.IntegrityError):
        store.attach_execution(make_proposal(confidence="MEDIUM"), True, make_order(15), now=T0)


def test_find_pending_entries(store):
    buy = make_proposal(entryType="LIMIT", entryPrice="1900")
    store.save(buy, now=T0)
    store.attach_execution(buy, False, make_order(21, OrderStatus.NEW, OrderType.LIMIT), now=T0)

    sell = make_proposal(signal="SELL", amount="0.5", amountType="ETH")
    store.save(sell, now=T0)
    store.attach_execution(sell, False, make_order(22, OrderStatus.CANCELED, OrderType.LIMIT), now=T0)

    pending = store.find_pending_entries(Signal.BUY, T0 - timedelta(hours=1))
    assert [r.entry_order_id for r in pending] == [21]
    assert store.find_pending_entries(Signal.BUY, T0 - timedelta(hours=1), EntryType.MARKET) == []
    assert store.find_pending_entries(Signal.SELL, T0 - timedelta(hours=1)) == []
    assert store.find_pending_entries(Signal.BUY, T0 + timedelta(minutes=1)) == []


def test_claim_exit_is_compare_and_set(store):
    proposal = make_proposal()
    store.save(proposal, now=T0)
    record = store.attach_execution(proposal, True, make_order(31), now=T0)
    assert [r.id for r in store.find_filled_awaiting_exit(T0 - timedelta(hours=1))] == [record.id]

    stale_copy = store.get(record.id)
    assert store.claim_exit(record, now=T0)
    assert record.exit_claimed_at == T0
    assert not store.claim_exit(stale_copy, now=T0)
    assert store.find_filled_awaiting_exit(T0 - timedelta(hours=1)) == []


def test_concurrent_claims_yield_one_winner(store):
    proposal = make_proposal()
    store.save(proposal, now=T0)
    record = store.attach_execution(proposal, True, make_order(32), now=T0)

    results = []
    barrier = threading.Barrier(8)

    def claim():
        copy = store.get(record.id)
        barrier.wait()
        results.append(store.claim_exit(copy, now=T0))

    threads = [threading.Thread(target=claim) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1


def test_attach_oco_and_stale_update_keeps_progress(store):
    proposal = make_proposal()
    store.save(proposal, now=T0)
    record = store.attach_execution(proposal, True, make_order(41), now=T0)
    stale = store.get(record.id)

    store.claim_exit(record, now=T0)
    store.attach_oco(record, OcoExit(order_list_id=5, orders=[OcoChild(42, "a"), OcoChild(43, "b")]))

    stale.reasoning = "edited"
    store.update(stale)

    loaded = store.get(record.id)
    assert loaded.reasoning == "edited"
    assert loaded.oco_order_list_id == 5
    assert loaded.exit_claimed_at == T0
    assert loaded.exit_orders["order1Id"] == "43"
    assert [r.id for r in store.find_with_oco(T0 - timedelta(hours=1))] == [record.id]


def test_find_unexecuted_since(store):
    store.save(make_proposal(signal="HOLD", amount=None), now=T0)
    proposal = make_proposal()
    store.save(proposal, now=T0)
    store.attach_execution(proposal, True, make_order(51), now=T0)

    unexecuted = store.find_unexecuted_since(T0 - timedelta(minutes=1))
    assert [r.signal for r in unexecuted] == [Signal.HOLD]


def test_records_survive_reopen(tmp_path):
    path = tmp_path / "autotrade.db"
    first = RecommendationStore(path)
    first.save(make_proposal(), now=T0)
    first.close()

    second = RecommendationStore(path)
    assert len(second.find_recent_since(T0 - timedelta(days=1))) == 1
    second.close()
