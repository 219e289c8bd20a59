#!/usr/bin/env python
"""Recommendation history reporter.

Usage:
    python scripts/recommendation_history.py --db autotrade.db list --days 3
    python scripts/recommendation_history.py --db autotrade.db stats --days 30
    python scripts/recommendation_history.py --db autotrade.db oco-status <record_id>
"""
import argparse
import sys
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from autotrade.persistence_sqlite import RecommendationStore  # noqa: E402
from autotrade.records import RecommendationRecord  # noqa: E402


def _since(days: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


def _state(record: RecommendationRecord) -> str:
    if record.oco_order_list_id is not None:
        return f"oco:{record.exit_orders.get('orderListStatus', '?')}"
    if record.exit_orders.get("error"):
        return "exit-failed"
    if record.executed:
        return "executed"
    if record.entry_order_status is not None:
        return record.entry_order_status.value.lower()
    return "not-placed"


def list_recommendations(store: RecommendationStore, days: int) -> None:
    records = store.find_recent_since(_since(days))
    if not records:
        print("No recommendations found")
        return

    print(f"{'ID':<6} {'Created (UTC)':<20} {'Signal':<6} {'Conf':<7} {'Amount':<14} {'Entry Order':<14} {'State':<20}")
    print("-" * 92)
    for r in records:
        amount = f"{r.amount} {r.amount_unit.value}" if r.amount is not None else "-"
        print(
            f"{r.id:<6} {r.created_at.strftime('%Y-%m-%d %H:%M:%S'):<20} {r.signal.value:<6} "
            f"{r.confidence.value:<7} {amount:<14} {str(r.entry_order_id or '-'):<14} {_state(r):<20}"
        )
    print(f"\nTotal: {len(records)}")


def stats(store: RecommendationStore, days: int) -> None:
    records = store.find_recent_since(_since(days))
    if not records:
        print("No recommendations found")
        return

    by_signal = Counter(r.signal.value for r in records)
    placed = [r for r in records if r.entry_order_id is not None]
    executed = [r for r in records if r.executed]
    with_oco = [r for r in records if r.oco_order_list_id is not None]
    exit_failures = [r for r in records if r.exit_orders.get("error")]

    print(f"\n=== Recommendations (last {days} days) ===")
    print(f"Total: {len(records)}")
    for signal, count in sorted(by_signal.items()):
        print(f"  {signal}: {count}")
    print(f"Orders placed: {len(placed)}")
    print(f"Executed: {len(executed)}")
    print(f"Execution rate: {len(executed) / len(records) * 100:.1f}%")
    print(f"OCO exits: {len(with_oco)}")
    print(f"Exit placement failures: {len(exit_failures)}")


def oco_status(store: RecommendationStore, record_id: int) -> None:
    record = store.get(record_id)
    if record is None:
        print(f"Recommendation not found: {record_id}")
        return
    if record.oco_order_list_id is None:
        error = record.exit_orders.get("error")
        print(f"Recommendation {record_id} has no OCO exit" + (f" (last error: {error})" if error else ""))
        return

    print(f"\n=== OCO for recommendation {record_id} ===")
    print(f"Order list: {record.oco_order_list_id} ({record.exit_orders.get('orderListStatus', '?')})")
    print(f"Take profit: {record.take_profit1}  Stop loss: {record.stop_loss}")
    for index, order_id in record.exit_children():
        status = record.exit_orders.get(f"order{index}Status", "UNKNOWN")
        order_type = record.exit_orders.get(f"order{index}Type", "-")
        print(f"  order {order_id:<14} {order_type:<18} {status}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Recommendation history reporter")
    parser.add_argument("--db", required=True, help="Path to SQLite database")
    sub = parser.add_subparsers(dest="cmd")

    list_p = sub.add_parser("list", help="List recent recommendations")
    list_p.add_argument("--days", type=int, default=1)

    stats_p = sub.add_parser("stats", help="Summary statistics")
    stats_p.add_argument("--days", type=int, default=30)

    oco_p = sub.add_parser("oco-status", help="Show OCO exit state of a recommendation")
    oco_p.add_argument("record_id", type=int)

    args = parser.parse_args(argv)
    if args.cmd is None:
        parser.print_help()
        return

    store = RecommendationStore(Path(args.db))
    try:
        if args.cmd == "list":
            list_recommendations(store, args.days)
        elif args.cmd == "stats":
            stats(store, args.days)
        elif args.cmd == "oco-status":
            oco_status(store, args.record_id)
    finally:
        store.close()


if __name__ == "__main__":
    main()
