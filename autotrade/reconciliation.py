"""
Reconciliation loop: bring local recommendation records in line with the exchange.

Each tick runs three sweeps over records created within the lookback window:

1. Pending entries (BUY and SELL): refresh the entry order. Fills mark the
   record executed, stale orders past their time horizon are cancelled.
2. Filled BUY entries without an exit: place the OCO exit.
3. OCO exits: refresh child order statuses until every child is terminal.

OCO placement goes through ``RecommendationStore.claim_exit``, an atomic
compare-and-set, so at most one placement is ever attempted per fill even if
the same fill is observed twice. A failed placement keeps its claim and stores
the exchange error on the record for manual follow-up.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from .errors import ExchangeAPIError, TradingError
from .execution import OrderExecutor
from .logging_setup import logger
from .models import OrderStatus, Signal
from .notifications import EventKind, Notifier, TradeEvent
from .persistence_sqlite import RecommendationStore
from .records import RecommendationRecord


@dataclass
class ReconciliationReport:
    """Counters for one reconciliation tick."""

    checked: int = 0
    filled: int = 0
    canceled: int = 0
    exits_placed: int = 0
    exit_orders_updated: int = 0
    errors: int = 0
    skipped: bool = False


class ReconciliationLoop:
    """Poll the exchange and apply each observed event to the store once.

    Args:
        store: Recommendation store (single writer for lifecycle fields)
        executor: Order executor used for queries, cancels and exits
        notifier: Optional sink for fill / OCO / error events
        lookback: Only records created within this window are reconciled
    """

    def __init__(
        self,
        store: RecommendationStore,
        executor: OrderExecutor,
        notifier: Optional[Notifier] = None,
        lookback: timedelta = timedelta(days=1),
    ):
        self.store = store
        self.executor = executor
        self.notifier = notifier
        self.lookback = lookback
        self._running = threading.Lock()

    def tick(self, now: Optional[datetime] = None) -> ReconciliationReport:
        """Run one reconciliation pass; returns immediately if a pass is already running."""
        if not self._running.acquire(blocking=False):
            logger.debug("Reconciliation already in progress, skipping tick")
            return ReconciliationReport(skipped=True)
        try:
            now = now or datetime.now(timezone.utc)
            since = now - self.lookback
            report = ReconciliationReport()

            for signal in (Signal.BUY, Signal.SELL):
                for record in self.store.find_pending_entries(signal, since):
                    report.checked += 1
                    self._guarded(record, report, self._reconcile_entry, record, now, report)

            for record in self.store.find_filled_awaiting_exit(since):
                self._guarded(record, report, self._place_exit, record, now, report)

            for record in self.store.find_with_oco(since):
                self._guarded(record, report, self._refresh_exit_orders, record, report)

            if report.checked or report.exits_placed or report.errors:
                logger.info(
                    f"Reconciliation tick | checked={report.checked} filled={report.filled} "
                    f"canceled={report.canceled} exits_placed={report.exits_placed} "
                    f"exit_updates={report.exit_orders_updated} errors={report.errors}"
                )
            return report
        finally:
            self._running.release()

    def _guarded(self, record: RecommendationRecord, report: ReconciliationReport, func, *args) -> None:
        try:
            func(*args)
        except TradingError as e:
            report.errors += 1
            logger.error(f"Reconciliation failed for record | id={record.id} error={e}")
            self._notify(EventKind.ERROR, f"Reconciliation error for recommendation {record.id}: {e}")
        except Exception as e:
            report.errors += 1
            logger.exception(f"Unexpected reconciliation failure | id={record.id}")
            self._notify(EventKind.ERROR, f"Reconciliation error for recommendation {record.id}: {e}")

    def _notify(self, kind: EventKind, message: str, **details) -> None:
        if self.notifier is not None:
            self.notifier.send(TradeEvent(kind=kind, message=message, details=details))

    def _reconcile_entry(self, record: RecommendationRecord, now: datetime, report: ReconciliationReport) -> None:
        order = self.executor.get_order(record.entry_order_id, record.entry_client_order_id)
        previous = record.entry_order_status

        if order.status == OrderStatus.FILLED:
            record.apply_order(order, executed=True)
            self.store.update(record)
            report.filled += 1
            logger.info(
                f"Entry order filled | id={record.id} order_id={order.order_id} "
                f"qty={order.executed_quantity} avg_price={order.average_price}"
            )
            self._notify(
                EventKind.TRADE_EXECUTED,
                f"{record.signal.value} order {order.order_id} filled",
                record_id=record.id,
                executed_qty=str(order.executed_quantity),
                avg_price=str(order.average_price),
            )
            if record.needs_exit:
                self._place_exit(record, now, report)
            return

        record.apply_order(order, executed=False)
        if order.status.is_pending and record.is_expired(now):
            try:
                canceled = self.executor.cancel(order.order_id, record.entry_client_order_id)
            except TradingError as e:
                # -2011 when the order filled or was canceled after the query; next tick sees it
                report.errors += 1
                logger.error(f"Stale entry cancel failed | id={record.id} order_id={order.order_id} error={e}")
                self._notify(EventKind.ERROR, f"Failed to cancel stale order for recommendation {record.id}: {e}")
            else:
                record.apply_order(canceled, executed=False)
                report.canceled += 1
                logger.info(
                    f"Stale entry order canceled | id={record.id} order_id={order.order_id} "
                    f"horizon_minutes={record.time_horizon_minutes} anchor={record.expiry_anchor.isoformat()}"
                )
        elif order.status != previous:
            logger.info(
                f"Entry order status changed | id={record.id} order_id={order.order_id} "
                f"{previous.value if previous else None} -> {order.status.value}"
            )
        self.store.update(record)

    def _place_exit(self, record: RecommendationRecord, now: datetime, report: ReconciliationReport) -> None:
        if not record.needs_exit or record.execution_result is None:
            return
        if not self.store.claim_exit(record, now):
            logger.debug(f"Exit already claimed | id={record.id}")
            return

        try:
            oco = self.executor.place_exit(
                record.execution_result.executed_quantity,
                record.take_profit1,
                record.stop_loss,
            )
        except TradingError as e:
            record.exit_orders["error"] = e.message if isinstance(e, ExchangeAPIError) else str(e)
            self.store.update(record)
            report.errors += 1
            logger.error(f"OCO exit placement failed | id={record.id} error={e}")
            self._notify(EventKind.ERROR, f"Failed to place OCO exit for recommendation {record.id}: {e}")
            return

        self.store.attach_oco(record, oco)
        report.exits_placed += 1
        self._notify(
            EventKind.OCO_PLACED,
            f"OCO exit placed for recommendation {record.id}",
            order_list_id=oco.order_list_id,
            take_profit=str(record.take_profit1),
            stop_loss=str(record.stop_loss),
        )

    def _refresh_exit_orders(self, record: RecommendationRecord, report: ReconciliationReport) -> None:
        children = record.exit_children()
        if not children or record.exit_orders.get("orderListStatus") == "ALL_DONE":
            return

        changed = False
        for index, order_id in children:
            status = record.exit_child_status(index)
            if status is not None and status.is_terminal:
                continue
            order = self.executor.get_order(order_id)
            if status != order.status:
                record.exit_orders[f"order{index}Status"] = order.status.value
                changed = True
                logger.info(
                    f"OCO child status | id={record.id} order_id={order_id} status={order.status.value}"
                )
            if order.type is not None and record.exit_orders.get(f"order{index}Type") != order.type.value:
                record.exit_orders[f"order{index}Type"] = order.type.value
                changed = True

        statuses = [record.exit_child_status(i) for i, _ in children]
        if all(s is not None and s.is_terminal for s in statuses):
            record.exit_orders["orderListStatus"] = "ALL_DONE"
            changed = True

        if changed:
            self.store.update(record)
            report.exit_orders_updated += 1
