"""Wire configuration, exchange adapter and components into a runnable engine."""
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from .admission import AdmissionController
from .config import TradingConfig
from .execution import ExchangeAdapter, OrderExecutor
from .logging_setup import logger
from .normalizer import TradingRulesCache
from .notifications import LoggingNotifier, Notifier
from .persistence_sqlite import RecommendationStore
from .reconciliation import ReconciliationLoop
from .scheduler import PeriodicTask
from .trader import AutomatedTrader, DecisionSource


@dataclass
class Engine:
    config: TradingConfig
    store: RecommendationStore
    executor: OrderExecutor
    admission: AdmissionController
    trader: AutomatedTrader
    reconciliation: ReconciliationLoop

    def tasks(self) -> List[PeriodicTask]:
        tasks = [
            PeriodicTask(
                "decision",
                self.trader.run_cycle,
                interval_seconds=self.config.scheduler.decision_interval_seconds,
                align_to_interval=self.config.scheduler.align_decisions,
            )
        ]
        if self.config.reconciliation.enabled:
            tasks.append(
                PeriodicTask(
                    "reconciliation",
                    self.reconciliation.tick,
                    interval_seconds=self.config.reconciliation.interval_seconds,
                    initial_delay_seconds=self.config.reconciliation.initial_delay_seconds,
                )
            )
        return tasks

    def close(self) -> None:
        self.store.close()


def build_engine(
    config: TradingConfig,
    adapter: ExchangeAdapter,
    source: DecisionSource,
    notifier: Optional[Notifier] = None,
) -> Engine:
    """Build all components for ``config.exchange.symbol`` on top of ``adapter``.

    Trading rules are fetched once here; a failed fetch falls back to defaults.
    """
    symbol = config.exchange.symbol
    notifier = notifier or LoggingNotifier()

    rules_cache = TradingRulesCache(adapter.get_trading_rules)
    rules_cache.load([symbol])

    executor = OrderExecutor(
        adapter,
        symbol,
        rules_cache,
        stop_limit_offset=Decimal(config.trading.oco_stop_limit_offset),
    )
    admission = AdmissionController(
        fee_source=executor.trade_fee,
        price_source=executor.current_price,
        min_risk_reward=Decimal(config.trading.min_risk_reward),
        fail_closed=config.trading.fee_gate_fail_closed,
    )
    store = RecommendationStore(
        Path(config.persistence.db_path),
        dedup_window=timedelta(minutes=config.trading.dedup_window_minutes),
    )
    trader = AutomatedTrader(source, store, admission, executor, notifier=notifier)
    reconciliation = ReconciliationLoop(
        store,
        executor,
        notifier=notifier,
        lookback=timedelta(hours=config.reconciliation.lookback_hours),
    )
    logger.info(f"Engine built | symbol={symbol} db={config.persistence.db_path}")
    return Engine(
        config=config,
        store=store,
        executor=executor,
        admission=admission,
        trader=trader,
        reconciliation=reconciliation,
    )
