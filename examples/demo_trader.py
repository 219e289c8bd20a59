"""End-to-end demo of the auto-trade engine against the simulated exchange.

Shows:
1. Wiring config, adapter, store and components
2. A BUY proposal admitted and market-bought
3. The next reconciliation tick placing the OCO exit
4. A LIMIT proposal that expires and is cancelled
5. A LOW-confidence proposal being skipped
"""
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from autotrade.config import TradingConfig  # noqa: E402
from autotrade.engine import build_engine  # noqa: E402
from autotrade.execution import InMemoryAdapter  # noqa: E402
from autotrade.logging_setup import logger, setup_logging  # noqa: E402
from autotrade.models import TradeFee, TradingRules  # noqa: E402
from autotrade.notifications import LoggingNotifier  # noqa: E402
from autotrade.trader import StaticDecisionSource  # noqa: E402

SYMBOL = "ETHUSDC"


def main():
    setup_logging(log_file=None, level="INFO", enable_console=True)
    logger.info("=== Auto-trade Demo (simulated exchange) ===")

    start = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    clock = {"now": start}

    adapter = InMemoryAdapter(
        rules={
            SYMBOL: TradingRules(
                symbol=SYMBOL,
                quantity_step=Decimal("0.0001"),
                min_quantity=Decimal("0.0001"),
                min_notional=Decimal("5"),
                price_step=Decimal("0.01"),
                base_asset="ETH",
                quote_asset="USDC",
            )
        },
        prices={SYMBOL: Decimal("1950")},
        fee=TradeFee(symbol=SYMBOL, maker=Decimal("0.001"), taker=Decimal("0.001")),
        balances={"USDC": Decimal("1000"), "ETH": Decimal("0")},
        clock=lambda: clock["now"],
    )

    with tempfile.TemporaryDirectory() as tmp:
        config = TradingConfig()
        config.exchange.symbol = SYMBOL
        config.persistence.db_path = str(Path(tmp) / "demo.db")

        source = StaticDecisionSource(
            {
                "signal": "BUY",
                "confidence": "HIGH",
                "amount": "100",
                "amountType": "USDC",
                "stopLoss": "1900",
                "takeProfit1": "2000",
                "expectedRiskReward": "2.5",
                "reasoning": "Breakout above range high with rising volume",
            }
        )
        engine = build_engine(config, adapter, source, notifier=LoggingNotifier())
        try:
            outcome = engine.trader.run_cycle(now=start)
            logger.info(f"Cycle outcome | status={outcome.status.value} record={outcome.record.id}")

            report = engine.reconciliation.tick(now=start + timedelta(minutes=1))
            logger.info(f"Tick | exits_placed={report.exits_placed}")

            engine.trader.source = StaticDecisionSource(
                {
                    "signal": "BUY",
                    "confidence": "MEDIUM",
                    "amount": "50",
                    "amountType": "USDC",
                    "entryType": "LIMIT",
                    "entryPrice": "1900",
                    "stopLoss": "1850",
                    "takeProfit1": "2000",
                    "expectedRiskReward": "2.0",
                    "timeHorizonMinutes": 30,
                }
            )
            clock["now"] = start + timedelta(minutes=5)
            outcome = engine.trader.run_cycle(now=clock["now"])
            logger.info(f"Limit entry | status={outcome.status.value} order_id={outcome.order.order_id}")

            report = engine.reconciliation.tick(now=clock["now"] + timedelta(minutes=45))
            logger.info(f"Tick | canceled={report.canceled}")

            engine.trader.source = StaticDecisionSource(
                {"signal": "BUY", "confidence": "LOW", "amount": "100", "amountType": "USDC",
                 "stopLoss": "1900", "takeProfit1": "2000", "expectedRiskReward": "2.5"}
            )
            outcome = engine.trader.run_cycle(now=start + timedelta(hours=1))
            logger.info(f"Low confidence | status={outcome.status.value} reason={outcome.reason}")
        finally:
            engine.close()

    logger.info("=== Demo Complete ===")


if __name__ == "__main__":
    main()
