#!/usr/bin/env python
"""Run the auto-trade engine: hourly decision cycles plus the reconciliation loop.

Usage:
    python scripts/run_trader.py --config config.yaml --proposal-file proposal.json
    python scripts/run_trader.py --config config.yaml --proposal-file proposal.json --once
    python scripts/run_trader.py --config config.yaml --reconcile-only
"""
import argparse
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from autotrade.account import summarize_account  # noqa: E402
from autotrade.binance_adapter import BinanceAdapter  # noqa: E402
from autotrade.config import TradingConfig  # noqa: E402
from autotrade.engine import build_engine  # noqa: E402
from autotrade.errors import ConfigurationError, ExchangeAPIError  # noqa: E402
from autotrade.logging_setup import logger, setup_logging  # noqa: E402
from autotrade.rate_limit_policy import RateLimitManager  # noqa: E402
from autotrade.scheduler import EventLoopRunner  # noqa: E402
from autotrade.secrets import load_credentials  # noqa: E402
from autotrade.trader import JsonFileDecisionSource  # noqa: E402


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Binance spot auto-trade engine")
    parser.add_argument("--config", help="YAML config file (defaults used if omitted)")
    parser.add_argument("--proposal-file", default="proposal.json", help="Proposal JSON written by the decision process")
    parser.add_argument("--credentials", help="Credentials JSON file (overrides BINANCE_CONFIG_PATH)")
    parser.add_argument("--once", action="store_true", help="Run one decision cycle and one reconciliation tick, then exit")
    parser.add_argument("--reconcile-only", action="store_true", help="Only run the reconciliation loop")
    args = parser.parse_args(argv)

    config = TradingConfig.from_yaml(args.config) if args.config else TradingConfig()
    setup_logging(log_file=config.persistence.log_file, level=config.persistence.log_level)

    try:
        credentials = load_credentials(args.credentials)
    except ConfigurationError as e:
        logger.error(f"Cannot start without credentials | error={e}")
        return 2

    adapter = BinanceAdapter.from_config(
        config.exchange,
        credentials,
        fee_cache_ttl=config.trading.fee_cache_ttl_seconds,
        rate_limiter=RateLimitManager.from_config(
            config.rate_limit.orders_per_second, config.rate_limit.default_per_second
        ),
    )
    engine = build_engine(config, adapter, JsonFileDecisionSource(args.proposal_file))

    try:
        summary = summarize_account(adapter, engine.executor.trading_rules)
        logger.info(
            f"Account | {summary.base_asset}={summary.base_total} {summary.quote_asset}={summary.quote_total} "
            f"price={summary.price} total_value={summary.total_value:.2f}"
        )
    except ExchangeAPIError as e:
        logger.warning(f"Account summary unavailable | error={e}")

    try:
        if args.once:
            if not args.reconcile_only:
                engine.trader.run_cycle()
            engine.reconciliation.tick()
            return 0

        tasks = engine.tasks()
        if args.reconcile_only:
            tasks = [t for t in tasks if t.name == "reconciliation"]
        asyncio.run(EventLoopRunner(tasks).start())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        engine.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
