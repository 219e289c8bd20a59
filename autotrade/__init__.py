"""
Spot auto-trade engine for Binance.

Turns AI-generated trade proposals into exchange orders and tracks them to
completion:
- Admission control (confidence, risk/reward, round-trip fee gate)
- Quantity/price normalization against exchange trading rules
- Market, limit and OCO (take-profit + stop-limit) order placement
- Reconciliation loop for fills, stale-order expiry and OCO outcomes
- SQLite recommendation store with versioned migrations and dedup
- Client-side rate limiting, retries and rate-limit backoff
- Structured logging via loguru
- Configuration-driven (YAML)

Core Modules:
    models: Domain types (proposals, orders, trading rules)
    records: Persisted recommendation records and dedup matching
    normalizer: Quantity/price truncation and minimum checks
    admission: Admission controller and fee gate
    execution: Exchange adapter interface, simulated exchange, order executor
    binance_adapter: Binance Spot REST integration
    reconciliation: Periodic reconciliation loop
    persistence_sqlite: Recommendation store
    trader: Decision cycle and decision sources
    scheduler: Asyncio periodic task runner
    engine: Component wiring from configuration
    config: Configuration loading
    secrets: Credential management

Example:
    >>> from autotrade.binance_adapter import BinanceAdapter
    >>> from autotrade.execution import OrderExecutor
    >>> from autotrade.secrets import load_credentials
    >>>
    >>> adapter = BinanceAdapter(*load_credentials())
    >>> executor = OrderExecutor(adapter, "ETHUSDC")
"""

__version__ = "0.1.0"
__all__ = [
    "models",
    "records",
    "normalizer",
    "admission",
    "execution",
    "binance_adapter",
    "reconciliation",
    "persistence_sqlite",
    "trader",
    "scheduler",
    "engine",
    "notifications",
    "account",
    "config",
    "secrets",
]
