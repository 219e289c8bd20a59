"""Configuration loader for the auto-trade engine.

Supports YAML format with environment variable interpolation. Every section is
optional; missing keys fall back to the dataclass defaults.
"""
import os
from dataclasses import asdict, dataclass, field, fields
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError

PRODUCTION_URL = "https://api.binance.com"
TESTNET_URL = "https://testnet.binance.vision"


@dataclass
class ExchangeConfig:
    """Binance spot exchange settings."""
    testnet: bool = True
    base_url: Optional[str] = None  # overrides testnet/production selection
    symbol: str = "ETHUSDC"
    connect_timeout: float = 5.0
    read_timeout: float = 10.0
    recv_window: int = 5000
    max_retries: int = 5
    max_backoff_seconds: float = 60.0

    @property
    def resolved_base_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        return TESTNET_URL if self.testnet else PRODUCTION_URL


@dataclass
class TradingParams:
    """Admission and order placement parameters."""
    oco_stop_limit_offset: Decimal = Decimal("0.005")  # stop-limit 0.5% below trigger
    min_risk_reward: Decimal = Decimal("2.0")
    dedup_window_minutes: int = 5
    fee_cache_ttl_seconds: int = 600
    fee_gate_fail_closed: bool = False


@dataclass
class ReconciliationConfig:
    enabled: bool = True
    interval_seconds: float = 60.0
    initial_delay_seconds: float = 20.0
    lookback_hours: int = 24


@dataclass
class SchedulerConfig:
    decision_interval_seconds: float = 3600.0
    align_decisions: bool = True


@dataclass
class RateLimitConfig:
    """Client-side rate-limit policy settings."""
    orders_per_second: int = 10
    default_per_second: int = 20


@dataclass
class PersistenceConfig:
    """Database and log file settings."""
    db_path: str = "autotrade.db"
    log_file: str = "autotrade.log"
    log_level: str = "INFO"


_DECIMAL_FIELDS = {"oco_stop_limit_offset", "min_risk_reward"}


def _build(section_cls, data: Optional[Dict[str, Any]], section: str):
    data = data or {}
    known = {f.name for f in fields(section_cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"Unknown keys in '{section}' section: {sorted(unknown)}")
    values = {
        k: Decimal(str(v)) if k in _DECIMAL_FIELDS else v
        for k, v in data.items()
    }
    return section_cls(**values)


@dataclass
class TradingConfig:
    """Complete engine configuration."""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    trading: TradingParams = field(default_factory=TradingParams)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)

    @classmethod
    def from_yaml(cls, config_path: str) -> "TradingConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            TradingConfig instance

        Raises:
            FileNotFoundError: If the file does not exist
            ConfigurationError: On unknown keys or a non-mapping document

        Example YAML:
            exchange:
              testnet: false
              symbol: ETHUSDC
            trading:
              min_risk_reward: 2.0
              fee_gate_fail_closed: true
            persistence:
              db_path: "${STATE_DIR}/autotrade.db"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        data = yaml.safe_load(raw) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config root must be a mapping: {config_path}")

        return cls(
            exchange=_build(ExchangeConfig, data.get("exchange"), "exchange"),
            trading=_build(TradingParams, data.get("trading"), "trading"),
            reconciliation=_build(ReconciliationConfig, data.get("reconciliation"), "reconciliation"),
            scheduler=_build(SchedulerConfig, data.get("scheduler"), "scheduler"),
            rate_limit=_build(RateLimitConfig, data.get("rate_limit"), "rate_limit"),
            persistence=_build(PersistenceConfig, data.get("persistence"), "persistence"),
        )

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        data = asdict(self)
        for key in _DECIMAL_FIELDS:
            data["trading"][key] = str(data["trading"][key])

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
