"""Error taxonomy for the trading engine.

Configuration errors are fatal for the operation attempted and never retried.
Validation errors are recoverable and carry a human-readable reason for the
caller. Exchange errors are transient: the reconciliation loop logs them and
retries the affected record on its next tick.
"""
from typing import Optional


class TradingError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(TradingError):
    """Missing credentials or required configuration."""


class OrderValidationError(TradingError, ValueError):
    """An order or proposal cannot be placed as requested; no order is sent."""


class BelowMinimumError(OrderValidationError):
    """Quantity or notional falls below the exchange minimum after truncation."""


class InvalidProposalError(OrderValidationError):
    """The decision source returned a structurally invalid proposal."""


class ExchangeAPIError(TradingError):
    """Error returned by (or while talking to) the exchange.

    Attributes:
        status: HTTP status code, if a response was received
        code: Exchange error code (Binance returns negative integers)
        message: Exchange-provided message, surfaced to users verbatim
    """

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code

    def __str__(self) -> str:
        if self.status is None and self.code is None:
            return self.message
        return f"{self.status} (code={self.code}): {self.message}"


class RateLimitError(ExchangeAPIError):
    """Raised when rate limit is hit and backoff is exhausted."""


class UnexpectedResponseError(ExchangeAPIError):
    """Malformed body, missing field, or unrecognized enum value."""
