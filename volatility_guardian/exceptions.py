"""Error taxonomy for Volatility Guardian.

Item-scoped errors (InvalidInput, MarketDataError subclasses, ChannelFailure)
are caught at the item boundary and recorded in the run status.
ConfigurationError is the only run-fatal error.
"""

from typing import Optional


class GuardianError(Exception):
    """Base class for all service errors."""

    kind = "error"


class InvalidInput(GuardianError):
    """Malformed watched item or non-positive price."""

    kind = "invalid_input"


class MarketDataError(GuardianError):
    """Upstream market data problem for a single symbol."""

    kind = "market_data"


class DataUnavailable(MarketDataError):
    """Upstream error, timeout or unknown symbol."""

    kind = "data_unavailable"


class RateLimited(MarketDataError):
    """Upstream asked us to back off."""

    kind = "rate_limited"

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class InsufficientHistory(MarketDataError):
    """Fewer daily bars than the ATR period needs."""

    kind = "insufficient_history"

    def __init__(self, symbol: str, required: int, available: int):
        super().__init__(
            f"{symbol}: need at least {required} bars, got {available}"
        )
        self.symbol = symbol
        self.required = required
        self.available = available


class ChannelFailure(GuardianError):
    """A notification channel could not deliver to a recipient."""

    kind = "channel_failure"

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel


class ConfigurationError(GuardianError):
    """A required capability is not configured at all."""

    kind = "configuration"
