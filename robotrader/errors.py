"""
Error taxonomy for RoboTrader.

Detection errors are raised while talking to the rebalance data source,
broker errors while resolving prices or submitting orders. Everything except
ConfigError is recovered locally: the failing poll tick or instrument is
skipped and the surrounding loop carries on.
"""

from typing import Optional


class RoboTraderError(Exception):
    """Base class for all RoboTrader errors."""

    pass


class ConfigError(RoboTraderError):
    """Raised for missing or invalid configuration. Fatal at startup only."""

    pass


# =============================================================================
# Detection
# =============================================================================

class DetectionError(RoboTraderError):
    """A poll of the rebalance data source produced no usable result."""

    def __init__(self, message: str, archive_path: Optional[str] = None):
        super().__init__(message)
        self.archive_path = archive_path

    def __str__(self) -> str:
        base = super().__str__()
        if self.archive_path:
            return f"{base}. See {self.archive_path}"
        return base


class AuthExpiredError(DetectionError):
    """Subscription cookie is missing, expired or no longer authorized."""

    pass


class BlockedError(DetectionError):
    """The data source answered with an anti-bot (captcha) challenge."""

    pass


class MalformedResponseError(DetectionError):
    """Response body could not be parsed into the expected JSON shape."""

    pass


class TransientFetchError(DetectionError):
    """Network-level failure (timeout, reset, DNS); retry on next tick."""

    pass


# =============================================================================
# Broker
# =============================================================================

class BrokerError(RoboTraderError):
    """Base class for broker-side failures."""

    pass


class PriceUnresolvedError(BrokerError):
    """No usable price could be determined for an instrument."""

    def __init__(self, ticker: str, reason: str = "no price"):
        super().__init__(f"Cannot determine price for {ticker}: {reason}")
        self.ticker = ticker
        self.reason = reason


class OrderRejectedError(BrokerError):
    """The broker refused or failed to accept an order."""

    def __init__(self, ticker: str, reason: str):
        super().__init__(f"Order for {ticker} rejected: {reason}")
        self.ticker = ticker
        self.reason = reason


class ConnectionUnavailableError(BrokerError):
    """The broker connection handle is absent (never connected or dropped)."""

    def __init__(self, connection_name: str):
        super().__init__(f"Broker connection '{connection_name}' is not connected")
        self.connection_name = connection_name
