"""bnlink: Binance spot and USD-M futures connectivity."""

from .errors import (
    AmbiguousOrderState,
    BnlinkError,
    ConfigError,
    ExchangeRejected,
    RateLimited,
    TransportError,
    ValidationError,
)
from .exchanges import BinanceClient, StreamManager, normalize_symbol
from .settings import Settings

__all__ = [
    "AmbiguousOrderState",
    "BinanceClient",
    "BnlinkError",
    "ConfigError",
    "ExchangeRejected",
    "RateLimited",
    "Settings",
    "StreamManager",
    "TransportError",
    "ValidationError",
    "normalize_symbol",
]
