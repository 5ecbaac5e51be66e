"""Error hierarchy surfaced by the connectivity layer."""

from __future__ import annotations


class BnlinkError(Exception):
    """Base class for all bnlink failures."""


class ConfigError(BnlinkError, ValueError):
    """Raised when the client is constructed from invalid configuration."""


class ValidationError(BnlinkError, ValueError):
    """Raised when a caller passes invalid arguments to an operation."""


class TransportError(BnlinkError):
    """Raised when an HTTP or WebSocket exchange fails at the network level.

    ``ambiguous`` is set when the request may have reached the exchange
    before the failure, so its outcome is unknown.
    """

    def __init__(self, message: str, *, status: int | None = None, ambiguous: bool = False):
        super().__init__(message)
        self.status = status
        self.ambiguous = ambiguous


class ExchangeRejected(BnlinkError):
    """Raised when the exchange answers with a business-level error payload."""

    def __init__(self, code: int, message: str, *, status: int | None = None):
        super().__init__(f"({code}) {message}")
        self.code = code
        self.message = message
        self.status = status


class RateLimited(BnlinkError):
    """Raised once the rate-limit retry budget is exhausted."""

    def __init__(self, message: str, *, retry_after: float | None = None, code: int | None = None):
        super().__init__(message)
        self.retry_after = retry_after
        self.code = code


class AmbiguousOrderState(BnlinkError):
    """Raised when an order may or may not have been accepted.

    The order is never resent automatically; reconcile it by querying
    ``client_order_id``.
    """

    def __init__(self, message: str, *, symbol: str, client_order_id: str):
        super().__init__(message)
        self.symbol = symbol
        self.client_order_id = client_order_id
