"""Exchange connectivity layer."""

from .binance import BinanceClient
from .endpoints import Credentials, EndpointSet, Market, resolve_endpoints
from .factory import create_client_from_settings
from .models import (
    Balance,
    ConnectionState,
    KlineRecord,
    MarketEvent,
    OrderAck,
    OrderRequest,
    OrderType,
    PriceUpdate,
    Side,
    Subscription,
    SubscriptionState,
)
from .normalization import normalize_symbol, parse_time_ms, stream_name
from .signer import RequestSigner, SignedRequest, sign
from .stream import StreamManager
from .transport import ProxyConfig, RateLimitTable, RestTransport, RetryPolicy

__all__ = [
    "Balance",
    "BinanceClient",
    "ConnectionState",
    "Credentials",
    "EndpointSet",
    "KlineRecord",
    "Market",
    "MarketEvent",
    "OrderAck",
    "OrderRequest",
    "OrderType",
    "PriceUpdate",
    "ProxyConfig",
    "RateLimitTable",
    "RequestSigner",
    "RestTransport",
    "RetryPolicy",
    "Side",
    "SignedRequest",
    "StreamManager",
    "Subscription",
    "SubscriptionState",
    "create_client_from_settings",
    "normalize_symbol",
    "parse_time_ms",
    "resolve_endpoints",
    "sign",
    "stream_name",
]
