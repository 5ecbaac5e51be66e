"""Market selection, endpoint resolution and credentials."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from ..errors import ConfigError, ValidationError


class Market(str, Enum):
    """Trading venue mode."""

    SPOT = "spot"
    SWAP = "swap"

    @classmethod
    def parse(cls, value: "str | Market") -> "Market":
        if isinstance(value, Market):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            supported = ", ".join(m.value for m in cls)
            raise ConfigError(
                f"Unsupported market: {value!r}. Supported markets: {supported}"
            ) from None


@dataclass(frozen=True)
class EndpointSet:
    rest_base: str
    ws_base: str

    @property
    def combined_ws(self) -> str:
        """Combined-stream endpoint; frames arrive as ``{"stream", "data"}``."""
        return self.ws_base[: -len("/ws")] + "/stream"


# Largest page the klines endpoint serves per market.
MAX_KLINE_PAGE: dict[Market, int] = {
    Market.SPOT: 1000,
    Market.SWAP: 1500,
}


ENDPOINTS: dict[tuple[Market, bool], EndpointSet] = {
    (Market.SPOT, False): EndpointSet("https://api.binance.com", "wss://stream.binance.com:9443/ws"),
    (Market.SWAP, False): EndpointSet("https://fapi.binance.com", "wss://fstream.binance.com/ws"),
    (Market.SPOT, True): EndpointSet("https://testnet.binance.vision", "wss://testnet.binance.vision/ws"),
    (Market.SWAP, True): EndpointSet("https://testnet.binancefuture.com", "wss://stream.binancefuture.com/ws"),
}

# name -> (spot path, swap path); None where the market has no such endpoint.
PATHS: dict[str, tuple[str | None, str | None]] = {
    "ping": ("/api/v3/ping", "/fapi/v1/ping"),
    "time": ("/api/v3/time", "/fapi/v1/time"),
    "exchange_info": ("/api/v3/exchangeInfo", "/fapi/v1/exchangeInfo"),
    "klines": ("/api/v3/klines", "/fapi/v1/klines"),
    "ticker_price": ("/api/v3/ticker/price", "/fapi/v1/ticker/price"),
    "ticker_24hr": ("/api/v3/ticker/24hr", "/fapi/v1/ticker/24hr"),
    "order": ("/api/v3/order", "/fapi/v1/order"),
    "cancel_all": ("/api/v3/openOrders", "/fapi/v1/allOpenOrders"),
    "account": ("/api/v3/account", "/fapi/v2/account"),
    "balance": (None, "/fapi/v2/balance"),
    "listen_key": ("/api/v3/userDataStream", "/fapi/v1/listenKey"),
}


def resolve_endpoints(market: Market, sandbox: bool = False) -> EndpointSet:
    return ENDPOINTS[(market, bool(sandbox))]


def resolve_path(market: Market, name: str) -> str:
    """Return the REST path of endpoint ``name`` for ``market``."""
    spot, swap = PATHS[name]
    path = spot if market is Market.SPOT else swap
    if path is None:
        raise ValidationError(f"Endpoint {name!r} is not available on the {market.value} market")
    return path


@dataclass(frozen=True)
class Credentials:
    """API credentials bound to one market for the client's lifetime."""

    api_key: str
    api_secret: str = field(repr=False)
    market: Market = Market.SPOT

    @property
    def has_keys(self) -> bool:
        return bool(self.api_key and self.api_secret)
