"""Typed records exchanged with the Binance REST and stream APIs."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from ..errors import ValidationError
from .endpoints import Market


def to_decimal(value: Any, *, field_name: str = "value") -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid decimal for {field_name}: {value!r}") from exc


@dataclass(frozen=True, slots=True)
class KlineRecord:
    """A single OHLCV candle."""

    open_time: int
    close_time: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    quote_volume: Decimal | None = None
    trade_count: int | None = None

    @classmethod
    def from_rest(cls, row: list[Any]) -> "KlineRecord":
        """Parse one row of a /klines response.

        Row layout: [open_time, open, high, low, close, volume, close_time,
        quote_volume, trade_count, taker_base, taker_quote, ignore].
        """
        return cls(
            open_time=int(row[0]),
            close_time=int(row[6]),
            open=Decimal(str(row[1])),
            high=Decimal(str(row[2])),
            low=Decimal(str(row[3])),
            close=Decimal(str(row[4])),
            volume=Decimal(str(row[5])),
            quote_volume=Decimal(str(row[7])) if len(row) > 7 else None,
            trade_count=int(row[8]) if len(row) > 8 else None,
        )

    @classmethod
    def from_stream(cls, k: dict[str, Any]) -> "KlineRecord":
        """Parse the ``k`` object of a kline stream event."""
        return cls(
            open_time=int(k["t"]),
            close_time=int(k["T"]),
            open=Decimal(str(k["o"])),
            high=Decimal(str(k["h"])),
            low=Decimal(str(k["l"])),
            close=Decimal(str(k["c"])),
            volume=Decimal(str(k["v"])),
            quote_volume=Decimal(str(k["q"])) if "q" in k else None,
            trade_count=int(k["n"]) if "n" in k else None,
        )


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def parse(cls, value: "str | Side") -> "Side":
        if isinstance(value, Side):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValidationError(f"Invalid order side: {value!r}") from None


_SPOT = frozenset({Market.SPOT})
_SWAP = frozenset({Market.SWAP})
_BOTH = frozenset({Market.SPOT, Market.SWAP})


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    LIMIT_MAKER = "LIMIT_MAKER"
    STOP_LOSS_LIMIT = "STOP_LOSS_LIMIT"
    TAKE_PROFIT_LIMIT = "TAKE_PROFIT_LIMIT"
    STOP = "STOP"
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_MARKET = "STOP_MARKET"
    TAKE_PROFIT_MARKET = "TAKE_PROFIT_MARKET"

    @classmethod
    def parse(cls, value: "str | OrderType") -> "OrderType":
        if isinstance(value, OrderType):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValidationError(f"Invalid order type: {value!r}") from None

    @property
    def markets(self) -> frozenset[Market]:
        return _ORDER_TYPE_MARKETS[self]

    @property
    def requires_price(self) -> bool:
        return self in {
            OrderType.LIMIT,
            OrderType.LIMIT_MAKER,
            OrderType.STOP_LOSS_LIMIT,
            OrderType.TAKE_PROFIT_LIMIT,
            OrderType.STOP,
            OrderType.TAKE_PROFIT,
        }

    @property
    def requires_stop_price(self) -> bool:
        return self in {
            OrderType.STOP_LOSS_LIMIT,
            OrderType.TAKE_PROFIT_LIMIT,
            OrderType.STOP,
            OrderType.TAKE_PROFIT,
            OrderType.STOP_MARKET,
            OrderType.TAKE_PROFIT_MARKET,
        }

    @property
    def uses_time_in_force(self) -> bool:
        return self.requires_price and self is not OrderType.LIMIT_MAKER


_ORDER_TYPE_MARKETS = {
    OrderType.MARKET: _BOTH,
    OrderType.LIMIT: _BOTH,
    OrderType.LIMIT_MAKER: _SPOT,
    OrderType.STOP_LOSS_LIMIT: _SPOT,
    OrderType.TAKE_PROFIT_LIMIT: _SPOT,
    OrderType.STOP: _SWAP,
    OrderType.TAKE_PROFIT: _SWAP,
    OrderType.STOP_MARKET: _SWAP,
    OrderType.TAKE_PROFIT_MARKET: _SWAP,
}

TIME_IN_FORCE = frozenset({"GTC", "IOC", "FOK", "GTX"})


def new_client_order_id() -> str:
    return f"bnlink-{uuid.uuid4().hex[:24]}"


@dataclass(frozen=True)
class OrderRequest:
    symbol: str
    side: Side
    type: OrderType
    quantity: Decimal
    price: Decimal | None = None
    stop_price: Decimal | None = None
    time_in_force: str | None = None
    client_order_id: str = field(default_factory=new_client_order_id)

    def validate(self, market: Market) -> None:
        """Raise ValidationError unless the order is well-formed for ``market``."""
        if market not in self.type.markets:
            raise ValidationError(f"Order type {self.type.value} is not supported on the {market.value} market")
        if self.quantity <= 0:
            raise ValidationError(f"Order quantity must be positive, got {self.quantity}")
        if self.type.requires_price:
            if self.price is None:
                raise ValidationError(f"Order type {self.type.value} requires a price")
            if self.price <= 0:
                raise ValidationError(f"Order price must be positive, got {self.price}")
        elif self.price is not None:
            raise ValidationError(f"Order type {self.type.value} does not accept a price")
        if self.type.requires_stop_price:
            if self.stop_price is None or self.stop_price <= 0:
                raise ValidationError(f"Order type {self.type.value} requires a positive stop price")
        elif self.stop_price is not None:
            raise ValidationError(f"Order type {self.type.value} does not accept a stop price")
        if self.time_in_force is not None:
            if not self.type.uses_time_in_force:
                raise ValidationError(f"Order type {self.type.value} does not accept a time in force")
            if self.time_in_force not in TIME_IN_FORCE:
                raise ValidationError(f"Invalid time in force: {self.time_in_force!r}")

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "symbol": self.symbol,
            "side": self.side.value,
            "type": self.type.value,
            "quantity": self.quantity,
        }
        if self.price is not None:
            params["price"] = self.price
        if self.type.uses_time_in_force:
            params["timeInForce"] = self.time_in_force or "GTC"
        if self.stop_price is not None:
            params["stopPrice"] = self.stop_price
        params["newClientOrderId"] = self.client_order_id
        return params


@dataclass(frozen=True)
class OrderAck:
    order_id: str
    client_order_id: str
    symbol: str
    status: str
    filled_quantity: Decimal
    average_price: Decimal | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "OrderAck":
        """Map a spot or USD-M order response.

        Spot reports cummulativeQuoteQty, futures reports avgPrice.
        """
        filled = Decimal(str(data.get("executedQty", "0")))
        average: Decimal | None = None
        if data.get("avgPrice") not in (None, ""):
            average = Decimal(str(data["avgPrice"]))
        elif filled > 0 and data.get("cummulativeQuoteQty") not in (None, ""):
            average = Decimal(str(data["cummulativeQuoteQty"])) / filled
        if average is not None and average == 0 and filled == 0:
            average = None
        return cls(
            order_id=str(data["orderId"]),
            client_order_id=str(data.get("clientOrderId", "")),
            symbol=data.get("symbol", ""),
            status=str(data.get("status", "")).lower(),
            filled_quantity=filled,
            average_price=average,
        )


class Balance:
    """Represents account balance for a single asset."""

    def __init__(self, asset: str, free: Decimal, used: Decimal):
        self.asset = asset
        self.free = free
        self.used = used

    @property
    def total(self) -> Decimal:
        return self.free + self.used

    def __repr__(self) -> str:
        return f"Balance(asset={self.asset!r}, free={self.free}, used={self.used})"


class PriceUpdate:
    """Represents a last-price quote."""

    def __init__(self, symbol: str, price: Decimal, timestamp: int | None = None):
        self.symbol = symbol
        self.price = price
        self.timestamp = timestamp

    def __repr__(self) -> str:
        return f"PriceUpdate(symbol={self.symbol!r}, price={self.price}, timestamp={self.timestamp})"


class SubscriptionState(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"


@dataclass
class Subscription:
    """One tracked (channel, symbol) pair."""

    channel: str
    symbol: str
    state: SubscriptionState = SubscriptionState.PENDING

    @property
    def stream(self) -> str:
        return f"{self.symbol.lower()}@{self.channel}"


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ACTIVE = "active"
    DEGRADED = "degraded"


# Payloads without an "e" field, told apart by their keys.
_UNTYPED_EVENTS = (
    ({"u", "s", "b", "B", "a", "A"}, "bookTicker"),
    ({"lastUpdateId", "bids", "asks"}, "depthSnapshot"),
)

# Event type -> channel it was subscribed under, where the two differ.
_EVENT_CHANNELS = {
    "depthUpdate": "depth",
    "24hrTicker": "ticker",
    "24hrMiniTicker": "miniTicker",
    "markPriceUpdate": "markPrice",
    "depthSnapshot": "depth",
}


@dataclass(frozen=True)
class MarketEvent:
    """A decoded stream message."""

    stream: str
    event_type: str
    symbol: str | None
    event_time: int | None
    data: dict[str, Any]
    kline: KlineRecord | None = None

    @classmethod
    def decode(cls, payload: dict[str, Any], *, stream: str | None = None) -> "MarketEvent":
        """Decode a raw or combined-stream payload.

        Combined-stream frames carry the exact stream name. For raw frames it
        is rebuilt from the symbol and the channel matching the event type.
        """
        if "stream" in payload and "data" in payload:
            stream = payload["stream"]
            payload = payload["data"]
        if not isinstance(payload, dict):
            raise ValueError(f"Event payload is not an object: {payload!r:.100}")

        event_type = payload.get("e")
        if event_type is None:
            keys = set(payload)
            event_type = next((name for required, name in _UNTYPED_EVENTS if required <= keys), "unknown")

        symbol = payload.get("s")
        kline = None
        if event_type == "kline" and isinstance(payload.get("k"), dict):
            kline = KlineRecord.from_stream(payload["k"])
            symbol = symbol or payload["k"].get("s")

        if stream is None:
            if kline is not None:
                channel = f"kline_{payload['k']['i']}"
            else:
                channel = _EVENT_CHANNELS.get(event_type, event_type)
            stream = f"{symbol.lower()}@{channel}" if symbol else channel

        event_time = payload.get("E")
        return cls(
            stream=stream,
            event_type=event_type,
            symbol=symbol,
            event_time=int(event_time) if event_time is not None else None,
            data=payload,
            kline=kline,
        )
