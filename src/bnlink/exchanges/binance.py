"""Binance exchange client: REST history, streams and order placement."""

from __future__ import annotations

import functools
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable

from ..errors import AmbiguousOrderState, ConfigError, TransportError, ValidationError
from .endpoints import MAX_KLINE_PAGE, Credentials, EndpointSet, Market, resolve_endpoints, resolve_path
from .models import (
    Balance,
    KlineRecord,
    OrderAck,
    OrderRequest,
    OrderType,
    PriceUpdate,
    Side,
    new_client_order_id,
    to_decimal,
)
from .normalization import now_ms, parse_time_ms, validate_interval, validate_symbol
from .signer import RequestSigner
from .stream import StreamManager
from .transport import ProxyConfig, RateLimitTable, RestTransport, RetryPolicy

logger = logging.getLogger(__name__)

STREAM_SCOPES = ("market", "account")


class BinanceClient:
    """Binance spot / USD-M futures client.

    Construction is purely local. Call :meth:`sync_time` to align the
    signing clock with the server before trading if the host clock drifts.
    """

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        market: str | Market = Market.SPOT,
        *,
        sandbox: bool = False,
        proxy: ProxyConfig | None = None,
        recv_window_ms: int = 5000,
        timeout: float = 10.0,
        page_limit: int = 1000,
        retry_policy: RetryPolicy | None = None,
        rate_limits: RateLimitTable | None = None,
        stream_options: dict[str, Any] | None = None,
    ):
        """Initialize the client.

        Args:
            api_key: API key, may be empty for market data only
            api_secret: API secret, may be empty for market data only
            market: 'spot' or 'swap'
            sandbox: Use the testnet endpoints
            proxy: Proxy configuration
            recv_window_ms: Validity window of signed requests
            timeout: Per-request timeout in seconds
            page_limit: Klines requested per history page
            retry_policy: Backoff policy for REST retries
            rate_limits: Statuses and codes treated as rate limiting
            stream_options: Keyword arguments for every StreamManager

        Raises:
            ConfigError: If the market is unsupported or a limit is out of range
        """
        self.market = Market.parse(market)
        if recv_window_ms <= 0 or recv_window_ms > 60000:
            raise ConfigError(f"recv_window_ms must be in (0, 60000], got {recv_window_ms}")
        max_page = MAX_KLINE_PAGE[self.market]
        if page_limit <= 0 or page_limit > max_page:
            raise ConfigError(
                f"page_limit must be in (0, {max_page}] on the {self.market.value} market, got {page_limit}"
            )

        self.credentials = Credentials(api_key or "", api_secret or "", self.market)
        self.sandbox = sandbox
        self.endpoints: EndpointSet = resolve_endpoints(self.market, sandbox)
        self.proxy = proxy or ProxyConfig()
        self.page_limit = page_limit
        self.stream_options = dict(stream_options or {})
        self.signer = RequestSigner(self.credentials.api_secret, recv_window_ms)
        self.transport = RestTransport(
            self.endpoints,
            self.credentials.api_key,
            self.signer,
            timeout=timeout,
            retry_policy=retry_policy,
            rate_limits=rate_limits,
            proxy=self.proxy,
        )
        self.listen_key: str | None = None
        self._streams: list[StreamManager] = []

    @property
    def name(self) -> str:
        return f"binance-{self.market.value}"

    def _require_keys(self) -> None:
        if not self.credentials.has_keys:
            raise ConfigError("API key and secret are required for signed endpoints")

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def ping(self) -> None:
        await self.transport.send_public("GET", resolve_path(self.market, "ping"))

    async def get_server_time(self) -> int:
        response = await self.transport.send_public("GET", resolve_path(self.market, "time"))
        return int(response.data["serverTime"])

    async def sync_time(self) -> int:
        """Measure the server clock offset and apply it to request signing."""
        before = now_ms()
        server_time = await self.get_server_time()
        after = now_ms()
        offset = server_time - (before + after) // 2
        self.signer.time_offset_ms = offset
        logger.info("%s clock offset: %d ms", self.name, offset)
        return offset

    async def get_exchange_info(self) -> dict[str, Any]:
        response = await self.transport.send_public("GET", resolve_path(self.market, "exchange_info"))
        return response.data

    async def get_price(self, symbol: str | None = None) -> PriceUpdate | list[PriceUpdate]:
        """Fetch the last price for one symbol, or for every symbol if none is given."""
        params = {"symbol": validate_symbol(symbol)} if symbol else None
        response = await self.transport.send_public("GET", resolve_path(self.market, "ticker_price"), params)

        def _parse(item: dict[str, Any]) -> PriceUpdate:
            return PriceUpdate(item["symbol"], Decimal(str(item["price"])), item.get("time"))

        if isinstance(response.data, list):
            return [_parse(item) for item in response.data]
        return _parse(response.data)

    async def get_ticker(self, symbol: str | None = None) -> Any:
        """Fetch raw 24h ticker statistics."""
        params = {"symbol": validate_symbol(symbol)} if symbol else None
        response = await self.transport.send_public("GET", resolve_path(self.market, "ticker_24hr"), params)
        return response.data

    async def history_klines(
        self,
        symbol: str,
        interval: str,
        start: str | datetime | int,
        end: str | datetime | int | None = None,
    ) -> list[KlineRecord]:
        """Fetch every kline between ``start`` and ``end`` (UTC, inclusive).

        Times may be ``"YYYY-MM-DD HH:MM:SS"`` strings, datetimes or epoch
        milliseconds. An empty ``end`` runs the lookup up to now.
        """
        symbol = validate_symbol(symbol)
        interval = validate_interval(interval)
        if interval == "1s" and self.market is Market.SWAP:
            raise ValidationError("Interval '1s' is only available on the spot market")
        start_ms = parse_time_ms(start, field="start")
        if start_ms is None:
            raise ValidationError("start is required")
        end_ms = parse_time_ms(end, field="end")
        if end_ms is not None and end_ms < start_ms:
            raise ValidationError(f"end ({end}) is before start ({start})")

        return await self.transport.fetch_paginated_series(
            resolve_path(self.market, "klines"),
            symbol,
            interval,
            start_ms,
            end_ms,
            limit=self.page_limit,
        )

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    async def generate_websocket(self, scope: str = "market") -> StreamManager:
        """Create and start a stream manager.

        ``market`` connects to the combined stream endpoint so every event
        carries the exact stream name it was subscribed under. ``account``
        generates a listen key and connects to the user-data stream, keeping
        the key alive while the manager is open.
        """
        if scope not in STREAM_SCOPES:
            raise ValidationError(f"Unsupported websocket scope: {scope!r}. Supported scopes: {', '.join(STREAM_SCOPES)}")

        keepalive = None
        url = self.endpoints.combined_ws
        if scope == "account":
            listen_key = await self.listen_key_manager("generate")
            url = f"{self.endpoints.ws_base}/{listen_key}"
            keepalive = functools.partial(self.listen_key_manager, "keepalive")

        manager = StreamManager(url, scope=scope, keepalive=keepalive, proxy=self.proxy, **self.stream_options)
        await manager.start()
        self._streams = [m for m in self._streams if not m.closed]
        self._streams.append(manager)
        return manager

    async def subscribe_websocket(self, handle: StreamManager, symbols: str | Iterable[str], channel: str) -> list[str]:
        return await handle.subscribe(symbols, channel)

    async def unsubscribe_websocket(self, handle: StreamManager, symbols: str | Iterable[str], channel: str) -> list[str]:
        return await handle.unsubscribe(symbols, channel)

    async def listen_key_manager(self, action: str) -> str | None:
        """Generate, keep alive or delete the user-data stream listen key."""
        if not self.credentials.api_key:
            raise ConfigError("An API key is required for user-data streams")
        path = resolve_path(self.market, "listen_key")

        if action == "generate":
            response = await self.transport.send_keyed("POST", path)
            self.listen_key = str(response.data["listenKey"])
            logger.info("Generated %s listen key", self.name)
            return self.listen_key

        if action not in ("keepalive", "delete"):
            raise ValidationError(f"Unsupported listen key action: {action!r}")
        if not self.listen_key:
            raise ValidationError(f"No listen key to {action}")

        params = {"listenKey": self.listen_key} if self.market is Market.SPOT else None
        method = "PUT" if action == "keepalive" else "DELETE"
        await self.transport.send_keyed(method, path, params)
        if action == "delete":
            self.listen_key = None
        logger.debug("%s listen key %s", self.name, action)
        return None

    # ------------------------------------------------------------------
    # Trading and account
    # ------------------------------------------------------------------

    async def new_order(
        self,
        symbol: str,
        side: str | Side,
        order_type: str | OrderType,
        quantity: Decimal | str | float,
        price: Decimal | str | float | None = None,
        *,
        time_in_force: str | None = None,
        stop_price: Decimal | str | float | None = None,
        client_order_id: str | None = None,
    ) -> OrderAck:
        """Validate, sign and send an order.

        Never retried once the request may have reached the exchange: an
        unknown outcome raises AmbiguousOrderState carrying the
        client_order_id for reconciliation.
        """
        self._require_keys()
        request = OrderRequest(
            symbol=validate_symbol(symbol),
            side=Side.parse(side),
            type=OrderType.parse(order_type),
            quantity=to_decimal(quantity, field_name="quantity"),
            price=None if price is None else to_decimal(price, field_name="price"),
            stop_price=None if stop_price is None else to_decimal(stop_price, field_name="stop_price"),
            time_in_force=time_in_force.upper() if time_in_force else None,
            client_order_id=client_order_id or new_client_order_id(),
        )
        request.validate(self.market)

        logger.info(
            "Placing %s %s %s order qty=%s price=%s client_order_id=%s",
            request.symbol, request.side.value, request.type.value,
            request.quantity, request.price, request.client_order_id,
        )
        try:
            response = await self.transport.send_signed(
                "POST", resolve_path(self.market, "order"), request.to_params(), idempotent=False
            )
        except TransportError as exc:
            if not exc.ambiguous:
                raise
            logger.error(
                "Order %s on %s has an unknown outcome: %s", request.client_order_id, request.symbol, exc
            )
            raise AmbiguousOrderState(
                f"Order {request.client_order_id} outcome unknown: {exc}",
                symbol=request.symbol,
                client_order_id=request.client_order_id,
            ) from exc

        ack = OrderAck.from_payload(response.data)
        logger.info("Order %s accepted: status=%s filled=%s", ack.order_id, ack.status, ack.filled_quantity)
        return ack

    async def cancel_order(self, symbol: str, order_id: str | int) -> OrderAck:
        """Cancel one order."""
        self._require_keys()
        response = await self.transport.send_signed(
            "DELETE",
            resolve_path(self.market, "order"),
            {"symbol": validate_symbol(symbol), "orderId": order_id},
        )
        return OrderAck.from_payload(response.data)

    async def cancel_all_orders(self, symbol: str) -> Any:
        """Cancel every open order on ``symbol``; returns the raw exchange payload."""
        self._require_keys()
        response = await self.transport.send_signed(
            "DELETE", resolve_path(self.market, "cancel_all"), {"symbol": validate_symbol(symbol)}
        )
        return response.data

    async def pull_account(self) -> dict[str, Any]:
        self._require_keys()
        response = await self.transport.send_signed("GET", resolve_path(self.market, "account"))
        return response.data

    async def get_balance(self, asset: str | None = None) -> list[Balance] | Balance:
        """Fetch non-zero balances, or the balance of one asset."""
        self._require_keys()
        if self.market is Market.SPOT:
            data = await self.pull_account()
            balances = [
                Balance(b["asset"], Decimal(str(b["free"])), Decimal(str(b["locked"])))
                for b in data.get("balances", [])
            ]
        else:
            response = await self.transport.send_signed("GET", resolve_path(self.market, "balance"))
            balances = []
            for b in response.data:
                total = Decimal(str(b["balance"]))
                free = Decimal(str(b["availableBalance"]))
                balances.append(Balance(b["asset"], free, max(total - free, Decimal("0"))))

        balances = [b for b in balances if b.free > 0 or b.used > 0]
        if asset:
            for b in balances:
                if b.asset.upper() == asset.upper():
                    return b
            return Balance(asset.upper(), Decimal("0"), Decimal("0"))
        return balances

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close stream managers and the HTTP session."""
        for manager in self._streams:
            await manager.close()
        self._streams.clear()
        await self.transport.close()

    async def __aenter__(self) -> "BinanceClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
