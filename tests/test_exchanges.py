"""Tests for BinanceClient with mocked HTTP responses."""

import asyncio
import functools
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs, urlsplit

import pytest

from bnlink.errors import (
    AmbiguousOrderState,
    ConfigError,
    ExchangeRejected,
    TransportError,
    ValidationError,
)
from bnlink.exchanges.binance import BinanceClient
from bnlink.exchanges.endpoints import Market
from bnlink.exchanges.models import Balance, OrderAck, PriceUpdate
from bnlink.exchanges.transport import RetryPolicy

from conftest import HOUR_MS, JAN_1_2024_MS, create_async_response, kline_row, mock_session


def make_client(*responses, market="spot", **kwargs):
    client = BinanceClient(
        "test_key",
        "test_secret",
        market,
        retry_policy=RetryPolicy(max_attempts=3, initial_delay=0, max_delay=0, jitter=False),
        **kwargs,
    )
    session = mock_session(*responses)
    client.transport._ensure_session = AsyncMock(return_value=session)
    return client, session


def sent(session, index=-1):
    call = session.request.call_args_list[index]
    method, url = call[0]
    parts = urlsplit(url)
    return method, parts.path, parse_qs(parts.query), call.kwargs["headers"]


class TestConstruction:
    """Tests for client construction."""

    def test_unsupported_market(self):
        """Test an unknown market raises ConfigError."""
        with pytest.raises(ConfigError):
            BinanceClient("k", "s", "margin")

    def test_market_endpoints(self):
        """Test market and sandbox select the endpoint set."""
        assert BinanceClient(market="spot").endpoints.rest_base == "https://api.binance.com"
        swap = BinanceClient(market="swap")
        assert swap.endpoints.rest_base == "https://fapi.binance.com"
        assert swap.endpoints.ws_base == "wss://fstream.binance.com/ws"
        assert BinanceClient(market="spot", sandbox=True).endpoints.rest_base == "https://testnet.binance.vision"

    def test_recv_window_bounds(self):
        """Test recv_window_ms outside (0, 60000] is rejected."""
        with pytest.raises(ConfigError):
            BinanceClient(recv_window_ms=0)
        with pytest.raises(ConfigError):
            BinanceClient(recv_window_ms=60001)

    def test_secret_not_in_repr(self):
        """Test the API secret does not leak through repr."""
        client = BinanceClient("key", "very-secret")
        assert "very-secret" not in repr(client.credentials)

    def test_name(self):
        assert BinanceClient(market="swap").name == "binance-swap"

    def test_page_limit_capped_per_market(self):
        """Test page_limit above the market's largest klines page is rejected."""
        assert BinanceClient(market="spot", page_limit=1000).page_limit == 1000
        assert BinanceClient(market="swap", page_limit=1500).page_limit == 1500
        with pytest.raises(ConfigError):
            BinanceClient(market="spot", page_limit=1500)
        with pytest.raises(ConfigError):
            BinanceClient(market="swap", page_limit=1501)
        with pytest.raises(ConfigError):
            BinanceClient(page_limit=0)

    def test_combined_stream_endpoint(self):
        assert BinanceClient().endpoints.combined_ws == "wss://stream.binance.com:9443/stream"
        assert BinanceClient(market="swap", sandbox=True).endpoints.combined_ws == "wss://stream.binancefuture.com/stream"


class TestHistoryKlines:
    """Tests for paginated kline history."""

    @pytest.mark.asyncio
    async def test_three_hour_window(self):
        """Test a 00:00 to 03:00 window of 1h klines returns four records."""
        rows = [kline_row(JAN_1_2024_MS + i * HOUR_MS) for i in range(4)]
        client, session = make_client(create_async_response(200, rows))

        records = await client.history_klines("BTCUSDT", "1h", "2024-01-01 00:00:00", "2024-01-01 03:00:00")

        assert len(records) == 4
        assert records[0].open_time == JAN_1_2024_MS
        assert records[-1].open_time == JAN_1_2024_MS + 3 * HOUR_MS
        for record in records:
            assert record.close_time == record.open_time + HOUR_MS - 1
        assert records[0].close == Decimal("1.5")

        method, path, query, headers = sent(session)
        assert method == "GET"
        assert path == "/api/v3/klines"
        assert query["symbol"] == ["BTCUSDT"]
        assert query["startTime"] == [str(JAN_1_2024_MS)]
        assert query["endTime"] == [str(JAN_1_2024_MS + 3 * HOUR_MS)]
        assert "X-MBX-APIKEY" not in headers
        await client.close()

    @pytest.mark.asyncio
    async def test_swap_path(self):
        """Test futures history uses the futures klines path."""
        client, session = make_client(create_async_response(200, []), market="swap")
        await client.history_klines("ETHUSDT", "4h", JAN_1_2024_MS, JAN_1_2024_MS + HOUR_MS)
        assert sent(session)[1] == "/fapi/v1/klines"

    @pytest.mark.asyncio
    async def test_full_pages_keep_paginating(self):
        """Test history spanning two full spot pages fetches both."""
        first = [kline_row(JAN_1_2024_MS + i * HOUR_MS) for i in range(1000)]
        second = [kline_row(JAN_1_2024_MS + i * HOUR_MS) for i in range(1000, 2000)]
        client, session = make_client(create_async_response(200, first), create_async_response(200, second))

        records = await client.history_klines("BTCUSDT", "1h", JAN_1_2024_MS, JAN_1_2024_MS + 1999 * HOUR_MS)

        assert len(records) == 2000
        assert session.request.call_count == 2
        assert sent(session, 0)[2]["limit"] == ["1000"]
        assert sent(session, 1)[2]["startTime"] == [str(JAN_1_2024_MS + 1000 * HOUR_MS)]

    @pytest.mark.asyncio
    async def test_invalid_interval_before_network(self):
        """Test an unsupported interval fails before any request."""
        client, session = make_client()
        with pytest.raises(ValidationError):
            await client.history_klines("BTCUSDT", "7m", "2024-01-01 00:00:00")
        assert session.request.call_count == 0

    @pytest.mark.asyncio
    async def test_invalid_inputs(self):
        """Test malformed symbols, times and inverted windows raise ValidationError."""
        client, session = make_client(market="swap")
        with pytest.raises(ValidationError):
            await client.history_klines("BTC$USDT", "1h", "2024-01-01 00:00:00")
        with pytest.raises(ValidationError):
            await client.history_klines("BTCUSDT", "1h", "01/01/2024")
        with pytest.raises(ValidationError):
            await client.history_klines("BTCUSDT", "1h", "2024-01-02 00:00:00", "2024-01-01 00:00:00")
        with pytest.raises(ValidationError):
            await client.history_klines("BTCUSDT", "1s", "2024-01-01 00:00:00")
        with pytest.raises(ValidationError):
            await client.history_klines("BTCUSDT", "1h", "")
        assert session.request.call_count == 0


class TestMarketData:
    """Tests for public market data helpers."""

    @pytest.mark.asyncio
    async def test_get_price(self, sample_price_response):
        client, session = make_client(create_async_response(200, sample_price_response))
        update = await client.get_price("btc-usdt")
        assert isinstance(update, PriceUpdate)
        assert update.symbol == "BTCUSDT"
        assert update.price == Decimal("45000.00")
        assert sent(session)[2]["symbol"] == ["BTCUSDT"]

    @pytest.mark.asyncio
    async def test_get_all_prices(self):
        client, _ = make_client(create_async_response(200, [
            {"symbol": "BTCUSDT", "price": "1"},
            {"symbol": "ETHUSDT", "price": "2"},
        ]))
        updates = await client.get_price()
        assert [u.symbol for u in updates] == ["BTCUSDT", "ETHUSDT"]

    @pytest.mark.asyncio
    async def test_sync_time_sets_offset(self):
        """Test sync_time applies the measured offset to the signer."""
        client, _ = make_client(create_async_response(200, {"serverTime": 10_000}))
        with patch("bnlink.exchanges.binance.now_ms", side_effect=[4_000, 6_000]):
            offset = await client.sync_time()
        assert offset == 5_000
        assert client.signer.time_offset_ms == 5_000

    @pytest.mark.asyncio
    async def test_exchange_info(self):
        client, session = make_client(create_async_response(200, {"symbols": [{"symbol": "BTCUSDT"}]}))
        info = await client.get_exchange_info()
        assert info["symbols"][0]["symbol"] == "BTCUSDT"
        assert sent(session)[1] == "/api/v3/exchangeInfo"


class TestNewOrder:
    """Tests for order placement."""

    @pytest.mark.asyncio
    async def test_market_order(self, sample_order_response):
        """Test a filled market order maps to an OrderAck."""
        client, session = make_client(create_async_response(200, sample_order_response))

        ack = await client.new_order("BTCUSDT", "buy", "market", "0.5")

        assert isinstance(ack, OrderAck)
        assert ack.order_id == "123456789"
        assert ack.status == "filled"
        assert ack.filled_quantity == Decimal("0.5")
        assert ack.average_price == Decimal("42000")

        method, path, query, headers = sent(session)
        assert method == "POST"
        assert path == "/api/v3/order"
        assert headers["X-MBX-APIKEY"] == "test_key"
        assert query["side"] == ["BUY"]
        assert query["type"] == ["MARKET"]
        assert query["quantity"] == ["0.5"]
        assert "timeInForce" not in query
        assert query["newClientOrderId"][0].startswith("bnlink-")
        assert "signature" in query and "timestamp" in query

    @pytest.mark.asyncio
    async def test_limit_order_params(self):
        """Test a limit order carries price and a default time in force."""
        client, session = make_client(create_async_response(200, {
            "orderId": 7, "clientOrderId": "mine-1", "symbol": "BTCUSDT",
            "status": "NEW", "executedQty": "0", "cummulativeQuoteQty": "0",
        }))
        ack = await client.new_order("BTCUSDT", "SELL", "LIMIT", Decimal("0.1"), "50000", client_order_id="mine-1")

        assert ack.status == "new"
        assert ack.average_price is None
        query = sent(session)[2]
        assert query["price"] == ["50000"]
        assert query["timeInForce"] == ["GTC"]
        assert query["newClientOrderId"] == ["mine-1"]

    @pytest.mark.asyncio
    async def test_timeout_is_ambiguous(self):
        """Test a timeout raises AmbiguousOrderState after exactly one request."""
        client, session = make_client(asyncio.TimeoutError(), create_async_response(200, {"orderId": 1}))

        with pytest.raises(AmbiguousOrderState) as exc_info:
            await client.new_order("BTCUSDT", "buy", "market", "0.5", client_order_id="reconcile-me")

        assert exc_info.value.client_order_id == "reconcile-me"
        assert exc_info.value.symbol == "BTCUSDT"
        assert session.request.call_count == 1

    @pytest.mark.asyncio
    async def test_server_error_is_ambiguous(self):
        """Test a 5xx answer to an order is reported as an unknown outcome."""
        client, session = make_client(create_async_response(503, text="Service Unavailable"))
        with pytest.raises(AmbiguousOrderState):
            await client.new_order("BTCUSDT", "buy", "market", "0.5")
        assert session.request.call_count == 1

    @pytest.mark.asyncio
    async def test_rejection(self):
        """Test an exchange rejection surfaces as ExchangeRejected."""
        client, _ = make_client(
            create_async_response(400, {"code": -2010, "msg": "Account has insufficient balance"})
        )
        with pytest.raises(ExchangeRejected) as exc_info:
            await client.new_order("BTCUSDT", "buy", "market", "100")
        assert exc_info.value.code == -2010

    @pytest.mark.asyncio
    async def test_validation_before_network(self):
        """Test malformed orders are rejected locally."""
        client, session = make_client()
        with pytest.raises(ValidationError):
            await client.new_order("BTCUSDT", "buy", "limit", "1")
        with pytest.raises(ValidationError):
            await client.new_order("BTCUSDT", "buy", "market", "1", "100")
        with pytest.raises(ValidationError):
            await client.new_order("BTCUSDT", "buy", "market", "0")
        with pytest.raises(ValidationError):
            await client.new_order("BTCUSDT", "hold", "market", "1")
        with pytest.raises(ValidationError):
            await client.new_order("BTCUSDT", "buy", "stop_market", "1", stop_price="100")
        with pytest.raises(ValidationError):
            await client.new_order("BTCUSDT", "buy", "limit", "1", "100", time_in_force="DAY")
        assert session.request.call_count == 0

    @pytest.mark.asyncio
    async def test_swap_stop_market(self):
        """Test futures-only order types are accepted on swap."""
        client, session = make_client(
            create_async_response(200, {"orderId": 9, "status": "NEW", "executedQty": "0", "avgPrice": "0.00000"}),
            market="swap",
        )
        ack = await client.new_order("BTCUSDT", "sell", "STOP_MARKET", "1", stop_price="39000")
        assert ack.average_price is None
        method, path, query, _ = sent(session)
        assert path == "/fapi/v1/order"
        assert query["stopPrice"] == ["39000"]

    @pytest.mark.asyncio
    async def test_requires_keys(self):
        """Test signed operations need credentials."""
        client = BinanceClient()
        with pytest.raises(ConfigError):
            await client.new_order("BTCUSDT", "buy", "market", "1")


class TestCancelAndAccount:
    """Tests for cancellation and account queries."""

    @pytest.mark.asyncio
    async def test_cancel_order(self):
        client, session = make_client(create_async_response(200, {
            "orderId": 5, "symbol": "BTCUSDT", "status": "CANCELED", "executedQty": "0",
        }))
        ack = await client.cancel_order("BTCUSDT", 5)
        assert ack.status == "canceled"
        method, path, query, _ = sent(session)
        assert method == "DELETE"
        assert path == "/api/v3/order"
        assert query["orderId"] == ["5"]

    @pytest.mark.asyncio
    async def test_cancel_all_orders(self):
        client, session = make_client(create_async_response(200, {"code": 200, "msg": "done"}), market="swap")
        await client.cancel_all_orders("BTCUSDT")
        assert sent(session)[1] == "/fapi/v1/allOpenOrders"

    @pytest.mark.asyncio
    async def test_get_balance(self, sample_balance_response):
        """Test spot balances are parsed and zero balances dropped."""
        client, _ = make_client(create_async_response(200, sample_balance_response))
        balances = await client.get_balance()

        assert [b.asset for b in balances] == ["BTC", "ETH", "USDT"]
        assert balances[0].free == Decimal("0.5")
        assert balances[0].used == Decimal("0.1")
        assert balances[0].total == Decimal("0.6")

    @pytest.mark.asyncio
    async def test_get_balance_specific_asset(self, sample_balance_response):
        client, _ = make_client(
            create_async_response(200, sample_balance_response),
            create_async_response(200, sample_balance_response),
        )
        balance = await client.get_balance("eth")
        assert isinstance(balance, Balance)
        assert balance.total == Decimal("12.0")

        missing = await client.get_balance("XRP")
        assert missing.total == Decimal("0")

    @pytest.mark.asyncio
    async def test_get_balance_swap(self):
        client, session = make_client(
            create_async_response(200, [
                {"asset": "USDT", "balance": "100.0", "availableBalance": "80.0"},
                {"asset": "BNB", "balance": "0", "availableBalance": "0"},
            ]),
            market="swap",
        )
        balances = await client.get_balance()
        assert len(balances) == 1
        assert balances[0].free == Decimal("80.0")
        assert balances[0].used == Decimal("20.0")
        assert sent(session)[1] == "/fapi/v2/balance"


class TestStreams:
    """Tests for stream creation and listen keys."""

    @pytest.mark.asyncio
    async def test_generate_market_websocket(self):
        with patch("bnlink.exchanges.binance.StreamManager") as manager_cls:
            manager_cls.return_value.start = AsyncMock()
            manager_cls.return_value.close = AsyncMock()
            client = BinanceClient(market="swap")
            handle = await client.generate_websocket()

            manager_cls.assert_called_once()
            assert manager_cls.call_args[0][0] == "wss://fstream.binance.com/stream"
            assert manager_cls.call_args.kwargs["scope"] == "market"
            handle.start.assert_awaited_once()

            await client.close()
            handle.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_generate_account_websocket(self):
        """Test the account scope connects with a fresh listen key and keeps it alive."""
        client, session = make_client(create_async_response(200, {"listenKey": "lk-123"}))
        with patch("bnlink.exchanges.binance.StreamManager") as manager_cls:
            manager_cls.return_value.start = AsyncMock()
            await client.generate_websocket("account")

        assert client.listen_key == "lk-123"
        assert manager_cls.call_args[0][0] == "wss://stream.binance.com:9443/ws/lk-123"
        keepalive = manager_cls.call_args.kwargs["keepalive"]
        assert isinstance(keepalive, functools.partial)
        assert keepalive.args == ("keepalive",)
        method, path, _, headers = sent(session)
        assert (method, path) == ("POST", "/api/v3/userDataStream")
        assert headers["X-MBX-APIKEY"] == "test_key"

    @pytest.mark.asyncio
    async def test_closed_managers_are_released(self):
        """Test managers that closed themselves are not kept until client.close()."""
        with patch("bnlink.exchanges.binance.StreamManager") as manager_cls:
            stale, fresh = MagicMock(closed=True), MagicMock(closed=False)
            for manager in (stale, fresh):
                manager.start = AsyncMock()
                manager.close = AsyncMock()
            manager_cls.side_effect = [stale, fresh]
            client = BinanceClient()

            await client.generate_websocket()
            await client.generate_websocket()
            await client.close()

        stale.close.assert_not_awaited()
        fresh.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_scope(self):
        client = BinanceClient()
        with pytest.raises(ValidationError):
            await client.generate_websocket("margin")

    @pytest.mark.asyncio
    async def test_listen_key_lifecycle(self):
        client, session = make_client(
            create_async_response(200, {"listenKey": "lk-1"}),
            create_async_response(200, {}),
            create_async_response(200, {}),
        )
        assert await client.listen_key_manager("generate") == "lk-1"

        await client.listen_key_manager("keepalive")
        method, _, query, _ = sent(session)
        assert method == "PUT"
        assert query["listenKey"] == ["lk-1"]

        await client.listen_key_manager("delete")
        assert sent(session)[0] == "DELETE"
        assert client.listen_key is None

        with pytest.raises(ValidationError):
            await client.listen_key_manager("keepalive")

    @pytest.mark.asyncio
    async def test_subscribe_delegates(self):
        client = BinanceClient()
        handle = MagicMock()
        handle.subscribe = AsyncMock(return_value=["btcusdt@aggTrade"])
        assert await client.subscribe_websocket(handle, "BTCUSDT", "aggTrade") == ["btcusdt@aggTrade"]
        handle.subscribe.assert_awaited_once_with("BTCUSDT", "aggTrade")


class TestMarketSelection:
    def test_market_parse(self):
        assert Market.parse("SWAP") is Market.SWAP
        with pytest.raises(ConfigError):
            Market.parse("options")

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries(self):
        """Test repeated 5xx on a read surfaces as TransportError after retries."""
        client, session = make_client(*[create_async_response(502, text="bad") for _ in range(3)])
        with pytest.raises(TransportError):
            await client.ping()
        assert session.request.call_count == 3
