"""Pytest configuration and fixtures."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

HOUR_MS = 3_600_000
# 2024-01-01 00:00:00 UTC
JAN_1_2024_MS = 1_704_067_200_000


def kline_row(open_time, interval_ms=HOUR_MS, close="1.5"):
    """Build one /klines response row."""
    return [
        open_time, "1.0", "2.0", "0.5", close, "10.0",
        open_time + interval_ms - 1, "15.0", 5, "4.0", "6.0", "0",
    ]


def create_async_response(status=200, json_data=None, headers=None, text=None):
    """Create a mock aiohttp response usable with ``async with``."""
    resp = MagicMock()
    resp.status = status
    resp.headers = headers or {}
    body = text if text is not None else ("" if json_data is None else json.dumps(json_data))
    resp.text = AsyncMock(return_value=body)
    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=None)
    return resp


def mock_session(*responses):
    """Session whose ``request`` returns the given responses in order.

    Exceptions in ``responses`` are raised instead of returned.
    """
    session = MagicMock()
    session.request = MagicMock(side_effect=list(responses))
    session.closed = False
    return session


class FakeWebSocket:
    """In-memory stand-in for aiohttp.ClientWebSocketResponse.

    Control messages are acknowledged automatically unless ``auto_ack`` is
    off. Streams listed in ``reject`` are answered with an error payload.
    """

    def __init__(self, auto_ack=True, reject=()):
        self.auto_ack = auto_ack
        self.reject = set(reject)
        self.sent = []
        self.pings = 0
        self.pongs = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def receive(self, timeout=None):
        return await asyncio.wait_for(self._incoming.get(), timeout)

    async def send_str(self, data):
        message = json.loads(data)
        self.sent.append(message)
        if not self.auto_ack:
            return
        if self.reject.intersection(message["params"]):
            self.push_json({"code": 2, "msg": "Invalid request", "id": message["id"]})
        else:
            self.push_json({"result": None, "id": message["id"]})

    async def ping(self, message=b""):
        self.pings += 1

    async def pong(self, message=b""):
        self.pongs.append(message)

    async def close(self):
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.CLOSED, data=None))

    def exception(self):
        return None

    def push_json(self, payload):
        self._incoming.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=json.dumps(payload)))

    def push(self, msg_type, data=None):
        self._incoming.put_nowait(SimpleNamespace(type=msg_type, data=data))

    def drop(self):
        """Simulate the peer closing the connection."""
        self.push(aiohttp.WSMsgType.CLOSE)

    @property
    def subscribe_messages(self):
        return [m for m in self.sent if m["method"] == "SUBSCRIBE"]


async def wait_until(predicate, timeout=1.0):
    """Yield to the loop until ``predicate()`` holds."""
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(_poll(), timeout)


def agg_trade(symbol="BTCUSDT", trade_id=1, price="42000.1"):
    return {
        "e": "aggTrade",
        "E": 1704067200123,
        "s": symbol,
        "a": trade_id,
        "p": price,
        "q": "0.01",
        "T": 1704067200120,
        "m": False,
    }


@pytest.fixture
def api_key():
    """Test API key."""
    return "test_api_key_123456"


@pytest.fixture
def api_secret():
    """Test API secret."""
    return "test_api_secret_789012"


@pytest.fixture
def sample_balance_response():
    """Sample spot account response data."""
    return {
        "balances": [
            {"asset": "BTC", "free": "0.5", "locked": "0.1"},
            {"asset": "ETH", "free": "10.0", "locked": "2.0"},
            {"asset": "USDT", "free": "1000.0", "locked": "0.0"},
            {"asset": "DOGE", "free": "0.0", "locked": "0.0"},
        ]
    }


@pytest.fixture
def sample_order_response():
    """Sample spot order response data."""
    return {
        "symbol": "BTCUSDT",
        "orderId": 123456789,
        "clientOrderId": "bnlink-abc",
        "transactTime": 1704067200000,
        "origQty": "0.5",
        "executedQty": "0.5",
        "cummulativeQuoteQty": "21000.0",
        "status": "FILLED",
        "type": "MARKET",
        "side": "BUY",
    }


@pytest.fixture
def sample_price_response():
    """Sample price response data."""
    return {"symbol": "BTCUSDT", "price": "45000.00"}
