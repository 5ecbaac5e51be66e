"""WebSocket subscription manager with liveness checks and reconnect-with-resubscribe.

One manager owns one logical connection. A single run task drives the
connection state machine::

    DISCONNECTED -> CONNECTING -> CONNECTED -> ACTIVE <-> DEGRADED -> DISCONNECTED

On every (re)connect, every tracked subscription is resent and acknowledged
before the state becomes ACTIVE. Subscribe, unsubscribe and resubscribe are
serialized by one lock so a reconnect never resends a stale set.

Usage::

    manager = StreamManager("wss://stream.binance.com:9443/stream")
    await manager.start()
    await manager.subscribe(["BTCUSDT", "ETHUSDT"], "aggTrade")
    async for event in manager.events():
        print(event.stream, event.data)
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable

import aiohttp

from ..errors import BnlinkError, ExchangeRejected, TransportError, ValidationError
from .models import ConnectionState, MarketEvent, Subscription, SubscriptionState
from .normalization import stream_name, validate_channel, validate_symbols
from .transport import ProxyConfig, RetryPolicy

logger = logging.getLogger(__name__)

# Keeps control messages well under the exchange's per-message limits.
MAX_STREAMS_PER_MESSAGE = 200

_CLOSED = object()


def _rejection(error: Any) -> ExchangeRejected:
    """Build the error for a control reply, tolerating malformed payloads."""
    if not isinstance(error, dict):
        return ExchangeRejected(0, str(error))
    try:
        code = int(error.get("code", 0))
    except (TypeError, ValueError):
        code = 0
    return ExchangeRejected(code, str(error.get("msg", "")))


class StreamManager:
    """Multiplexed, self-healing stream connection.

    Parameters
    ----------
    url : str
        WebSocket endpoint, e.g. ``wss://fstream.binance.com/stream``.
    scope : str
        ``"market"`` accepts subscriptions. ``"account"`` is a user-data
        stream addressed by listen key and rejects them.
    liveness_timeout : float
        Seconds without any frame before the connection is checked with a
        ping (DEGRADED), and again before it is dropped.
    ack_timeout : float
        Seconds to wait for a SUBSCRIBE/UNSUBSCRIBE acknowledgement.
    queue_size : int
        Bound of the event buffer.
    consumer_timeout : float
        Seconds a full buffer may wait on the consumer before the manager
        gives up and closes.
    max_reconnect_attempts : int
        Consecutive failed connection attempts before the manager closes
        and surfaces a TransportError to the consumer.
    keepalive : callable, optional
        Coroutine function run every ``keepalive_interval`` seconds while
        open, used to refresh listen keys.
    """

    def __init__(
        self,
        url: str,
        *,
        scope: str = "market",
        liveness_timeout: float = 30.0,
        ack_timeout: float = 10.0,
        connect_timeout: float = 10.0,
        queue_size: int = 1000,
        consumer_timeout: float = 30.0,
        reconnect_policy: RetryPolicy | None = None,
        max_reconnect_attempts: int = 10,
        keepalive: Callable[[], Awaitable[Any]] | None = None,
        keepalive_interval: float = 1800.0,
        proxy: ProxyConfig | None = None,
    ):
        self.url = url
        self.scope = scope
        self.liveness_timeout = liveness_timeout
        self.ack_timeout = ack_timeout
        self.connect_timeout = connect_timeout
        self.consumer_timeout = consumer_timeout
        self.reconnect_policy = reconnect_policy or RetryPolicy(initial_delay=1.0, max_delay=60.0)
        self.max_reconnect_attempts = max_reconnect_attempts
        self.keepalive_interval = keepalive_interval
        self.proxy = proxy or ProxyConfig()
        self.last_pong: float | None = None
        self.last_message_at: float | None = None

        self._keepalive = keepalive
        self._state = ConnectionState.DISCONNECTED
        self._closed = False
        self._ready = False
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._pending: dict[int, tuple[str, list[str], asyncio.Future[None]]] = {}
        self._ids = itertools.count(1)
        self._active = asyncio.Event()
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._session: aiohttp.ClientSession | None = None
        self._run_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._consumer_attached = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriptions(self) -> dict[str, Subscription]:
        """Snapshot of tracked subscriptions keyed by stream name."""
        return {name: Subscription(s.channel, s.symbol, s.state) for name, s in self._subscriptions.items()}

    async def start(self) -> None:
        """Start the connection task. Returns without waiting for the handshake."""
        if self._closed:
            raise TransportError("Stream manager is closed")
        if self._run_task is not None:
            return
        self._run_task = asyncio.create_task(self._run(), name=f"bnlink-stream-{self.scope}")
        if self._keepalive is not None:
            self._keepalive_task = asyncio.create_task(self._keepalive_loop(), name="bnlink-keepalive")

    async def wait_active(self, timeout: float | None = None) -> None:
        try:
            await asyncio.wait_for(self._active.wait(), timeout)
        except asyncio.TimeoutError:
            raise TransportError(f"Stream did not become active within {timeout}s") from None

    async def subscribe(self, symbols: str | Iterable[str], channel: str) -> list[str]:
        """Track (channel, symbol) pairs and subscribe them when the connection is up.

        Returns the stream names that were newly added. Pairs that are
        already tracked, unless FAILED, are left alone and produce no message.
        """
        self._check_subscribable()
        channel = validate_channel(channel)
        symbols = validate_symbols(symbols)
        async with self._lock:
            added: list[str] = []
            for symbol in symbols:
                name = stream_name(symbol, channel)
                current = self._subscriptions.get(name)
                if current is not None and current.state is not SubscriptionState.FAILED:
                    continue
                self._subscriptions[name] = Subscription(channel=channel, symbol=symbol)
                added.append(name)
            if not added:
                return added
            if self._is_live():
                await self._send_in_chunks("SUBSCRIBE", added)
            else:
                logger.debug("Deferring subscription of %s until connected", added)
            return added

    async def unsubscribe(self, symbols: str | Iterable[str], channel: str) -> list[str]:
        """Stop tracking (channel, symbol) pairs; returns the removed stream names."""
        self._check_subscribable()
        channel = validate_channel(channel)
        symbols = validate_symbols(symbols)
        async with self._lock:
            removed = [
                name
                for name in (stream_name(symbol, channel) for symbol in symbols)
                if self._subscriptions.pop(name, None) is not None
            ]
            if removed and self._is_live():
                await self._send_in_chunks("UNSUBSCRIBE", removed)
            return removed

    async def events(self) -> AsyncIterator[MarketEvent]:
        """Yield decoded events until the manager closes.

        Only one consumer may iterate. Abandoning the iterator closes the
        manager.
        """
        if self._consumer_attached:
            raise RuntimeError("events() already has a consumer; create a new stream manager")
        self._consumer_attached = True
        try:
            while True:
                item = await self._queue.get()
                if item is _CLOSED:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            if not self._closed:
                logger.info("Event consumer detached, closing stream")
                await self.close()

    async def close(self) -> None:
        """Close the connection for good. No reconnect is attempted afterwards."""
        self._shutdown()
        current = asyncio.current_task()
        tasks = [
            t for t in (self._run_task, self._keepalive_task)
            if t is not None and not t.done() and t is not current
        ]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._run_task = None
        self._keepalive_task = None
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def __aenter__(self) -> "StreamManager":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    @property
    def _log_url(self) -> str:
        if self.scope == "account":
            return self.url.rsplit("/", 1)[0] + "/***"
        return self.url

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _connect(self) -> aiohttp.ClientWebSocketResponse:
        session = await self._ensure_session()
        return await asyncio.wait_for(
            session.ws_connect(self.url, autoping=False, proxy=self.proxy.proxy_url),
            self.connect_timeout,
        )

    async def _run(self) -> None:
        failures = 0
        try:
            while not self._closed:
                self._set_state(ConnectionState.CONNECTING)
                logger.info("Connecting to %s", self._log_url)
                try:
                    ws = await self._connect()
                except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                    failures += 1
                    logger.warning(
                        "Connection to %s failed (%d/%d): %s",
                        self._log_url, failures, self.max_reconnect_attempts, exc,
                    )
                    self._set_state(ConnectionState.DISCONNECTED)
                    if not await self._backoff(failures, exc):
                        return
                    continue

                self._ws = ws
                self._ready = False
                self.last_pong = self.last_message_at = time.monotonic()
                self._set_state(ConnectionState.CONNECTED)
                reader = asyncio.create_task(self._read_loop(ws), name="bnlink-stream-reader")
                try:
                    await self._resubscribe()
                    failures = 0
                    await reader
                except TransportError as exc:
                    logger.warning("Resubscribe on %s failed: %s", self._log_url, exc)
                finally:
                    if not reader.done():
                        reader.cancel()
                        with contextlib.suppress(asyncio.CancelledError):
                            await reader
                    self._ws = None
                    self._ready = False
                    await ws.close()

                if self._closed:
                    return
                self._set_state(ConnectionState.DISCONNECTED)
                failures += 1
                if not await self._backoff(failures, TransportError("Connection lost")):
                    return
        except Exception as exc:
            logger.exception("Stream %s stopped on an unexpected error", self._log_url)
            self._shutdown(TransportError(f"Stream {self._log_url} failed: {exc!r}"))
        finally:
            self._fail_pending(TransportError("Stream connection closed"))
            self._set_state(ConnectionState.DISCONNECTED)
            if self._closed and self._session is not None:
                await self._session.close()
                self._session = None

    async def _backoff(self, failures: int, error: BaseException) -> bool:
        """Sleep before the next attempt. Returns False once the budget is spent."""
        if failures >= self.max_reconnect_attempts:
            logger.error("Giving up on %s after %d failed attempts", self._log_url, failures)
            self._shutdown(TransportError(f"Stream reconnect failed after {failures} attempts: {error}"))
            return False
        delay = self.reconnect_policy.delay(failures)
        logger.info("Reconnecting to %s in %.2fs", self._log_url, delay)
        await asyncio.sleep(delay)
        return not self._closed

    async def _resubscribe(self) -> None:
        async with self._lock:
            streams = list(self._subscriptions)
            for sub in self._subscriptions.values():
                sub.state = SubscriptionState.PENDING
            if streams:
                logger.info("Resubscribing %d stream(s)", len(streams))
                try:
                    await self._send_in_chunks("SUBSCRIBE", streams)
                except ExchangeRejected as exc:
                    logger.error("Exchange rejected resubscription: %s", exc)
            self._ready = True
            if self._state is ConnectionState.CONNECTED:
                self._set_state(ConnectionState.ACTIVE)

    async def _keepalive_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.keepalive_interval)
            try:
                await self._keepalive()
            except BnlinkError as exc:
                logger.warning("Stream keepalive failed: %s", exc)

    def _shutdown(self, error: BaseException | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._active.clear()
        terminal = error if error is not None else _CLOSED
        try:
            self._queue.put_nowait(terminal)
        except asyncio.QueueFull:
            # Make room for the terminal marker by dropping the oldest event.
            self._queue.get_nowait()
            self._queue.put_nowait(terminal)
        logger.info("Stream %s closed", self._log_url)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("Stream %s: %s -> %s", self._log_url, self._state.value, state.value)
        self._state = state
        if state is ConnectionState.ACTIVE:
            self._active.set()
        else:
            self._active.clear()

    def _is_live(self) -> bool:
        return self._ready and self._state in (ConnectionState.ACTIVE, ConnectionState.DEGRADED)

    def _check_subscribable(self) -> None:
        if self.scope != "market":
            raise ValidationError(f"{self.scope} streams do not accept subscriptions")
        if self._closed:
            raise TransportError("Stream manager is closed")

    # ------------------------------------------------------------------
    # Control messages
    # ------------------------------------------------------------------

    async def _send_in_chunks(self, method: str, streams: list[str]) -> None:
        for i in range(0, len(streams), MAX_STREAMS_PER_MESSAGE):
            await self._send_control(method, streams[i : i + MAX_STREAMS_PER_MESSAGE])

    async def _send_control(self, method: str, streams: list[str]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise TransportError("Stream is not connected")
        request_id = next(self._ids)
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (method, list(streams), future)
        timed_out = False
        try:
            await ws.send_str(json.dumps({"method": method, "params": list(streams), "id": request_id}))
            await asyncio.wait_for(future, self.ack_timeout)
        except asyncio.TimeoutError:
            # The reader may be held up by a full event buffer. The entry stays
            # registered so a late acknowledgement still updates the pairs.
            timed_out = True
            if method == "SUBSCRIBE":
                self._mark(streams, SubscriptionState.FAILED, only=SubscriptionState.PENDING)
            raise TransportError(
                f"No acknowledgement for {method} id={request_id} within {self.ack_timeout}s"
            ) from None
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise TransportError(f"Failed to send {method}: {exc}") from exc
        finally:
            if not timed_out:
                self._pending.pop(request_id, None)

    def _mark(self, streams: list[str], state: SubscriptionState, *, only: SubscriptionState | None = None) -> None:
        for name in streams:
            sub = self._subscriptions.get(name)
            if sub is not None and (only is None or sub.state is only):
                sub.state = state

    def _handle_ack(self, payload: dict[str, Any]) -> None:
        request_id = payload.get("id")
        entry = self._pending.pop(request_id, None) if isinstance(request_id, int) else None
        if entry is None:
            logger.debug("Unmatched control response: %s", payload)
            return
        method, streams, future = entry
        error = payload.get("error")
        if error is None and "code" in payload:
            error = payload
        if error:
            if method == "SUBSCRIBE":
                self._mark(streams, SubscriptionState.FAILED)
            if not future.done():
                future.set_exception(_rejection(error))
            return
        if method == "SUBSCRIBE":
            self._mark(streams, SubscriptionState.ACTIVE)
        if not future.done():
            future.set_result(None)

    def _fail_pending(self, error: BaseException) -> None:
        for _, _, future in list(self._pending.values()):
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            while not self._closed:
                try:
                    msg = await ws.receive(timeout=self.liveness_timeout)
                except asyncio.TimeoutError:
                    if self._state is ConnectionState.DEGRADED:
                        logger.warning("No pong from %s, dropping connection", self._log_url)
                        return
                    logger.warning(
                        "No data from %s for %.1fs, probing with ping", self._log_url, self.liveness_timeout
                    )
                    self._set_state(ConnectionState.DEGRADED)
                    await ws.ping()
                    continue

                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._mark_alive()
                    if not await self._dispatch(msg.data):
                        return
                elif msg.type == aiohttp.WSMsgType.PING:
                    self._mark_alive()
                    await ws.pong(msg.data)
                elif msg.type == aiohttp.WSMsgType.PONG:
                    self.last_pong = time.monotonic()
                    self._mark_alive()
                elif msg.type in (
                    aiohttp.WSMsgType.CLOSE,
                    aiohttp.WSMsgType.CLOSING,
                    aiohttp.WSMsgType.CLOSED,
                ):
                    logger.info("Stream %s closed by peer", self._log_url)
                    return
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self._set_state(ConnectionState.DEGRADED)
                    logger.warning("Read error on %s: %s", self._log_url, ws.exception())
                    return
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            logger.warning("Stream %s read failed: %s", self._log_url, exc)
        finally:
            self._fail_pending(TransportError("Connection lost"))

    def _mark_alive(self) -> None:
        self.last_message_at = time.monotonic()
        if self._state is ConnectionState.DEGRADED:
            self._set_state(ConnectionState.ACTIVE if self._ready else ConnectionState.CONNECTED)

    async def _dispatch(self, raw: str) -> bool:
        """Handle one text frame. Returns False when the manager must stop reading."""
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding non-JSON frame: %.200s", raw)
            return True
        if not isinstance(payload, dict):
            logger.debug("Discarding non-object frame: %.200s", raw)
            return True
        if "id" in payload and ("result" in payload or "error" in payload or "code" in payload):
            self._handle_ack(payload)
            return True
        try:
            event = MarketEvent.decode(payload)
        except (KeyError, TypeError, ValueError, AttributeError, ArithmeticError) as exc:
            logger.warning("Failed to decode event: %s", exc)
            return True
        return await self._publish(event)

    async def _publish(self, event: MarketEvent) -> bool:
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            pass
        try:
            await asyncio.wait_for(self._queue.put(event), self.consumer_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                "Event consumer stalled for %.1fs with %d buffered events, closing %s",
                self.consumer_timeout, self._queue.qsize(), self._log_url,
            )
            self._shutdown()
            return False
