"""aiohttp REST transport with retry, rate-limit backoff and pagination."""

from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping
from urllib.parse import urlencode

import aiohttp

from ..errors import ExchangeRejected, RateLimited, TransportError
from .endpoints import EndpointSet
from .models import KlineRecord
from .normalization import INTERVAL_MS, now_ms
from .signer import RequestSigner, format_param

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_STATUSES = frozenset({429, 418})
DEFAULT_RATE_LIMIT_CODES = frozenset({-1003, -1015})


class ProxyConfig:
    """HTTP proxy configuration."""

    def __init__(self, url: str | None = None, username: str | None = None, password: str | None = None):
        self.url = url
        self.username = username
        self.password = password

    @property
    def proxy_url(self) -> str | None:
        if not self.url:
            return None
        if self.username and self.password:
            protocol = self.url.split("://")[0] if "://" in self.url else "http"
            rest = self.url.split("://")[1] if "://" in self.url else self.url
            return f"{protocol}://{self.username}:{self.password}@{rest}"
        return self.url


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff."""

    max_attempts: int = 5
    initial_delay: float = 0.5
    max_delay: float = 8.0
    backoff_factor: float = 2.0
    jitter: bool = True

    def delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = self.initial_delay * (self.backoff_factor ** (attempt - 1))
        if self.jitter and delay > 0:
            delay += random.uniform(0, delay / 4)
        if retry_after:
            delay = max(delay, retry_after)
        return min(delay, self.max_delay)


@dataclass(frozen=True)
class RateLimitTable:
    """HTTP statuses and exchange error codes that signal rate limiting."""

    statuses: frozenset[int] = DEFAULT_RATE_LIMIT_STATUSES
    codes: frozenset[int] = DEFAULT_RATE_LIMIT_CODES

    @classmethod
    def from_lists(cls, statuses: Iterable[int], codes: Iterable[int]) -> "RateLimitTable":
        return cls(frozenset(statuses), frozenset(codes))


@dataclass
class Response:
    status: int
    data: Any
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def used_weight(self) -> int | None:
        for key, value in self.headers.items():
            if key.lower().startswith("x-mbx-used-weight"):
                try:
                    return int(value)
                except ValueError:
                    return None
        return None


class RestTransport:
    """Executes public, keyed and signed HTTP calls against one EndpointSet."""

    def __init__(
        self,
        endpoints: EndpointSet,
        api_key: str,
        signer: RequestSigner,
        *,
        timeout: float = 10.0,
        retry_policy: RetryPolicy | None = None,
        rate_limits: RateLimitTable | None = None,
        proxy: ProxyConfig | None = None,
    ):
        self.endpoints = endpoints
        self.api_key = api_key
        self.signer = signer
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limits = rate_limits or RateLimitTable()
        self.proxy = proxy or ProxyConfig()
        self.session: aiohttp.ClientSession | None = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            connector = aiohttp.TCPConnector()
            self.session = aiohttp.ClientSession(connector=connector)
        return self.session

    def _get_headers(self, keyed: bool) -> dict[str, str]:
        headers = {"User-Agent": "bnlink/1.0"}
        if keyed:
            headers["X-MBX-APIKEY"] = self.api_key
        return headers

    async def send_public(self, method: str, path: str, params: Mapping[str, Any] | None = None) -> Response:
        """Unauthenticated call, used for market data."""
        return await self._send(method, path, params, signed=False, keyed=False, idempotent=True)

    async def send_keyed(self, method: str, path: str, params: Mapping[str, Any] | None = None) -> Response:
        """Call carrying the API key header but no signature."""
        return await self._send(method, path, params, signed=False, keyed=True, idempotent=True)

    async def send_signed(
        self,
        method: str,
        path: str,
        params: Mapping[str, Any] | None = None,
        *,
        idempotent: bool = True,
    ) -> Response:
        """Signed call. Each attempt is re-signed with a fresh timestamp.

        With ``idempotent=False`` any failure that may have happened after the
        request reached the exchange raises ``TransportError(ambiguous=True)``
        instead of being retried.
        """
        return await self._send(method, path, params, signed=True, keyed=True, idempotent=idempotent)

    def _build_query(self, method: str, path: str, params: Mapping[str, Any] | None, signed: bool) -> str:
        if signed:
            return self.signer.sign_request(method, path, params).query_string
        pairs = [(k, format_param(v)) for k, v in (params or {}).items() if v is not None]
        return urlencode(pairs)

    async def _send(
        self,
        method: str,
        path: str,
        params: Mapping[str, Any] | None,
        *,
        signed: bool,
        keyed: bool,
        idempotent: bool,
    ) -> Response:
        method = method.upper()
        policy = self.retry_policy
        attempt = 0
        while True:
            attempt += 1
            query = self._build_query(method, path, params, signed)
            url = f"{self.endpoints.rest_base}{path}"
            if query:
                url = f"{url}?{query}"
            try:
                return await self._execute(method, url, self._get_headers(keyed))
            except RateLimited as exc:
                if attempt >= policy.max_attempts:
                    logger.error("%s %s rate limited after %d attempts", method, path, attempt)
                    raise
                delay = policy.delay(attempt, exc.retry_after)
                logger.warning(
                    "%s %s rate limited (attempt %d/%d), retrying in %.2fs",
                    method, path, attempt, policy.max_attempts, delay,
                )
            except TransportError as exc:
                if not idempotent and exc.ambiguous:
                    raise
                if exc.status is not None and exc.status < 500:
                    raise
                if attempt >= policy.max_attempts:
                    logger.error("%s %s failed after %d attempts: %s", method, path, attempt, exc)
                    raise
                delay = policy.delay(attempt)
                logger.warning(
                    "%s %s failed (attempt %d/%d): %s. Retrying in %.2fs",
                    method, path, attempt, policy.max_attempts, exc, delay,
                )
            await asyncio.sleep(delay)

    async def _execute(self, method: str, url: str, headers: dict[str, str]) -> Response:
        session = await self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with session.request(
                method, url, headers=headers, timeout=timeout, proxy=self.proxy.proxy_url
            ) as resp:
                text = await resp.text()
                return self._classify(resp.status, text, dict(resp.headers))
        except aiohttp.ClientConnectorError as exc:
            # Connection never established, nothing reached the exchange.
            raise TransportError(f"Connection to {self.endpoints.rest_base} failed: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise TransportError(f"{method} request timed out after {self.timeout}s", ambiguous=True) from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"{method} request failed: {exc}", ambiguous=True) from exc

    def _classify(self, status: int, text: str, headers: Mapping[str, str]) -> Response:
        try:
            data = json.loads(text) if text else None
        except json.JSONDecodeError:
            data = None

        if 200 <= status < 300:
            if data is None and text:
                raise TransportError(f"Unparseable response body (status {status})", status=status)
            return Response(status, data, headers)

        code = data.get("code") if isinstance(data, dict) else None
        message = data.get("msg", text) if isinstance(data, dict) else text

        if status in self.rate_limits.statuses or code in self.rate_limits.codes:
            retry_after = None
            raw = headers.get("Retry-After") or headers.get("retry-after")
            if raw:
                try:
                    retry_after = float(raw)
                except ValueError:
                    retry_after = None
            raise RateLimited(f"Rate limited ({status}): {message}", retry_after=retry_after, code=code)

        if status >= 500:
            # Binance documents 5xx as "execution status unknown".
            raise TransportError(f"Server error {status}: {message}", status=status, ambiguous=True)

        if code is not None:
            raise ExchangeRejected(int(code), str(message), status=status)

        raise TransportError(f"HTTP {status}: {message}", status=status)

    async def fetch_paginated_series(
        self,
        path: str,
        symbol: str,
        interval: str,
        start_ms: int,
        end_ms: int | None = None,
        *,
        limit: int = 1000,
    ) -> list[KlineRecord]:
        """Fetch every kline in [start_ms, end_ms], one page of ``limit`` at a time.

        Records come back ordered by open time without duplicates. ``end_ms``
        defaults to the current time.
        """
        if end_ms is None:
            end_ms = now_ms()
        step = INTERVAL_MS.get(interval)

        records: list[KlineRecord] = []
        cursor = start_ms
        pages = 0
        while cursor <= end_ms:
            response = await self.send_public(
                "GET",
                path,
                {
                    "symbol": symbol,
                    "interval": interval,
                    "startTime": cursor,
                    "endTime": end_ms,
                    "limit": limit,
                },
            )
            pages += 1
            page = [KlineRecord.from_rest(row) for row in response.data or []]
            for record in page:
                if record.open_time < start_ms or record.open_time > end_ms:
                    continue
                if records and record.open_time <= records[-1].open_time:
                    continue
                if records and step and record.open_time != records[-1].open_time + step:
                    logger.warning(
                        "Gap in %s %s klines between %d and %d",
                        symbol, interval, records[-1].open_time, record.open_time,
                    )
                records.append(record)

            if len(page) < limit:
                break
            next_cursor = page[-1].close_time + 1
            if next_cursor <= cursor:
                break
            cursor = next_cursor

        logger.debug("Fetched %d %s %s klines in %d page(s)", len(records), symbol, interval, pages)
        return records

    async def close(self) -> None:
        """Close connections."""
        if self.session:
            await self.session.close()
            self.session = None
