"""HMAC-SHA256 request signing."""

from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Mapping
from urllib.parse import urlencode

RESERVED_PARAMS = frozenset({"timestamp", "recvWindow", "signature"})


def format_param(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def canonical_params(
    params: Mapping[str, Any], timestamp: int, recv_window: int
) -> list[tuple[str, str]]:
    """Ordered pairs covered by the signature: caller params, recvWindow, timestamp."""
    reserved = RESERVED_PARAMS.intersection(params)
    if reserved:
        raise ValueError(f"Reserved signing parameters supplied by caller: {sorted(reserved)}")
    pairs = [(key, format_param(value)) for key, value in params.items() if value is not None]
    pairs.append(("recvWindow", str(int(recv_window))))
    pairs.append(("timestamp", str(int(timestamp))))
    return pairs


def sign(params: Mapping[str, Any], secret: str, timestamp: int, recv_window: int) -> str:
    """Return the lowercase hex HMAC-SHA256 of the serialized parameters.

    Pure function: identical inputs always produce the same signature.
    """
    payload = urlencode(canonical_params(params, timestamp, recv_window))
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class SignedRequest:
    method: str
    path: str
    params: tuple[tuple[str, str], ...]
    timestamp: int
    recv_window: int
    signature: str

    @property
    def query_string(self) -> str:
        """Query string exactly as signed, with the signature appended."""
        return f"{urlencode(self.params)}&signature={self.signature}"


class RequestSigner:
    """Signs requests with a shared secret and a non-decreasing clock."""

    def __init__(
        self,
        api_secret: str,
        recv_window_ms: int = 5000,
        *,
        clock: Callable[[], float] | None = None,
    ):
        self._secret = api_secret
        self.recv_window_ms = recv_window_ms
        self._clock = clock or time.time
        self.time_offset_ms = 0
        self._last_timestamp = 0

    def timestamp(self) -> int:
        ts = int(self._clock() * 1000) + self.time_offset_ms
        if ts < self._last_timestamp:
            ts = self._last_timestamp
        self._last_timestamp = ts
        return ts

    def sign_request(self, method: str, path: str, params: Mapping[str, Any] | None = None) -> SignedRequest:
        """Build a SignedRequest with a timestamp read at call time."""
        params = params or {}
        timestamp = self.timestamp()
        pairs = canonical_params(params, timestamp, self.recv_window_ms)
        signature = sign(params, self._secret, timestamp, self.recv_window_ms)
        return SignedRequest(
            method=method.upper(),
            path=path,
            params=tuple(pairs),
            timestamp=timestamp,
            recv_window=self.recv_window_ms,
            signature=signature,
        )
