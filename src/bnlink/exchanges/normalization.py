"""Symbol, channel, interval and time normalization for Binance requests."""

from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from typing import Iterable

from ..errors import ValidationError

# Kline granularities accepted by /klines and kline_<interval> streams.
INTERVAL_MS: dict[str, int | None] = {
    "1s": 1_000,
    "1m": 60_000,
    "3m": 3 * 60_000,
    "5m": 5 * 60_000,
    "15m": 15 * 60_000,
    "30m": 30 * 60_000,
    "1h": 3_600_000,
    "2h": 2 * 3_600_000,
    "4h": 4 * 3_600_000,
    "6h": 6 * 3_600_000,
    "8h": 8 * 3_600_000,
    "12h": 12 * 3_600_000,
    "1d": 86_400_000,
    "3d": 3 * 86_400_000,
    "1w": 7 * 86_400_000,
    "1M": None,  # calendar month, variable length
}

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_SYMBOL_RE = re.compile(r"^[A-Z0-9]{2,30}$")
_CHANNEL_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_@!]*$")


def normalize_symbol(symbol: str) -> str:
    """Normalize a symbol to the exchange's unified format.

    - BTCUSDT -> BTCUSDT
    - btc-usdt -> BTCUSDT
    - BTC/USDT -> BTCUSDT
    """
    if not symbol:
        return symbol
    return symbol.strip().replace("-", "").replace("/", "").replace(" ", "").upper()


def validate_symbol(symbol: str) -> str:
    """Return the normalized symbol or raise ValidationError."""
    if not isinstance(symbol, str):
        raise ValidationError(f"Symbol must be a string, got {type(symbol).__name__}")
    unified = normalize_symbol(symbol)
    if not _SYMBOL_RE.match(unified):
        raise ValidationError(f"Malformed symbol: {symbol!r}")
    return unified


def validate_symbols(symbols: str | Iterable[str]) -> list[str]:
    """Normalize a symbol or list of symbols, dropping duplicates but keeping order."""
    if isinstance(symbols, str):
        symbols = [symbols]
    result: list[str] = []
    for symbol in symbols:
        unified = validate_symbol(symbol)
        if unified not in result:
            result.append(unified)
    if not result:
        raise ValidationError("At least one symbol is required")
    return result


def validate_interval(interval: str) -> str:
    if interval not in INTERVAL_MS:
        supported = ", ".join(INTERVAL_MS)
        raise ValidationError(f"Unsupported interval: {interval!r}. Supported intervals: {supported}")
    return interval


def validate_channel(channel: str) -> str:
    """Check a stream channel such as ``aggTrade``, ``kline_4h`` or ``depth20@100ms``."""
    if not isinstance(channel, str) or not _CHANNEL_RE.match(channel):
        raise ValidationError(f"Malformed channel: {channel!r}")
    if channel.startswith("kline_"):
        validate_interval(channel[len("kline_"):])
    return channel


def stream_name(symbol: str, channel: str) -> str:
    """Build the exchange stream identifier ``{symbol_lowercase}@{channel}``."""
    return f"{symbol.lower()}@{channel}"


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_time_ms(value: str | datetime | int | None, *, field: str = "time") -> int | None:
    """Convert a UTC time given as ``YYYY-MM-DD HH:MM:SS``, datetime or epoch ms.

    Empty strings and None return None. Naive datetimes are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field}: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValidationError(f"Invalid {field}: {value!r}")
        return value
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    if isinstance(value, str):
        try:
            dt = datetime.strptime(value.strip(), TIME_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError as exc:
            raise ValidationError(
                f"Invalid {field} {value!r}, expected format {TIME_FORMAT}"
            ) from exc
        return int(dt.timestamp() * 1000)
    raise ValidationError(f"Invalid {field} type: {type(value).__name__}")
