"""Logging setup for the CLI and long-running stream consumers.

Every handler installed here carries a :class:`SecretMaskingFilter`, so
request signatures, API keys and listen keys are masked even in records
emitted by aiohttp.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE = "bnlink.log"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

# aiohttp logs every websocket frame at DEBUG.
NOISY_LOGGERS = ("aiohttp",)

_SECRET_PATTERNS = (
    re.compile(r"(signature=)[0-9a-fA-F]+"),
    re.compile(r"(X-MBX-APIKEY['\"]?\s*[:=]\s*['\"]?)[^'\"\s,}]+", re.IGNORECASE),
    re.compile(r"(listenKey['\"]?\s*[:=]\s*['\"]?)[^'\"\s,}&]+"),
)


class SecretMaskingFilter(logging.Filter):
    """Replace signatures, API keys and listen keys in a record with ``***``."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = message
        for pattern in _SECRET_PATTERNS:
            masked = pattern.sub(r"\1***", masked)
        if masked != message:
            record.msg = masked
            record.args = ()
        return True


def resolve_level(level: str | int | None = None) -> int:
    """Return a numeric level from ``level`` or ``BNLINK_LOG_LEVEL``; INFO if unknown."""
    if level is None:
        level = os.environ.get("BNLINK_LOG_LEVEL", "INFO")
    if isinstance(level, int):
        return level
    value = getattr(logging, str(level).strip().upper(), None)
    return value if isinstance(value, int) else logging.INFO


def configure_logging(log_dir: Path | str | None = None, level: str | int | None = None) -> None:
    """Install console logging and, with ``log_dir``, a rotating ``bnlink.log``.

    Handlers from earlier calls are replaced, so calling this twice does not
    duplicate output.
    """
    resolved = resolve_level(level)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                path / LOG_FILE, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS
            )
        )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(resolved)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    secrets = SecretMaskingFilter()
    for handler in handlers:
        handler.setLevel(resolved)
        handler.setFormatter(formatter)
        handler.addFilter(secrets)
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved, logging.INFO))
