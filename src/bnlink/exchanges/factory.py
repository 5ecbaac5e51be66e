"""Build exchange clients from settings."""

from __future__ import annotations

import logging
from typing import Any

from ..settings import Settings
from .binance import BinanceClient
from .transport import ProxyConfig, RateLimitTable, RetryPolicy

logger = logging.getLogger(__name__)


def stream_options_from_settings(settings: Settings) -> dict[str, Any]:
    stream = settings.stream
    return {
        "liveness_timeout": stream.liveness_timeout,
        "ack_timeout": stream.ack_timeout,
        "connect_timeout": stream.connect_timeout,
        "queue_size": stream.queue_size,
        "consumer_timeout": stream.consumer_timeout,
        "max_reconnect_attempts": stream.max_reconnect_attempts,
        "keepalive_interval": stream.keepalive_interval,
        "reconnect_policy": RetryPolicy(
            max_attempts=stream.max_reconnect_attempts,
            initial_delay=stream.reconnect_initial_delay,
            max_delay=stream.reconnect_max_delay,
        ),
    }


def create_client_from_settings(settings: Settings) -> BinanceClient:
    """Create a configured client.

    Raises:
        ConfigError: If the configured market is not supported
    """
    proxy_config = None
    if settings.proxy.enabled and settings.proxy.url:
        proxy_config = ProxyConfig(
            url=settings.proxy.url,
            username=settings.proxy.username,
            password=settings.proxy.password.get_secret_value() if settings.proxy.password else None,
        )

    retry = settings.retry
    client = BinanceClient(
        api_key=settings.credentials.api_key.get_secret_value(),
        api_secret=settings.credentials.api_secret.get_secret_value(),
        market=settings.market,
        sandbox=settings.sandbox,
        proxy=proxy_config,
        recv_window_ms=settings.transport.recv_window_ms,
        timeout=settings.transport.timeout,
        page_limit=settings.transport.page_limit,
        retry_policy=RetryPolicy(
            max_attempts=retry.max_attempts,
            initial_delay=retry.initial_delay,
            max_delay=retry.max_delay,
            backoff_factor=retry.backoff_factor,
            jitter=retry.jitter,
        ),
        rate_limits=RateLimitTable.from_lists(settings.rate_limit.statuses, settings.rate_limit.codes),
        stream_options=stream_options_from_settings(settings),
    )
    logger.info("Initialized %s client (sandbox=%s)", client.name, settings.sandbox)
    return client
