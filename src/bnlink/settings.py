from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, SecretStr


class ProxySettings(BaseModel):
    enabled: bool = False
    url: str | None = None
    username: str | None = None
    password: SecretStr | None = None

    model_config = {"extra": "forbid"}


class CredentialSettings(BaseModel):
    api_key: SecretStr = SecretStr("")
    api_secret: SecretStr = SecretStr("")

    model_config = {"extra": "forbid"}


class TransportSettings(BaseModel):
    timeout: float = Field(default=10.0, gt=0)
    recv_window_ms: int = Field(default=5000, gt=0, le=60000)
    page_limit: int = Field(default=1000, gt=0, le=1500)

    model_config = {"extra": "forbid"}


class RetrySettings(BaseModel):
    max_attempts: int = Field(default=5, ge=1)
    initial_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=8.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    jitter: bool = True

    model_config = {"extra": "forbid"}


class RateLimitSettings(BaseModel):
    """HTTP statuses and exchange error codes treated as rate limiting."""

    statuses: list[int] = Field(default_factory=lambda: [429, 418])
    codes: list[int] = Field(default_factory=lambda: [-1003, -1015])

    model_config = {"extra": "forbid"}


class StreamSettings(BaseModel):
    liveness_timeout: float = Field(default=30.0, gt=0)
    ack_timeout: float = Field(default=10.0, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    queue_size: int = Field(default=1000, gt=0)
    consumer_timeout: float = Field(default=30.0, gt=0)
    max_reconnect_attempts: int = Field(default=10, ge=1)
    reconnect_initial_delay: float = Field(default=1.0, ge=0)
    reconnect_max_delay: float = Field(default=60.0, ge=0)
    keepalive_interval: float = Field(default=1800.0, gt=0)

    model_config = {"extra": "forbid"}


class Settings(BaseModel):
    env: str = "dev"
    market: str = "spot"
    sandbox: bool = False
    credentials: CredentialSettings = Field(default_factory=CredentialSettings)
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    transport: TransportSettings = Field(default_factory=TransportSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)

    model_config = {"extra": "forbid"}

    def redacted(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        creds = data.get("credentials")
        if isinstance(creds, dict):
            for key in ("api_key", "api_secret"):
                if creds.get(key):
                    creds[key] = "***"
        proxy = data.get("proxy")
        if isinstance(proxy, dict) and proxy.get("password") is not None:
            proxy["password"] = "***"
        return data
