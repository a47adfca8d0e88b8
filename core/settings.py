"""
Gateway settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings; every key lives under GATEWAY__,
e.g. GATEWAY__PROVIDER=http, GATEWAY__RETRY__MAX=3.
"""
from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewayTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 3.0
    write: float = 3.0
    total: float = 5.0


class GatewayRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class GatewaySettings(BaseSettings):
    provider: Literal["demo", "http"] = "demo"
    api_base: Optional[str] = None
    api_key: Optional[str] = None
    hosted_page_url: str = "https://demo-payment-gateway.com"
    three_ds_url: str = "https://demo-payment-gateway.com/3dsecure"
    timeouts: GatewayTimeouts = Field(default_factory=GatewayTimeouts)
    retry: GatewayRetry = Field(default_factory=GatewayRetry)

    # delay before the host should re-check a PENDING_REDIRECT / PENDING_3DS record
    pending_retry_seconds: int = 30
    # re-runs of an operation after losing an optimistic-version race
    conflict_retry_attempts: int = 5

    # plug-in defaults, overridden by the per-request config
    enable_tokens: bool = True
    enable_3dsecure: bool = False

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY__",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )


gateway_settings = GatewaySettings()
