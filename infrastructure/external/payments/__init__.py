"""
Factory for gateway clients.
"""
from __future__ import annotations

from typing import Optional

from core.settings import GatewaySettings, gateway_settings
from domain.services.gateway_client import GatewayClient


def get_gateway_client(provider: Optional[str] = None, settings: Optional[GatewaySettings] = None) -> GatewayClient:
    cfg = settings or gateway_settings
    name = (provider or cfg.provider).lower()
    if name == "demo":
        from .demo_client import DemoGatewayClient
        return DemoGatewayClient()
    if name == "http":
        from .http_client import HttpGatewayClient
        return HttpGatewayClient(cfg)
    raise ValueError(f"Unsupported gateway provider: {name}")
