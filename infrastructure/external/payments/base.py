"""
Base gateway client: shared http client, retry, status mapping and logging.

The four ledger operations all funnel into ``_send(operation, req)``;
concrete clients only implement that hook and their wire format.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from domain.common.exceptions import GatewayErrorException, GatewayUnavailableException
from domain.services.gateway_client import GatewayClient, GatewayRequest, GatewayResponse, GatewayStatus
from shared.codes.payment_codes import GATEWAY_STATUS_TO_INTERNAL


logger = get_logger(__name__)

R = TypeVar("R")

DEFAULT_TIMEOUTS = {"connect": 1.0, "read": 3.0, "write": 3.0, "total": 5.0}


class BaseGatewayClient(GatewayClient):
    provider: str = "base"

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        cfg = {**DEFAULT_TIMEOUTS, **(timeouts or {})}
        self._timeout = httpx.Timeout(cfg["total"], connect=cfg["connect"], read=cfg["read"], write=cfg["write"])
        self._max_retries = int((retry or {}).get("max", 2))
        self._backoff = float((retry or {}).get("base", 0.2))
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def http(self) -> httpx.AsyncClient:
        """Lazily created client, reused until aclose()."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Awaitable[R]]) -> R:
        """Retry transport faults and unavailable answers, then surface them as unavailable."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_retries + 1),
                wait=wait_exponential(multiplier=self._backoff, max=2.0),
                retry=retry_if_exception_type((httpx.TransportError, GatewayUnavailableException)),
                reraise=True,
            ):
                with attempt:
                    return await fn()
        except httpx.TransportError as exc:
            raise GatewayUnavailableException(
                f"{type(exc).__name__}: {exc}", provider=self.provider,
            ) from exc

    async def _send(self, operation: str, req: GatewayRequest) -> GatewayResponse:
        raise NotImplementedError

    async def authorize(self, req: GatewayRequest) -> GatewayResponse:
        return await self._send("authorize", req)

    async def capture(self, req: GatewayRequest) -> GatewayResponse:
        return await self._send("capture", req)

    async def refund(self, req: GatewayRequest) -> GatewayResponse:
        return await self._send("refund", req)

    async def void(self, req: GatewayRequest) -> GatewayResponse:
        return await self._send("void", req)

    def _map_status(self, gateway_status: Any) -> GatewayStatus:
        internal = GATEWAY_STATUS_TO_INTERNAL.get(str(gateway_status or "").strip().lower())
        if internal is None:
            raise GatewayErrorException(
                f"Unknown gateway status '{gateway_status}'",
                provider=self.provider,
                provider_code=str(gateway_status),
            )
        return GatewayStatus(internal)

    def _log(self, event: str, **kwargs) -> None:
        logger.info(event, provider=self.provider, **kwargs)
