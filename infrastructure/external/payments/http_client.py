"""
JSON-over-HTTP gateway adapter.

Each operation is a POST to ``{api_base}/{operation}`` carrying the request
fields and an ``Idempotency-Key`` header; the gateway answers with
``{"status": ..., "transaction_id": ..., "message": ...}``.

Status mapping:
- 2xx: body status mapped through GATEWAY_STATUS_TO_INTERNAL
- 408 / 429 / 5xx / transport faults: retried, then GatewayUnavailableException
- other 4xx: GatewayRejectedException
"""
from __future__ import annotations

from typing import Any, Optional

import httpx

from core.settings import GatewaySettings, gateway_settings
from domain.common.exceptions import (
    GatewayErrorException,
    GatewayRejectedException,
    GatewayUnavailableException,
)
from domain.services.gateway_client import GatewayRequest, GatewayResponse
from infrastructure.external.payments.base import BaseGatewayClient


RETRYABLE_STATUS = {408, 429}


class HttpGatewayClient(BaseGatewayClient):
    provider = "http"

    def __init__(
        self,
        settings: Optional[GatewaySettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        cfg = settings or gateway_settings
        super().__init__(
            timeouts=cfg.timeouts.model_dump(),
            retry={"max": cfg.retry.max, "base": cfg.retry.base_backoff},
            transport=transport,
        )
        if not cfg.api_base:
            raise RuntimeError("GATEWAY__API_BASE not configured")
        self.api_base = cfg.api_base.rstrip("/")
        self.api_key = cfg.api_key

    def _headers(self, idempotency_key: Optional[str] = None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    @staticmethod
    def _payload(req: GatewayRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "ref_no": req.ref_no,
            "amount": str(req.amount),
            "currency": req.currency,
        }
        if req.gateway_transaction_id:
            body["transaction_id"] = req.gateway_transaction_id
        if req.payment_method:
            body["payment_method"] = req.payment_method
        if req.three_ds:
            body["three_ds"] = req.three_ds
        return body

    async def _send(self, operation: str, req: GatewayRequest) -> GatewayResponse:
        url = f"{self.api_base}/{operation}"

        async def _do() -> httpx.Response:
            resp = await self.http.post(url, json=self._payload(req), headers=self._headers(req.idempotency_key))
            if resp.status_code >= 500 or resp.status_code in RETRYABLE_STATUS:
                raise GatewayUnavailableException(
                    f"Gateway answered HTTP {resp.status_code}",
                    provider=self.provider,
                    provider_code=str(resp.status_code),
                )
            return resp

        self._log("gateway_http_request", operation=operation, ref_no=req.ref_no)
        resp = await self._retry(_do)
        data = self._json(resp)
        if resp.status_code >= 400:
            raise GatewayRejectedException(
                str(data.get("message") or f"Gateway answered HTTP {resp.status_code}"),
                provider=self.provider,
                provider_code=str(data.get("code") or resp.status_code),
                details={"http_status": resp.status_code},
            )
        status = self._map_status(data.get("status"))
        self._log("gateway_http_response", operation=operation, ref_no=req.ref_no, status=status.value)
        return GatewayResponse(
            status=status,
            gateway_transaction_id=data.get("transaction_id") or req.gateway_transaction_id,
            raw_response=data,
        )

    def _json(self, resp: httpx.Response) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as exc:
            raise GatewayErrorException(
                "Gateway answered with a non-JSON body",
                provider=self.provider,
                details={"http_status": resp.status_code},
            ) from exc
        if not isinstance(data, dict):
            raise GatewayErrorException("Gateway answered with a non-object body", provider=self.provider)
        return data

    async def ping(self) -> None:
        async def _do() -> httpx.Response:
            resp = await self.http.get(f"{self.api_base}/ping", headers=self._headers())
            if resp.status_code >= 500:
                raise GatewayUnavailableException(
                    f"Gateway answered HTTP {resp.status_code}",
                    provider=self.provider,
                    provider_code=str(resp.status_code),
                )
            return resp

        resp = await self._retry(_do)
        if resp.status_code >= 400:
            raise GatewayErrorException(
                f"Gateway ping failed with HTTP {resp.status_code}",
                provider=self.provider,
                provider_code=str(resp.status_code),
            )
