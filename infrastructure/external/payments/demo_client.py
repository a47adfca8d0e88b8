"""Configurable in-process demo gateway for development and testing.

Simulates the remote gateway without any network call. Every call is
recorded in ``calls`` so tests can assert how often the gateway was hit.
"""
from __future__ import annotations

from typing import Optional
from uuid import uuid4

from domain.common.exceptions import (
    GatewayErrorException,
    GatewayRejectedException,
    GatewayUnavailableException,
)
from domain.services.gateway_client import GatewayRequest, GatewayResponse, GatewayStatus
from infrastructure.external.payments.base import BaseGatewayClient


class DemoGatewayClient(BaseGatewayClient):
    """Approves everything unless configured otherwise."""

    provider = "demo"

    def __init__(self) -> None:
        super().__init__()
        self.outcome: str = "approve"
        self.failure_reason: str = "Card declined"
        self.calls: list[dict] = []

    def configure(self, outcome: str = "approve", failure_reason: str = "Card declined") -> None:
        """Set the behaviour of the next calls: approve, decline, reject, error or unavailable."""
        self.outcome = outcome
        self.failure_reason = failure_reason

    async def _send(self, operation: str, req: GatewayRequest) -> GatewayResponse:
        self.calls.append({
            "operation": operation,
            "ref_no": req.ref_no,
            "amount": req.amount,
            "idempotency_key": req.idempotency_key,
        })
        self._log("demo_gateway_call", operation=operation, ref_no=req.ref_no, outcome=self.outcome)
        if self.outcome == "unavailable":
            raise GatewayUnavailableException("Gateway unavailable", provider=self.provider)
        if self.outcome == "reject":
            raise GatewayRejectedException(self.failure_reason, provider=self.provider)
        if self.outcome == "error":
            raise GatewayErrorException(self.failure_reason, provider=self.provider)
        if self.outcome == "decline":
            return GatewayResponse(GatewayStatus.DECLINED, None, {"message": self.failure_reason})
        return GatewayResponse(
            GatewayStatus.APPROVED,
            req.gateway_transaction_id or f"demo-{uuid4().hex[:12]}",
            {"operation": operation},
        )

    async def ping(self) -> None:
        if self.outcome == "unavailable":
            raise GatewayUnavailableException("Gateway unavailable", provider=self.provider)

    def count(self, operation: Optional[str] = None) -> int:
        if operation is None:
            return len(self.calls)
        return sum(1 for c in self.calls if c["operation"] == operation)
