"""
Gateway client capability (domain/services).

The ledger talks to the remote gateway only through this protocol. This
layer must not import infrastructure; network mechanics live in adapters.

Implementations return a GatewayResponse or raise:
- GatewayUnavailableException: transient, the whole operation may be retried
- GatewayRejectedException: terminal for this attempt, surfaces as DECLINED
- GatewayErrorException: unrecoverable fault, the transaction moves to ERROR
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable


class GatewayStatus(str, Enum):
    APPROVED = "approved"
    DECLINED = "declined"
    ERROR = "error"


@dataclass(frozen=True)
class GatewayRequest:
    ref_no: str
    amount: Decimal
    currency: str
    gateway_transaction_id: Optional[str] = None
    payment_method: Optional[dict[str, Any]] = None
    three_ds: Optional[dict[str, Any]] = None
    # forwarded so the remote side can dedupe as well
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class GatewayResponse:
    status: GatewayStatus
    gateway_transaction_id: Optional[str] = None
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> Optional[str]:
        value = self.raw_response.get("message") or self.raw_response.get("desc")
        return str(value) if value is not None else None


@runtime_checkable
class GatewayClient(Protocol):
    """Gateway protocol for the remote payment gateway.

    Implementations should be async and side-effect free beyond IO.
    """

    provider: str

    async def authorize(self, req: GatewayRequest) -> GatewayResponse: ...

    async def capture(self, req: GatewayRequest) -> GatewayResponse: ...

    async def refund(self, req: GatewayRequest) -> GatewayResponse: ...

    async def void(self, req: GatewayRequest) -> GatewayResponse: ...
