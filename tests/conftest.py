"""Pytest bootstrap configuration.

Environment variables are set before test collection and module imports that
depend on application settings: the app runs on in-memory stores and the
demo gateway.
"""
import asyncio
import os
from decimal import Decimal
from typing import Optional

import pytest

os.environ.setdefault("DATABASE__ENABLED", "false")
os.environ.setdefault("GATEWAY__PROVIDER", "demo")

from application.dtos.payments import OperationRequest, PaymentMethod, PluginConfig  # noqa: E402
from application.services.ledger import TransactionLedger  # noqa: E402
from application.services.payment_service import GatewayPluginService  # noqa: E402
from domain.common.exceptions import (  # noqa: E402
    GatewayErrorException,
    GatewayRejectedException,
    GatewayUnavailableException,
)
from domain.services.gateway_client import GatewayRequest, GatewayResponse, GatewayStatus  # noqa: E402
from infrastructure.cache import InMemoryIdempotencyStore  # noqa: E402
from infrastructure.repositories.inmemory import InMemoryTransactionRepository  # noqa: E402


HOSTED_PAGE_URL = "https://gw.test/pay"
THREE_DS_URL = "https://gw.test/3ds"


class StubGateway:
    """Records every call; behaviour per operation is set with `script`."""

    provider = "stub"

    def __init__(self) -> None:
        self.calls: list[tuple[str, GatewayRequest]] = []
        self.outcomes: dict[str, str] = {}
        self.delay: float = 0.0

    def script(self, operation: str, outcome: str) -> None:
        self.outcomes[operation] = outcome

    def count(self, operation: Optional[str] = None) -> int:
        return sum(1 for op, _ in self.calls if operation is None or op == operation)

    async def _answer(self, operation: str, req: GatewayRequest) -> GatewayResponse:
        self.calls.append((operation, req))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.get(operation, "approve")
        if outcome == "unavailable":
            raise GatewayUnavailableException("gateway down", provider=self.provider)
        if outcome == "reject":
            raise GatewayRejectedException("insufficient funds", provider=self.provider)
        if outcome == "error":
            raise GatewayErrorException("gateway exploded", provider=self.provider)
        if outcome == "decline":
            return GatewayResponse(GatewayStatus.DECLINED, None, {"message": "Card declined"})
        return GatewayResponse(
            GatewayStatus.APPROVED,
            req.gateway_transaction_id or f"gw-{req.ref_no}",
            {"operation": operation},
        )

    async def authorize(self, req: GatewayRequest) -> GatewayResponse:
        return await self._answer("authorize", req)

    async def capture(self, req: GatewayRequest) -> GatewayResponse:
        return await self._answer("capture", req)

    async def refund(self, req: GatewayRequest) -> GatewayResponse:
        return await self._answer("refund", req)

    async def void(self, req: GatewayRequest) -> GatewayResponse:
        return await self._answer("void", req)


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def repository() -> InMemoryTransactionRepository:
    return InMemoryTransactionRepository()


@pytest.fixture
def idempotency() -> InMemoryIdempotencyStore:
    return InMemoryIdempotencyStore()


@pytest.fixture
def ledger(repository, idempotency, gateway) -> TransactionLedger:
    return TransactionLedger(
        repository,
        idempotency,
        gateway,
        hosted_page_url=HOSTED_PAGE_URL,
        three_ds_url=THREE_DS_URL,
        pending_retry_seconds=30,
    )


@pytest.fixture
def service(ledger) -> GatewayPluginService:
    return GatewayPluginService(ledger)


@pytest.fixture
def make_request():
    """Build an OperationRequest; card=True attaches a stored payment method."""

    def _make(
        ref_no: str,
        amount=None,
        currency: Optional[str] = None,
        *,
        card: bool = False,
        three_ds: bool = False,
        tokens: bool = True,
        previous: Optional[dict] = None,
    ) -> OperationRequest:
        return OperationRequest(
            ref_no=ref_no,
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=currency,
            payment_method=PaymentMethod(token="tok_1", paymethod_name="VISA *1111") if card else None,
            previous_transaction_data=previous,
            config=PluginConfig(enable_tokens=tokens, enable_3dsecure=three_ds),
            environment={
                "return_url_ok": "https://host.test/ok",
                "return_url_failed": "https://host.test/failed",
                "return_url_3dsecure": "https://host.test/3ds",
            },
        )

    return _make
