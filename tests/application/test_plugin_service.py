from decimal import Decimal

import pytest

from application.dtos.payments import (
    CallbackPayload,
    OperationRequest,
    PaymentMethod,
    PluginConfig,
    ResultStatus,
)
from application.services.ledger import TransactionLedger
from application.services.payment_service import GatewayPluginService
from domain.common.exceptions import DomainValidationException
from infrastructure.cache import InMemoryIdempotencyStore
from infrastructure.external.payments.demo_client import DemoGatewayClient
from infrastructure.repositories.inmemory import InMemoryTransactionRepository


def test_config_description_lists_options(service):
    description = service.get_config()
    assert set(description.options) == {"enable_tokens", "enable_3dsecure"}
    assert description.options["enable_3dsecure"].type == "yesno"
    assert description.options["enable_3dsecure"].default is False


def test_validate_config(service):
    assert service.validate_config({"enable_tokens": True, "3dsecure": "yes"}).status == ResultStatus.APPROVED
    with pytest.raises(DomainValidationException) as exc_info:
        service.validate_config({"enable_tokens": "perhaps"})
    assert exc_info.value.field == "enable_tokens"


def test_is_3dsecure_active(ledger):
    svc = GatewayPluginService(ledger, default_config=PluginConfig(enable_3dsecure=True))
    assert svc.is_3dsecure_active().status == ResultStatus.APPROVED
    assert svc.is_3dsecure_active({"3dsecure": False}).status == ResultStatus.DECLINED


def test_supported_currencies(service):
    currencies = service.supported_currencies()
    assert "USD" in currencies
    assert "EUR" in currencies


@pytest.mark.asyncio
async def test_connection_check_uses_gateway_ping():
    gateway = DemoGatewayClient()
    svc = GatewayPluginService(TransactionLedger(InMemoryTransactionRepository(), InMemoryIdempotencyStore(), gateway))
    assert (await svc.test_connection()).status == ResultStatus.APPROVED

    gateway.configure("unavailable")
    res = await svc.test_connection()
    assert res.status == ResultStatus.ERROR
    assert res.messages.vendor_message == "Gateway unavailable"


@pytest.mark.asyncio
async def test_connection_without_ping_is_assumed_ok(service):
    assert (await service.test_connection()).status == ResultStatus.APPROVED


@pytest.mark.asyncio
async def test_default_config_applies_when_request_has_none(ledger, gateway):
    svc = GatewayPluginService(ledger, default_config=PluginConfig(enable_3dsecure=True))
    req = OperationRequest(
        ref_no="SVC1",
        amount=Decimal("10"),
        currency="USD",
        payment_method=PaymentMethod(token="tok"),
    )
    res = await svc.auth(req)
    assert res.state == "PENDING_3DS"
    assert gateway.count() == 0


@pytest.mark.asyncio
async def test_request_config_overrides_default(ledger, make_request):
    svc = GatewayPluginService(ledger, default_config=PluginConfig(enable_3dsecure=True))
    res = await svc.auth(make_request("SVC2", 10, "USD", card=True, three_ds=False))
    assert res.state == "AUTHORIZED"


@pytest.mark.asyncio
async def test_partial_refund_must_leave_a_remainder(service, make_request):
    await service.sell(make_request("SVC3", 50, "USD", card=True))
    with pytest.raises(DomainValidationException):
        await service.refund_partial(make_request("SVC3", 50))
    res = await service.refund_partial(make_request("SVC3", 20))
    assert res.state == "PARTIALLY_REFUNDED"
    assert res.status == ResultStatus.REFUNDED


@pytest.mark.asyncio
async def test_service_drains_ledger_events(service, ledger, make_request):
    await service.auth(make_request("SVC4", 10, "USD", card=True))
    assert ledger.events == []


@pytest.mark.asyncio
async def test_unknown_callback_is_acknowledged(service, repository):
    res = await service.callback(CallbackPayload(external_ref="ghost", result="ok"))
    assert res.ignored is True
    assert res.ref_no is None
    assert len(repository) == 0


@pytest.mark.asyncio
async def test_check_status_and_void(service, make_request):
    await service.auth(make_request("SVC5", 10, "USD", card=True))
    assert (await service.check_status("SVC5")).state == "AUTHORIZED"
    res = await service.void(make_request("SVC5"))
    assert res.state == "VOIDED"
