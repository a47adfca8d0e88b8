import asyncio
from decimal import Decimal

import pytest

from application.dtos.payments import ResultStatus
from domain.common.exceptions import (
    DomainValidationException,
    GatewayUnavailableException,
    InvalidAmountException,
    InvalidTransitionException,
    TransactionNotFoundException,
)
from domain.transaction.entity import CaptureMode, TransactionState
from domain.transaction.events import TransactionStateChanged


@pytest.mark.asyncio
async def test_auth_capture_refund_then_over_refund_is_rejected(ledger, repository, gateway, make_request):
    res = await ledger.auth(make_request("R1", 100, "USD", card=True))
    assert res.status == ResultStatus.APPROVED
    assert res.state == "AUTHORIZED"

    res = await ledger.capture(make_request("R1", 60))
    assert res.state == "CAPTURED"
    record = await repository.get("R1")
    assert record.captured_amount == Decimal("60")

    res = await ledger.refund(make_request("R1", 60))
    assert res.status == ResultStatus.REFUNDED
    assert res.state == "REFUNDED"

    with pytest.raises(InvalidAmountException):
        await ledger.refund(make_request("R1", 1))

    record = await repository.get("R1")
    assert record.refunded_amount == Decimal("60")
    assert record.captured_amount + record.refunded_amount <= record.amount
    assert gateway.count("refund") == 1


@pytest.mark.asyncio
async def test_partial_refunds_walk_down_to_refunded(ledger, repository, make_request):
    await ledger.auth(make_request("R2", 100, "EUR", card=True))
    await ledger.capture(make_request("R2"))

    res = await ledger.refund(make_request("R2", 30))
    assert res.state == "PARTIALLY_REFUNDED"
    res = await ledger.refund(make_request("R2", 50))
    assert res.state == "PARTIALLY_REFUNDED"

    with pytest.raises(InvalidAmountException):
        await ledger.refund(make_request("R2", 21))

    res = await ledger.refund(make_request("R2", 20))
    assert res.state == "REFUNDED"
    record = await repository.get("R2")
    assert record.captured_amount == Decimal("0")
    assert record.refunded_amount == Decimal("100")


@pytest.mark.asyncio
async def test_amounts_never_exceed_authorized_amount(ledger, repository, make_request):
    await ledger.auth(make_request("R3", 100, "USD", card=True))
    steps = [("capture", 120), ("capture", 70), ("refund", 80), ("refund", 25), ("refund", 45), ("refund", 1)]
    for op, amount in steps:
        try:
            await getattr(ledger, op)(make_request("R3", amount))
        except (InvalidAmountException, InvalidTransitionException):
            pass
        record = await repository.get("R3")
        assert record.captured_amount + record.refunded_amount <= record.amount
        assert record.captured_amount >= 0

    record = await repository.get("R3")
    assert record.state == TransactionState.REFUNDED
    assert record.refunded_amount == Decimal("70")


@pytest.mark.asyncio
async def test_capture_defaults_to_remaining_amount(ledger, repository, make_request):
    await ledger.auth(make_request("R4", "12.50", "USD", card=True))
    res = await ledger.capture(make_request("R4"))
    assert res.transaction_details["captured_amount"] == "12.50"


@pytest.mark.asyncio
async def test_capture_above_authorized_amount_is_rejected_before_gateway(ledger, gateway, make_request):
    await ledger.auth(make_request("R5", 100, "USD", card=True))
    with pytest.raises(InvalidAmountException):
        await ledger.capture(make_request("R5", "100.01"))
    assert gateway.count("capture") == 0


@pytest.mark.asyncio
async def test_capture_unknown_ref_raises_not_found(ledger, make_request):
    with pytest.raises(TransactionNotFoundException):
        await ledger.capture(make_request("missing", 1))


@pytest.mark.asyncio
async def test_void_authorized_transaction(ledger, gateway, make_request):
    await ledger.auth(make_request("V1", 40, "GBP", card=True))
    res = await ledger.void(make_request("V1"))
    assert res.state == "VOIDED"
    assert res.status == ResultStatus.APPROVED
    assert gateway.count("void") == 1

    with pytest.raises(InvalidTransitionException):
        await ledger.capture(make_request("V1", 10))


@pytest.mark.asyncio
async def test_void_after_capture_is_invalid(ledger, make_request):
    await ledger.auth(make_request("V2", 40, "GBP", card=True))
    await ledger.capture(make_request("V2"))
    with pytest.raises(InvalidTransitionException):
        await ledger.void(make_request("V2"))


@pytest.mark.asyncio
async def test_sell_authorizes_and_captures_in_one_call(ledger, repository, gateway, make_request):
    res = await ledger.sell(make_request("S1", 99, "USD", card=True))
    assert res.state == "CAPTURED"
    assert res.status == ResultStatus.APPROVED
    assert gateway.count("authorize") == 1
    assert gateway.count("capture") == 1
    record = await repository.get("S1")
    assert record.capture_mode == CaptureMode.SALE
    assert record.captured_amount == Decimal("99")
    assert record.in_flight is None
    # one gateway key per leg, so a gateway that dedupes on it still sees two calls
    keys = [req.idempotency_key for _, req in gateway.calls]
    assert len(keys) == len(set(keys)) == 2


@pytest.mark.asyncio
async def test_sell_resumes_with_capture_after_gateway_outage(ledger, repository, gateway, make_request):
    gateway.script("capture", "unavailable")
    with pytest.raises(GatewayUnavailableException):
        await ledger.sell(make_request("S2", 10, "USD", card=True))
    record = await repository.get("S2")
    assert record.state == TransactionState.AUTHORIZED
    assert record.in_flight is None

    gateway.script("capture", "approve")
    res = await ledger.sell(make_request("S2", 10, "USD", card=True))
    assert res.state == "CAPTURED"
    assert gateway.count("authorize") == 1


@pytest.mark.asyncio
async def test_sell_without_payment_method_redirects(ledger, make_request):
    res = await ledger.sell(make_request("S3", 25, "USD"))
    assert res.status == ResultStatus.REDIRECT
    assert res.redirect.url == "https://gw.test/pay"
    attrs = res.redirect.form_attributes
    assert attrs["ref_no"] == "S3"
    assert attrs["accept_url"] == "https://host.test/ok"
    assert attrs["decline_url"] == "https://host.test/failed"
    assert attrs["correlation_id"]


@pytest.mark.asyncio
async def test_reusing_ref_with_other_mode_or_amount_is_rejected(ledger, make_request):
    await ledger.auth(make_request("M1", 10, "USD", card=True))
    with pytest.raises(DomainValidationException):
        await ledger.sell(make_request("M1", 10, "USD", card=True))
    with pytest.raises(DomainValidationException):
        await ledger.auth(make_request("M1", 11, "USD", card=True))


@pytest.mark.asyncio
async def test_new_transaction_requires_amount_and_currency(ledger, make_request):
    with pytest.raises(DomainValidationException):
        await ledger.auth(make_request("N1", card=True))


@pytest.mark.asyncio
async def test_declined_authorization_is_terminal(ledger, gateway, make_request):
    gateway.script("authorize", "decline")
    res = await ledger.auth(make_request("D1", 10, "USD", card=True))
    assert res.status == ResultStatus.DECLINED
    assert res.state == "DECLINED"
    assert res.messages.vendor_message == "Card declined"


@pytest.mark.asyncio
async def test_rejected_authorization_surfaces_as_declined(ledger, gateway, make_request):
    gateway.script("authorize", "reject")
    res = await ledger.auth(make_request("D2", 10, "USD", card=True))
    assert res.state == "DECLINED"
    assert res.messages.vendor_message == "insufficient funds"


@pytest.mark.asyncio
async def test_declined_capture_keeps_authorization(ledger, gateway, make_request):
    await ledger.auth(make_request("D3", 10, "USD", card=True))
    gateway.script("capture", "decline")
    res = await ledger.capture(make_request("D3", 10))
    assert res.status == ResultStatus.DECLINED
    assert res.state == "AUTHORIZED"


@pytest.mark.asyncio
async def test_gateway_fault_moves_to_error(ledger, gateway, make_request):
    await ledger.auth(make_request("E1", 10, "USD", card=True))
    gateway.script("capture", "error")
    res = await ledger.capture(make_request("E1", 10))
    assert res.status == ResultStatus.ERROR
    assert res.state == "ERROR"


@pytest.mark.asyncio
async def test_unavailable_gateway_leaves_record_untouched(ledger, repository, gateway, make_request):
    gateway.script("authorize", "unavailable")
    with pytest.raises(GatewayUnavailableException):
        await ledger.auth(make_request("U1", 10, "USD", card=True))
    record = await repository.get("U1")
    assert record.state == TransactionState.INITIATED
    assert record.in_flight is None

    gateway.script("authorize", "approve")
    res = await ledger.auth(make_request("U1", 10, "USD", card=True))
    assert res.state == "AUTHORIZED"


@pytest.mark.asyncio
async def test_transitions_are_collected_as_events(ledger, make_request):
    await ledger.auth(make_request("EV1", 10, "USD", card=True))
    await ledger.capture(make_request("EV1"))
    events = ledger.clear_events()
    assert [(e.from_state, e.to_state) for e in events] == [
        ("INITIATED", "AUTHORIZED"),
        ("AUTHORIZED", "CAPTURED"),
    ]
    assert all(isinstance(e, TransactionStateChanged) for e in events)
    assert ledger.clear_events() == []


@pytest.mark.asyncio
async def test_status_of_pending_redirect_reports_retry_delay(ledger, make_request):
    await ledger.redirect(make_request("P1", 10, "USD"))
    res = await ledger.status("P1")
    assert res.status == ResultStatus.REDIRECT
    assert res.redirect is not None
    assert 0 <= res.retry_after_seconds <= 30

    with pytest.raises(TransactionNotFoundException):
        await ledger.status("P404")


@pytest.mark.asyncio
async def test_concurrent_operations_collect_their_own_events(ledger, gateway, make_request):
    gateway.delay = 0.01

    async def run(ref_no: str):
        with ledger.collecting_events() as events:
            await ledger.auth(make_request(ref_no, 10, "USD", card=True))
            await ledger.capture(make_request(ref_no))
            return events

    first, second = await asyncio.gather(run("EV2"), run("EV3"))
    assert {e.ref_no for e in first} == {"EV2"}
    assert {e.ref_no for e in second} == {"EV3"}
    assert len(first) == len(second) == 2
    assert ledger.events == []
