"""SQLAlchemyTransactionRepository on a throwaway SQLite file."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from application.dtos.payments import CallbackPayload, OperationRequest
from application.services.ledger import TransactionLedger
from application.services.reconciler import CallbackReconciler
from domain.common.exceptions import DomainValidationException, DuplicateRefException, VersionConflictException
from domain.transaction.entity import CaptureMode, TransactionState
from infrastructure.cache import InMemoryIdempotencyStore
from infrastructure.database import build_engine, build_session_factory, create_tables, drop_tables
from infrastructure.repositories.transaction_repository import SQLAlchemyTransactionRepository


@pytest.fixture
async def sql_repository(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await create_tables(engine)
    yield SQLAlchemyTransactionRepository(build_session_factory(engine))
    await drop_tables(engine)
    await engine.dispose()


@pytest.mark.asyncio
async def test_create_and_get(sql_repository):
    created = await sql_repository.create("SQL1", Decimal("12.50"), "usd", capture_mode=CaptureMode.SALE, tokens_enabled=True)
    assert created.version == 1

    loaded = await sql_repository.get("SQL1")
    assert loaded.amount == Decimal("12.50")
    assert loaded.currency == "USD"
    assert loaded.state == TransactionState.INITIATED
    assert loaded.capture_mode == CaptureMode.SALE
    assert loaded.tokens_enabled is True
    assert await sql_repository.get("missing") is None


@pytest.mark.asyncio
async def test_duplicate_ref_is_rejected(sql_repository):
    await sql_repository.create("SQL2", Decimal("1"), "USD")
    with pytest.raises(DuplicateRefException):
        await sql_repository.create("SQL2", Decimal("1"), "USD")


@pytest.mark.asyncio
async def test_update_is_compare_and_set(sql_repository):
    record = await sql_repository.create("SQL3", Decimal("10"), "USD")
    record.mark_authorized("gw-sql3")
    record.idempotency_keys.add("fp-1")
    record.details["note"] = "first"

    stored = await sql_repository.update(record, expected_version=1)
    assert stored.version == 2

    stale = record.copy()
    stale.details["note"] = "second"
    with pytest.raises(VersionConflictException) as exc_info:
        await sql_repository.update(stale, expected_version=1)
    assert exc_info.value.details["actual_version"] == 2

    loaded = await sql_repository.get("SQL3")
    assert loaded.state == TransactionState.AUTHORIZED
    assert loaded.idempotency_keys == {"fp-1"}
    assert loaded.details == {"note": "first"}


@pytest.mark.asyncio
async def test_find_by_correlation_or_gateway_id(sql_repository):
    record = await sql_repository.create("SQL4", Decimal("10"), "USD")
    record.request_redirect("corr-sql4", datetime.now(timezone.utc) + timedelta(seconds=30))
    record = await sql_repository.update(record, expected_version=record.version)

    found = await sql_repository.find_by_external_ref("corr-sql4")
    assert found.ref_no == "SQL4"
    assert found.correlation_ids == ["corr-sql4"]

    record.mark_authorized("gw-sql4")
    await sql_repository.update(record, expected_version=record.version)
    assert (await sql_repository.find_by_external_ref("gw-sql4")).ref_no == "SQL4"
    assert await sql_repository.find_by_external_ref("nope") is None


@pytest.mark.asyncio
async def test_ledger_round_trip_through_database(sql_repository, gateway, make_request):
    ledger = TransactionLedger(sql_repository, InMemoryIdempotencyStore(), gateway)

    pending = await ledger.redirect(make_request("SQL5", 40, "EUR"))
    assert 0 <= pending.retry_after_seconds <= 30
    correlation_id = pending.redirect.form_attributes["correlation_id"]

    res = await CallbackReconciler(ledger).reconcile(
        CallbackPayload(external_ref=correlation_id, result="ok", txn_id="gw-sql5", token="t", public_name="VISA"),
    )
    assert res.state == "AUTHORIZED"

    await ledger.capture(make_request("SQL5", 40))
    res = await ledger.refund(make_request("SQL5", 15))
    assert res.state == "PARTIALLY_REFUNDED"

    record = await sql_repository.get("SQL5")
    assert record.captured_amount == Decimal("25")
    assert record.refunded_amount == Decimal("15")
    assert record.payment_methods[0]["token"] == "t"
    assert record.in_flight is None
    assert gateway.count() == 2


@pytest.mark.asyncio
async def test_amount_keeps_its_value_through_the_database(sql_repository, gateway, make_request):
    ledger = TransactionLedger(sql_repository, InMemoryIdempotencyStore(), gateway)
    first = await ledger.auth(make_request("SQL6", "10.50", "USD", card=True))
    assert (await sql_repository.get("SQL6")).amount == Decimal("10.50")

    # with the guard store gone the record answers the retry
    ledger.idempotency = InMemoryIdempotencyStore()
    again = await ledger.auth(make_request("SQL6", "10.50", "USD", card=True))
    assert again.state == first.state == "AUTHORIZED"
    assert gateway.count("authorize") == 1


@pytest.mark.asyncio
async def test_sub_cent_amounts_are_refused(sql_repository):
    with pytest.raises(ValidationError):
        OperationRequest(ref_no="SQL7", amount="10.005", currency="USD")
    with pytest.raises(DomainValidationException):
        await sql_repository.create("SQL7", Decimal("10.005"), "USD")
    assert await sql_repository.get("SQL7") is None


@pytest.mark.asyncio
async def test_expired_reservation_is_taken_over(sql_repository, gateway, make_request):
    ledger = TransactionLedger(sql_repository, InMemoryIdempotencyStore(), gateway, in_flight_ttl=60)
    await ledger.auth(make_request("SQL8", 10, "USD", card=True))

    record = await sql_repository.get("SQL8")
    record.in_flight = "capture"
    record.in_flight_since = datetime.now(timezone.utc) - timedelta(seconds=120)
    await sql_repository.update(record, expected_version=record.version)
    assert (await sql_repository.get("SQL8")).in_flight_since is not None

    res = await ledger.capture(make_request("SQL8"))
    assert res.state == "CAPTURED"
    stored = await sql_repository.get("SQL8")
    assert stored.in_flight is None
    assert stored.in_flight_since is None
