"""
Transaction ledger - drives every TransactionRecord through its lifecycle.

Each operation runs the same pipeline:

1. fingerprint the request and ask the idempotency guard; a duplicate
   returns the stored result without touching the gateway
2. load (or create) the record and validate the transition guards
3. reserve the record (in_flight flag, versioned update) before calling
   the gateway, so no lock is held while the call is suspended
4. commit the gateway outcome with a second versioned update

Losing an optimistic-version race re-runs the whole operation from step 1.
"""
from __future__ import annotations

import math
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterator, List, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from application.dtos.payments import (
    Messages,
    NewPaymentMethod,
    OperationRequest,
    OperationResult,
    RedirectDescriptor,
    ResultStatus,
)
from core.logging_config import get_logger
from domain.common.exceptions import (
    DomainValidationException,
    DuplicateRefException,
    GatewayErrorException,
    GatewayRejectedException,
    GatewayUnavailableException,
    InvalidTransitionException,
    OperationInFlightException,
    TransactionNotFoundException,
    VersionConflictException,
)
from domain.services.gateway_client import (
    GatewayClient,
    GatewayRequest,
    GatewayResponse,
    GatewayStatus,
)
from domain.transaction.entity import CaptureMode, TransactionRecord, TransactionState
from domain.transaction.events import PaymentMethodRegistered, TransactionStateChanged
from domain.transaction.idempotency import Duplicate, IdempotencyStore, fingerprint, idempotency_key
from domain.transaction.repository import TransactionRepository
from shared.codes.payment_codes import STATE_TO_RESULT_STATUS


logger = get_logger(__name__)

THREE_DS_REJECTED = "Rejected by 3D Secure"

# domain events raised by the operation running in the current context
_pending_events: ContextVar[Optional[List]] = ContextVar("ledger_pending_events", default=None)


def three_ds_rejected_messages() -> Messages:
    return Messages(vendor_message=THREE_DS_REJECTED, customer_message=THREE_DS_REJECTED)


class TransactionLedger:
    """
    State machine service over the record store.

    Responsibilities:
    1. at-most-once gateway calls per request fingerprint
    2. transition and amount guards before any external call
    3. versioned commits for synchronous operations and callbacks alike
    4. domain event collection
    """

    def __init__(
        self,
        repository: TransactionRepository,
        idempotency: IdempotencyStore,
        gateway: GatewayClient,
        *,
        hosted_page_url: str = "https://demo-payment-gateway.com",
        three_ds_url: str = "https://demo-payment-gateway.com/3dsecure",
        pending_retry_seconds: int = 30,
        conflict_retry_attempts: int = 5,
        in_flight_ttl: int = 60,
    ) -> None:
        self.repository = repository
        self.idempotency = idempotency
        self.gateway = gateway
        self.hosted_page_url = hosted_page_url
        self.three_ds_url = three_ds_url
        self.pending_retry_seconds = pending_retry_seconds
        self.conflict_retry_attempts = conflict_retry_attempts
        self.in_flight_ttl = in_flight_ttl

    # ------------------------------------------------------------------
    # Guarded execution
    # ------------------------------------------------------------------

    async def run_guarded(
        self,
        ref_no: str,
        operation: str,
        request_fingerprint: str,
        step: Callable[[], Awaitable[OperationResult]],
    ) -> OperationResult:
        """Run step at most once per fingerprint, re-running it on version races."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.conflict_retry_attempts),
            retry=retry_if_exception_type((VersionConflictException, DuplicateRefException)),
            reraise=True,
        ):
            with attempt:
                return await self._guarded_once(ref_no, operation, request_fingerprint, step)

    async def _guarded_once(
        self,
        ref_no: str,
        operation: str,
        request_fingerprint: str,
        step: Callable[[], Awaitable[OperationResult]],
    ) -> OperationResult:
        outcome = await self.idempotency.check_and_record(ref_no, operation, request_fingerprint)
        if isinstance(outcome, Duplicate):
            if outcome.in_flight:
                logger.info("idempotency_in_flight", ref_no=ref_no, operation=operation)
                raise OperationInFlightException(ref_no, operation)
            logger.info(
                "idempotency_duplicate",
                ref_no=ref_no,
                operation=operation,
                key=idempotency_key(ref_no, operation, request_fingerprint),
            )
            return OperationResult.model_validate(outcome.previous_result)

        try:
            result = await step()
        except BaseException:
            # nothing was committed for this fingerprint; let a retry run again
            await self.idempotency.release(ref_no, operation, request_fingerprint)
            raise
        await self.idempotency.complete(ref_no, operation, request_fingerprint, result.model_dump(mode="json"))
        return result

    async def load(self, ref_no: str) -> TransactionRecord:
        record = await self.repository.get(ref_no)
        if record is None:
            raise TransactionNotFoundException(ref_no)
        return record

    async def commit(
        self,
        record: TransactionRecord,
        request_fingerprint: Optional[str],
        mutate: Callable[[TransactionRecord], Any],
        *,
        trigger: str,
        release: bool = True,
    ) -> TransactionRecord:
        """Apply mutate to a copy of record and persist it against record.version."""
        updated = record.copy()
        previous = updated.state
        mutate(updated)
        if release:
            updated.in_flight = None
            updated.in_flight_since = None
        if request_fingerprint:
            updated.idempotency_keys.add(request_fingerprint)
        stored = await self.repository.update(updated, expected_version=record.version)
        if stored.state != previous:
            self.events.append(TransactionStateChanged(
                ref_no=stored.ref_no,
                version=stored.version,
                from_state=previous.value,
                to_state=stored.state.value,
                trigger=trigger,
                gateway_transaction_id=stored.gateway_transaction_id,
            ))
            logger.info(
                "ledger_transition",
                ref_no=stored.ref_no,
                from_state=previous.value,
                to_state=stored.state.value,
                trigger=trigger,
                version=stored.version,
            )
        return stored

    async def _reserve(self, record: TransactionRecord, operation: str) -> TransactionRecord:
        self.ensure_idle(record)
        reserved = record.copy()
        reserved.in_flight = operation
        reserved.in_flight_since = datetime.now(timezone.utc)
        return await self.repository.update(reserved, expected_version=record.version)

    async def _unreserve(self, reserved: TransactionRecord) -> TransactionRecord:
        current = reserved.copy()
        current.in_flight = None
        current.in_flight_since = None
        return await self.repository.update(current, expected_version=reserved.version)

    def ensure_idle(self, record: TransactionRecord) -> None:
        """Refuse to touch a record whose gateway call has not answered yet.

        A reservation older than in_flight_ttl belongs to a worker that died
        mid-call and is taken over.
        """
        if record.reservation_active(self.in_flight_ttl):
            raise OperationInFlightException(record.ref_no, record.in_flight)
        if record.in_flight:
            logger.warning(
                "in_flight_expired",
                ref_no=record.ref_no,
                operation=record.in_flight,
                since=record.in_flight_since.isoformat() if record.in_flight_since else None,
            )

    async def _call_gateway(
        self,
        reserved: TransactionRecord,
        operation: str,
        call: Callable[[GatewayRequest], Awaitable[GatewayResponse]],
        request: GatewayRequest,
    ) -> GatewayResponse:
        """Call the gateway for a reserved record; rejections and faults become responses."""
        logger.info("gateway_request", ref_no=reserved.ref_no, operation=operation, provider=self.gateway.provider)
        try:
            response = await call(request)
        except GatewayRejectedException as exc:
            response = GatewayResponse(GatewayStatus.DECLINED, None, {"message": exc.message, **(exc.details or {})})
        except GatewayErrorException as exc:
            response = GatewayResponse(GatewayStatus.ERROR, None, {"message": exc.message, **(exc.details or {})})
        except BaseException as exc:
            # outcome unknown (unavailable or cancelled): free the record for a retry
            if isinstance(exc, GatewayUnavailableException):
                logger.warning("gateway_unavailable", ref_no=reserved.ref_no, operation=operation, error=exc.message)
            await self._unreserve(reserved)
            raise
        logger.info(
            "gateway_response",
            ref_no=reserved.ref_no,
            operation=operation,
            status=response.status.value,
            gateway_transaction_id=response.gateway_transaction_id,
        )
        return response

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def redirect(self, req: OperationRequest, mode: Optional[CaptureMode] = None) -> OperationResult:
        """Hosted-page redirect; without a mode an existing record keeps its own."""
        fp = self._fingerprint("redirect", req)

        async def step() -> OperationResult:
            record = await self._open(req, mode)
            if fp in record.idempotency_keys:
                return self.result_for(record)
            return await self._dispatch_redirect(record, req, fp)

        return await self.run_guarded(req.ref_no, "redirect", fp, step)

    async def sell(self, req: OperationRequest) -> OperationResult:
        fp = self._fingerprint("sell", req)

        async def step() -> OperationResult:
            record = await self._open(req, CaptureMode.SALE)
            if fp in record.idempotency_keys:
                return self.result_for(record)
            self.ensure_idle(record)
            if req.payment_method is None:
                return await self._dispatch_redirect(record, req, fp)
            if record.state == TransactionState.AUTHORIZED:
                # authorization of an earlier attempt went through, capture is left
                return await self._capture_full(record, fp)
            return await self._authorize(record, req, fp, then_capture=True)

        return await self.run_guarded(req.ref_no, "sell", fp, step)

    async def auth(self, req: OperationRequest) -> OperationResult:
        fp = self._fingerprint("auth", req)

        async def step() -> OperationResult:
            record = await self._open(req, CaptureMode.AUTH)
            if fp in record.idempotency_keys:
                return self.result_for(record)
            self.ensure_idle(record)
            if req.payment_method is None:
                return await self._dispatch_redirect(record, req, fp)
            if req.config.enable_3dsecure:
                if record.state == TransactionState.PENDING_3DS and req.previous_transaction_data is not None:
                    return await self._complete_step_up(record, req, fp)
                if record.state == TransactionState.INITIATED and req.previous_transaction_data is None:
                    return await self._dispatch_step_up(record, req, fp)
                raise InvalidTransitionException(record.ref_no, record.state.value, "three_ds")
            return await self._authorize(record, req, fp, then_capture=False)

        return await self.run_guarded(req.ref_no, "auth", fp, step)

    async def capture(self, req: OperationRequest) -> OperationResult:
        fp = self._fingerprint("capture", req)

        async def step() -> OperationResult:
            record = await self._existing(req)
            if fp in record.idempotency_keys:
                return self.result_for(record)
            self.ensure_idle(record)
            amount = req.amount if req.amount is not None else record.capturable_amount()
            record.check_capture(amount)
            reserved = await self._reserve(record, "capture")
            response = await self._call_gateway(
                reserved, "capture", self.gateway.capture, self._gateway_request(reserved, amount, fp, "capture"),
            )
            return await self._settle(
                reserved, fp, response, "capture",
                lambda rec: rec.apply_capture(amount, response.gateway_transaction_id),
            )

        return await self.run_guarded(req.ref_no, "capture", fp, step)

    async def refund(self, req: OperationRequest, *, partial: bool = False) -> OperationResult:
        fp = self._fingerprint("refund", req)

        async def step() -> OperationResult:
            record = await self._existing(req)
            if fp in record.idempotency_keys:
                return self.result_for(record)
            self.ensure_idle(record)
            amount = req.amount if req.amount is not None else record.refundable_amount()
            if partial and (req.amount is None or req.amount >= record.refundable_amount()):
                raise DomainValidationException(
                    f"Partial refund must be below the refundable {record.refundable_amount()}",
                    field="amount",
                )
            record.check_refund(amount)
            reserved = await self._reserve(record, "refund")
            response = await self._call_gateway(
                reserved, "refund", self.gateway.refund, self._gateway_request(reserved, amount, fp, "refund"),
            )
            return await self._settle(reserved, fp, response, "refund", lambda rec: rec.apply_refund(amount))

        return await self.run_guarded(req.ref_no, "refund", fp, step)

    async def void(self, req: OperationRequest) -> OperationResult:
        fp = self._fingerprint("void", req)

        async def step() -> OperationResult:
            record = await self._existing(req)
            if fp in record.idempotency_keys:
                return self.result_for(record)
            self.ensure_idle(record)
            record.ensure_allows("void")
            reserved = await self._reserve(record, "void")
            response = await self._call_gateway(
                reserved, "void", self.gateway.void, self._gateway_request(reserved, reserved.amount, fp, "void"),
            )
            return await self._settle(reserved, fp, response, "void", lambda rec: rec.apply_void())

        return await self.run_guarded(req.ref_no, "void", fp, step)

    async def status(self, ref_no: str) -> OperationResult:
        return self.result_for(await self.load(ref_no))

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _open(self, req: OperationRequest, mode: Optional[CaptureMode]) -> TransactionRecord:
        record = await self.repository.get(req.ref_no)
        if record is None:
            if req.amount is None or req.currency is None:
                raise DomainValidationException(
                    "amount and currency are required to start a transaction",
                    field="amount" if req.amount is None else "currency",
                )
            # DuplicateRefException from a concurrent creator re-runs the operation
            return await self.repository.create(
                req.ref_no,
                Decimal(req.amount),
                req.currency,
                capture_mode=mode or CaptureMode.AUTH,
                tokens_enabled=req.config.enable_tokens,
            )
        self._check_immutables(record, req)
        if mode is not None and record.capture_mode != mode:
            raise DomainValidationException(
                f"Transaction {record.ref_no} was started as {record.capture_mode.value}",
                field="ref_no",
            )
        return record

    async def _existing(self, req: OperationRequest) -> TransactionRecord:
        record = await self.load(req.ref_no)
        if req.currency is not None and req.currency != record.currency:
            raise DomainValidationException(
                f"Currency {req.currency} does not match {record.currency}", field="currency",
            )
        return record

    @staticmethod
    def _check_immutables(record: TransactionRecord, req: OperationRequest) -> None:
        if req.amount is not None and Decimal(req.amount) != record.amount:
            raise DomainValidationException(
                f"Amount {req.amount} does not match {record.amount}", field="amount",
            )
        if req.currency is not None and req.currency != record.currency:
            raise DomainValidationException(
                f"Currency {req.currency} does not match {record.currency}", field="currency",
            )

    async def _dispatch_redirect(self, record: TransactionRecord, req: OperationRequest, fp: str) -> OperationResult:
        self.ensure_idle(record)
        correlation_id = self._new_correlation_id()
        descriptor = RedirectDescriptor(
            url=self.hosted_page_url,
            form_attributes={
                "ref_no": record.ref_no,
                "amount": str(record.amount),
                "currency": record.currency,
                "accept_url": req.environment.return_url_ok,
                "decline_url": req.environment.return_url_failed,
                "enable_tokens": req.config.enable_tokens,
                "correlation_id": correlation_id,
            },
        )

        def mutate(rec: TransactionRecord) -> None:
            rec.request_redirect(correlation_id, self._next_check_after())
            rec.details["redirect"] = descriptor.model_dump(mode="json")

        stored = await self.commit(record, fp, mutate, trigger="redirect")
        return self.result_for(stored)

    async def _dispatch_step_up(self, record: TransactionRecord, req: OperationRequest, fp: str) -> OperationResult:
        correlation_id = self._new_correlation_id()
        descriptor = RedirectDescriptor(
            url=self.three_ds_url,
            form_attributes={
                "PaReq": correlation_id,
                "TermUrl": req.environment.return_url_3dsecure,
                "amount": str(record.amount),
                "currency": record.currency,
            },
        )

        def mutate(rec: TransactionRecord) -> None:
            rec.request_step_up(correlation_id, self._next_check_after())
            rec.details["redirect"] = descriptor.model_dump(mode="json")

        stored = await self.commit(record, fp, mutate, trigger="three_ds")
        return self.result_for(stored)

    async def _complete_step_up(self, record: TransactionRecord, req: OperationRequest, fp: str) -> OperationResult:
        data = dict(req.previous_transaction_data or {})
        enrolled = str(data.get("Enrolled") or "N").upper()
        step_up = {"Enrolled": enrolled, "PaRes": data.get("PaRes")}

        if enrolled != "Y":
            def decline(rec: TransactionRecord) -> None:
                rec.complete_step_up(enrolled, None)
                rec.details.update(step_up)

            stored = await self.commit(record, fp, decline, trigger="step_up")
            return self.result_for(stored, messages=three_ds_rejected_messages())

        reserved = await self._reserve(record, "auth")
        response = await self._call_gateway(
            reserved,
            "auth",
            self.gateway.authorize,
            self._gateway_request(reserved, reserved.amount, fp, "authorize", req=req, three_ds=step_up),
        )

        def mutate(rec: TransactionRecord) -> None:
            rec.details.update(step_up)
            if response.status == GatewayStatus.APPROVED:
                rec.complete_step_up("Y", response.gateway_transaction_id)
            elif response.status == GatewayStatus.DECLINED:
                rec.mark_declined(response.message)
            else:
                rec.mark_error(response.message)

        stored = await self.commit(reserved, fp, mutate, trigger="step_up")
        return self.result_for(stored, messages=self._gateway_messages(response))

    async def _authorize(
        self,
        record: TransactionRecord,
        req: OperationRequest,
        fp: str,
        *,
        then_capture: bool,
    ) -> OperationResult:
        record.ensure_allows("authorize")
        operation = "sell" if then_capture else "auth"
        reserved = await self._reserve(record, operation)
        response = await self._call_gateway(
            reserved, operation, self.gateway.authorize,
            self._gateway_request(reserved, reserved.amount, fp, "authorize", req=req),
        )

        def mutate(rec: TransactionRecord) -> None:
            if response.status == GatewayStatus.APPROVED:
                rec.mark_authorized(response.gateway_transaction_id)
            elif response.status == GatewayStatus.DECLINED:
                rec.mark_declined(response.message)
            else:
                rec.mark_error(response.message)

        approved = response.status == GatewayStatus.APPROVED
        if not (approved and then_capture):
            stored = await self.commit(reserved, fp, mutate, trigger=operation)
            return self.result_for(stored, messages=self._gateway_messages(response))

        # keep the reservation across the capture leg of a sale
        authorized = await self.commit(reserved, None, mutate, trigger=operation, release=False)
        return await self._capture_reserved(authorized, fp, authorized.amount)

    async def _capture_full(self, record: TransactionRecord, fp: str) -> OperationResult:
        amount = record.capturable_amount()
        record.check_capture(amount)
        reserved = await self._reserve(record, "sell")
        return await self._capture_reserved(reserved, fp, amount)

    async def _capture_reserved(self, reserved: TransactionRecord, fp: str, amount: Decimal) -> OperationResult:
        response = await self._call_gateway(
            reserved, "capture", self.gateway.capture, self._gateway_request(reserved, amount, fp, "capture"),
        )
        return await self._settle(
            reserved, fp, response, "capture",
            lambda rec: rec.apply_capture(amount, response.gateway_transaction_id),
        )

    async def _settle(
        self,
        reserved: TransactionRecord,
        fp: str,
        response: GatewayResponse,
        trigger: str,
        on_approved: Callable[[TransactionRecord], Any],
    ) -> OperationResult:
        """Commit a capture/refund/void outcome; a decline leaves the state as it was."""

        def mutate(rec: TransactionRecord) -> None:
            if response.status == GatewayStatus.APPROVED:
                on_approved(rec)
            elif response.status == GatewayStatus.ERROR:
                rec.mark_error(response.message)
            else:
                rec.details["last_decline"] = response.message

        stored = await self.commit(reserved, fp, mutate, trigger=trigger)
        if response.status == GatewayStatus.DECLINED:
            return self.result_for(stored, status=ResultStatus.DECLINED, messages=self._gateway_messages(response))
        return self.result_for(stored, messages=self._gateway_messages(response))

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def result_for(
        self,
        record: TransactionRecord,
        *,
        status: Optional[ResultStatus] = None,
        messages: Optional[Messages] = None,
        new_payment_method: Optional[NewPaymentMethod] = None,
    ) -> OperationResult:
        details: dict[str, Any] = {
            "trans_id": record.gateway_transaction_id,
            "amount": str(record.amount),
            "currency": record.currency,
            "captured_amount": str(record.captured_amount),
            "refunded_amount": str(record.refunded_amount),
        }
        details.update({k: v for k, v in record.details.items() if k != "redirect"})

        redirect = None
        retry_after = None
        if record.is_pending():
            if record.details.get("redirect"):
                redirect = RedirectDescriptor.model_validate(record.details["redirect"])
            retry_after = self._retry_after(record.next_check_after)
        if messages is None and record.state == TransactionState.DECLINED and record.failure_reason:
            messages = Messages(vendor_message=record.failure_reason, customer_message=record.failure_reason)

        return OperationResult(
            status=status or ResultStatus(STATE_TO_RESULT_STATUS[record.state.value]),
            ref_no=record.ref_no,
            state=record.state.value,
            transaction_details=details,
            redirect=redirect,
            retry_after_seconds=retry_after,
            messages=messages,
            new_payment_method=new_payment_method,
        )

    def record_payment_method(self, record: TransactionRecord, method: NewPaymentMethod) -> None:
        self.events.append(PaymentMethodRegistered(
            ref_no=record.ref_no,
            version=record.version,
            method=method.model_dump(mode="json"),
        ))

    @property
    def events(self) -> List:
        """Events raised in the current context; concurrent operations never share a list."""
        events = _pending_events.get()
        if events is None:
            events = []
            _pending_events.set(events)
        return events

    @contextmanager
    def collecting_events(self) -> Iterator[List]:
        """Give the enclosed operation a fresh event list of its own."""
        token = _pending_events.set([])
        try:
            yield _pending_events.get()
        finally:
            _pending_events.reset(token)

    def clear_events(self) -> List:
        """Drain and return collected domain events"""
        events = self.events.copy()
        self.events.clear()
        return events

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _fingerprint(operation: str, req: OperationRequest) -> str:
        return fingerprint(operation, {
            "ref_no": req.ref_no,
            "amount": req.amount,
            "currency": req.currency,
            "payment_method": req.payment_method.model_dump() if req.payment_method else None,
            "previous_transaction_data": req.previous_transaction_data,
            "config": req.config.model_dump(),
        })

    def _gateway_request(
        self,
        record: TransactionRecord,
        amount: Decimal,
        fp: str,
        gateway_operation: str,
        *,
        req: Optional[OperationRequest] = None,
        three_ds: Optional[dict[str, Any]] = None,
    ) -> GatewayRequest:
        """Both legs of a sale share fp, so the gateway key also names the leg."""
        payment_method = req.payment_method.model_dump() if req and req.payment_method else None
        return GatewayRequest(
            ref_no=record.ref_no,
            amount=amount,
            currency=record.currency,
            gateway_transaction_id=record.gateway_transaction_id,
            payment_method=payment_method,
            three_ds=three_ds,
            idempotency_key=f"{fp}:{gateway_operation}",
        )

    @staticmethod
    def _gateway_messages(response: GatewayResponse) -> Optional[Messages]:
        if response.status == GatewayStatus.APPROVED or not response.message:
            return None
        return Messages(vendor_message=response.message)

    @staticmethod
    def _new_correlation_id() -> str:
        return uuid.uuid4().hex

    def _next_check_after(self) -> datetime:
        return datetime.now(timezone.utc) + timedelta(seconds=self.pending_retry_seconds)

    @staticmethod
    def _retry_after(next_check_after: Optional[datetime]) -> Optional[int]:
        if next_check_after is None:
            return None
        if next_check_after.tzinfo is None:
            next_check_after = next_check_after.replace(tzinfo=timezone.utc)
        remaining = (next_check_after - datetime.now(timezone.utc)).total_seconds()
        return max(0, math.ceil(remaining))
