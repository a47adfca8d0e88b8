"""
Callback reconciler - applies inbound gateway notifications to the ledger.

A notification resolves to a record through a correlation id issued at
redirect / 3DS dispatch (or the gateway transaction id). The state change
and an optional payment-method registration are committed in one versioned
update, so either both effects land or neither does.
"""
from __future__ import annotations

from typing import Optional

from application.dtos.payments import CallbackPayload, CallbackResult, Messages, NewPaymentMethod, OperationResult
from application.services.ledger import THREE_DS_REJECTED, TransactionLedger, three_ds_rejected_messages
from core.logging_config import get_logger
from domain.common.exceptions import (
    StaleCallbackException,
    UnknownCallbackException,
)
from domain.transaction.entity import CaptureMode, TransactionRecord, TransactionState
from domain.transaction.idempotency import fingerprint


logger = get_logger(__name__)


class CallbackReconciler:
    def __init__(self, ledger: TransactionLedger) -> None:
        self.ledger = ledger

    async def reconcile(self, payload: CallbackPayload) -> OperationResult:
        record = await self._resolve(payload.external_ref)
        fp = fingerprint("callback", {
            "external_ref": payload.external_ref,
            "result": payload.result,
            "txn_id": payload.txn_id,
            "token": payload.token,
            "public_name": payload.public_name,
            "expires": payload.expires,
            "enrolled": payload.enrolled,
            "pares": payload.pares,
        })

        async def step() -> OperationResult:
            current = await self.ledger.load(record.ref_no)
            if fp in current.idempotency_keys:
                return self.ledger.result_for(current)
            # the synchronous call has not committed yet; the gateway redelivers
            self.ledger.ensure_idle(current)
            return await self._apply(current, payload, fp)

        return await self.ledger.run_guarded(record.ref_no, "callback", fp, step)

    async def _resolve(self, external_ref: str) -> TransactionRecord:
        record = await self.ledger.repository.find_by_external_ref(external_ref)
        if record is None:
            record = await self.ledger.repository.get(external_ref)
        if record is None:
            logger.warning("callback_unknown", external_ref=external_ref)
            raise UnknownCallbackException(external_ref)
        return record

    async def _apply(self, record: TransactionRecord, payload: CallbackPayload, fp: str) -> OperationResult:
        if record.state not in (
            TransactionState.INITIATED,
            TransactionState.PENDING_REDIRECT,
            TransactionState.PENDING_3DS,
        ):
            logger.warning(
                "callback_stale",
                ref_no=record.ref_no,
                state=record.state.value,
                result=payload.result,
            )
            raise StaleCallbackException(record.ref_no, record.state.value, payload.result)

        outcome = payload.outcome
        enrolled = (payload.enrolled or "N").upper()
        approved = outcome == CallbackResult.OK and (
            record.state != TransactionState.PENDING_3DS or enrolled == "Y"
        )
        # only an approved payment leaves a reusable method behind
        method = self._payment_method(record, payload) if approved else None

        def mutate(rec: TransactionRecord) -> None:
            if rec.state == TransactionState.PENDING_3DS:
                rec.details.update({"Enrolled": enrolled, "PaRes": payload.pares})
                if outcome == CallbackResult.OK:
                    rec.complete_step_up(enrolled, payload.txn_id)
                else:
                    rec.mark_declined(f"Gateway returned '{payload.result}'")
            elif outcome == CallbackResult.OK:
                rec.mark_authorized(payload.txn_id)
                if rec.capture_mode == CaptureMode.SALE:
                    rec.apply_capture(rec.capturable_amount())
            elif outcome == CallbackResult.FAIL:
                rec.mark_declined(f"Gateway returned '{payload.result}'")
            else:
                rec.mark_error(f"Unknown status '{payload.result}'")
            if method is not None:
                rec.register_payment_method(method.model_dump(mode="json"))
            extras = payload.gateway_fields()
            if extras:
                rec.details.setdefault("callback", {}).update(extras)

        stored = await self.ledger.commit(record, fp, mutate, trigger="callback")
        if method is not None:
            self.ledger.record_payment_method(stored, method)
            logger.info("payment_method_registered", ref_no=stored.ref_no, paymethod_name=method.paymethod_name)
        logger.info(
            "callback_applied",
            ref_no=stored.ref_no,
            external_ref=payload.external_ref,
            result=outcome.value,
            state=stored.state.value,
        )
        if stored.state == TransactionState.DECLINED and stored.failure_reason == THREE_DS_REJECTED:
            messages = three_ds_rejected_messages()
        else:
            messages = Messages(vendor_message=self._describe(outcome, payload.result))
        return self.ledger.result_for(stored, messages=messages, new_payment_method=method)

    @staticmethod
    def _describe(outcome: CallbackResult, result: str) -> str:
        if outcome == CallbackResult.OK:
            return "Success"
        if outcome == CallbackResult.FAIL:
            return "Declined"
        return f"Unknown status '{result}'"

    @staticmethod
    def _payment_method(record: TransactionRecord, payload: CallbackPayload) -> Optional[NewPaymentMethod]:
        if not record.tokens_enabled:
            return None
        return payload.new_payment_method()
