"""Business exceptions shared by the domain and infrastructure layers.

The core layer only maps these onto HTTP responses; the domain layer must
not depend back on core.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class BusinessException(Exception):
    """Base class of every business error"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    """Missing or malformed input, rejected before the ledger is touched."""

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="ValidationError",
            details=details,
            field=field,
        )


class InvalidAmountException(DomainValidationException):
    def __init__(self, amount: Decimal, available: Decimal, *, field: str = "amount"):
        super().__init__(
            f"Amount {amount} exceeds the remaining {available}",
            field=field,
            details={"amount": str(amount), "available": str(available)},
        )
        self.code = PaymentCode.INVALID_AMOUNT
        self.error_type = "InvalidAmount"


class TransactionNotFoundException(BusinessException):
    def __init__(self, ref_no: str):
        super().__init__(
            code=PaymentCode.TRANSACTION_NOT_FOUND,
            message=f"Transaction {ref_no} not found",
            error_type="TransactionNotFound",
            details={"ref_no": ref_no},
        )


class InvalidTransitionException(BusinessException):
    def __init__(self, ref_no: str, state: str, event: str):
        super().__init__(
            code=PaymentCode.INVALID_TRANSITION,
            message=f"Cannot apply {event} to transaction {ref_no} in state {state}",
            error_type="InvalidTransition",
            details={"ref_no": ref_no, "state": state, "event": event},
        )


class DuplicateRefException(BusinessException):
    def __init__(self, ref_no: str):
        super().__init__(
            code=PaymentCode.DUPLICATE_REF,
            message=f"Transaction {ref_no} already exists",
            error_type="DuplicateRef",
            details={"ref_no": ref_no},
            field="ref_no",
        )


class VersionConflictException(BusinessException):
    def __init__(self, ref_no: str, expected: int, actual: Optional[int]):
        super().__init__(
            code=PaymentCode.VERSION_CONFLICT,
            message=f"Transaction {ref_no} changed concurrently (expected v{expected}, found v{actual})",
            error_type="VersionConflict",
            details={"ref_no": ref_no, "expected_version": expected, "actual_version": actual},
        )


class OperationInFlightException(BusinessException):
    def __init__(self, ref_no: str, operation: Optional[str] = None):
        super().__init__(
            code=PaymentCode.OPERATION_IN_FLIGHT,
            message=f"Another operation is in flight for transaction {ref_no}",
            error_type="OperationInFlight",
            details={"ref_no": ref_no, "operation": operation},
        )


class StaleCallbackException(BusinessException):
    def __init__(self, ref_no: str, state: str, result: str):
        super().__init__(
            code=PaymentCode.STALE_CALLBACK,
            message=f"Callback '{result}' does not apply to transaction {ref_no} in state {state}",
            error_type="StaleCallback",
            details={"ref_no": ref_no, "state": state, "result": result},
        )


class UnknownCallbackException(BusinessException):
    def __init__(self, external_ref: str):
        super().__init__(
            code=PaymentCode.UNKNOWN_CALLBACK,
            message=f"No transaction correlates with {external_ref}",
            error_type="UnknownCallback",
            details={"external_ref": external_ref},
        )


class GatewayException(BusinessException):
    """Base for failures reported by the gateway client."""

    def __init__(
        self,
        message: str,
        *,
        code: int,
        error_type: str,
        provider: str,
        provider_code: str | None = None,
        details: Optional[dict] = None,
    ):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(code=code, message=message, error_type=error_type, details=full_details)
        self.provider = provider
        self.provider_code = provider_code


class GatewayUnavailableException(GatewayException):
    """Transient: the whole operation may be retried."""

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(
            message,
            code=PaymentCode.PROVIDER_RECOVERABLE,
            error_type="GatewayUnavailable",
            provider=provider,
            provider_code=provider_code,
            details=details,
        )


class GatewayRejectedException(GatewayException):
    """Terminal for this attempt; surfaces as DECLINED."""

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(
            message,
            code=PaymentCode.PROVIDER_REJECTED,
            error_type="GatewayRejected",
            provider=provider,
            provider_code=provider_code,
            details=details,
        )


class GatewayErrorException(GatewayException):
    """Unrecoverable gateway fault; the transaction moves to ERROR."""

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(
            message,
            code=PaymentCode.PROVIDER_ERROR,
            error_type="GatewayError",
            provider=provider,
            provider_code=provider_code,
            details=details,
        )
