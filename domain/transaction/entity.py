"""
Transaction record - aggregate root of the gateway ledger.

The record owns its state machine: every mutation goes through a named
transition that checks the current state against TRANSITIONS and the amount
guards. Version bumps are the repository's job (see TransactionRepository).
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import (
    DomainValidationException,
    InvalidAmountException,
    InvalidTransitionException,
)


class TransactionState(str, Enum):
    INITIATED = "INITIATED"
    PENDING_REDIRECT = "PENDING_REDIRECT"
    PENDING_3DS = "PENDING_3DS"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    DECLINED = "DECLINED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    VOIDED = "VOIDED"
    ERROR = "ERROR"


class CaptureMode(str, Enum):
    """SALE captures right after authorization, AUTH waits for an explicit capture."""
    SALE = "sale"
    AUTH = "auth"


TERMINAL_STATES = frozenset({
    TransactionState.DECLINED,
    TransactionState.VOIDED,
    TransactionState.REFUNDED,
    TransactionState.ERROR,
})

PENDING_STATES = frozenset({
    TransactionState.PENDING_REDIRECT,
    TransactionState.PENDING_3DS,
})

S = TransactionState

# (from_state, event) -> allowed target states
TRANSITIONS: dict[tuple[TransactionState, str], frozenset[TransactionState]] = {
    (S.INITIATED, "redirect"): frozenset({S.PENDING_REDIRECT}),
    (S.INITIATED, "three_ds"): frozenset({S.PENDING_3DS}),
    (S.INITIATED, "authorize"): frozenset({S.AUTHORIZED, S.DECLINED}),
    (S.PENDING_REDIRECT, "authorize"): frozenset({S.AUTHORIZED, S.DECLINED}),
    (S.PENDING_3DS, "step_up"): frozenset({S.AUTHORIZED, S.DECLINED}),
    (S.AUTHORIZED, "capture"): frozenset({S.CAPTURED}),
    (S.CAPTURED, "refund"): frozenset({S.PARTIALLY_REFUNDED, S.REFUNDED}),
    (S.PARTIALLY_REFUNDED, "refund"): frozenset({S.PARTIALLY_REFUNDED, S.REFUNDED}),
    (S.AUTHORIZED, "void"): frozenset({S.VOIDED}),
}

ZERO = Decimal("0")
CENT = Decimal("0.01")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TransactionRecord:
    """
    One billing transaction, keyed by the host's ref_no.

    Business rules:
    1. amount and currency are fixed at creation
    2. captured_amount is the amount currently held (net of refunds) and
       refunded_amount the cumulative refunds, so their sum is the gross
       captured amount and never exceeds amount
    3. state only moves along TRANSITIONS; any non-terminal state may fall
       into ERROR on an unrecoverable gateway fault
    4. records are never deleted; terminal states stay for audit and
       idempotency lookups
    """

    ref_no: str
    amount: Decimal
    currency: str
    state: TransactionState = TransactionState.INITIATED
    capture_mode: CaptureMode = CaptureMode.AUTH
    gateway_transaction_id: Optional[str] = None
    captured_amount: Decimal = ZERO
    refunded_amount: Decimal = ZERO
    idempotency_keys: set[str] = field(default_factory=set)
    version: int = 0

    # operation currently awaiting a gateway response, if any
    in_flight: Optional[str] = None
    in_flight_since: Optional[datetime] = None
    correlation_ids: list[str] = field(default_factory=list)
    next_check_after: Optional[datetime] = None
    tokens_enabled: bool = False
    payment_methods: list[dict[str, Any]] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = Decimal(self.amount)
        self.captured_amount = Decimal(self.captured_amount)
        self.refunded_amount = Decimal(self.refunded_amount)
        if self.amount <= 0:
            raise DomainValidationException(f"Amount must be positive: {self.amount}", field="amount")
        if self.amount != self.amount.quantize(CENT):
            raise DomainValidationException(f"Amount has more than two decimal places: {self.amount}", field="amount")
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise DomainValidationException(f"Invalid currency code: {self.currency}", field="currency")
        self.currency = self.currency.upper()
        self.state = TransactionState(self.state)
        self.capture_mode = CaptureMode(self.capture_mode)
        if self.created_at is None:
            self.created_at = _now()
        if self.updated_at is None:
            self.updated_at = self.created_at

    # --- queries -------------------------------------------------------

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_pending(self) -> bool:
        return self.state in PENDING_STATES

    def capturable_amount(self) -> Decimal:
        return self.amount - self.captured_amount - self.refunded_amount

    def refundable_amount(self) -> Decimal:
        return self.captured_amount

    def reservation_active(self, ttl_seconds: float, now: Optional[datetime] = None) -> bool:
        """True while the in-flight operation is younger than ttl_seconds.

        A reservation without a start time never expires.
        """
        if not self.in_flight:
            return False
        if self.in_flight_since is None:
            return True
        since = self.in_flight_since
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        return (now or _now()) - since < timedelta(seconds=ttl_seconds)

    def allows(self, event: str) -> bool:
        return (self.state, event) in TRANSITIONS

    def copy(self) -> "TransactionRecord":
        return copy.deepcopy(self)

    # --- guards --------------------------------------------------------

    def ensure_allows(self, event: str) -> None:
        if not self.allows(event):
            raise InvalidTransitionException(self.ref_no, self.state.value, event)

    def check_capture(self, amount: Decimal) -> None:
        self.ensure_allows("capture")
        self._check_amount(amount, self.capturable_amount())

    def check_refund(self, amount: Decimal) -> None:
        # A fully refunded record still answers with the amount guard
        if self.state == TransactionState.REFUNDED:
            raise InvalidAmountException(amount, self.refundable_amount())
        self.ensure_allows("refund")
        self._check_amount(amount, self.refundable_amount())

    @staticmethod
    def _check_amount(amount: Decimal, available: Decimal) -> None:
        if amount <= 0:
            raise DomainValidationException(f"Amount must be positive: {amount}", field="amount")
        if amount > available:
            raise InvalidAmountException(amount, available)

    # --- transitions ---------------------------------------------------

    def _move(self, event: str, target: TransactionState) -> TransactionState:
        allowed = TRANSITIONS.get((self.state, event))
        if not allowed or target not in allowed:
            raise InvalidTransitionException(self.ref_no, self.state.value, event)
        previous = self.state
        self.state = target
        self.updated_at = _now()
        return previous

    def request_redirect(self, correlation_id: str, next_check_after: datetime) -> TransactionState:
        previous = self._move("redirect", TransactionState.PENDING_REDIRECT)
        self.correlation_ids.append(correlation_id)
        self.next_check_after = next_check_after
        return previous

    def request_step_up(self, correlation_id: str, next_check_after: datetime) -> TransactionState:
        previous = self._move("three_ds", TransactionState.PENDING_3DS)
        self.correlation_ids.append(correlation_id)
        self.next_check_after = next_check_after
        return previous

    def mark_authorized(self, gateway_transaction_id: Optional[str]) -> TransactionState:
        previous = self._move("authorize", TransactionState.AUTHORIZED)
        self._settle_pending(gateway_transaction_id)
        return previous

    def mark_declined(self, reason: Optional[str] = None) -> TransactionState:
        event = "step_up" if self.state == TransactionState.PENDING_3DS else "authorize"
        previous = self._move(event, TransactionState.DECLINED)
        self._settle_pending(None)
        self.failure_reason = reason
        return previous

    def complete_step_up(self, enrolled: str, gateway_transaction_id: Optional[str]) -> TransactionState:
        """Apply a 3-D-Secure step-up result: only Enrolled == 'Y' authorizes."""
        if enrolled == "Y":
            previous = self._move("step_up", TransactionState.AUTHORIZED)
            self._settle_pending(gateway_transaction_id)
            return previous
        return self.mark_declined("Rejected by 3D Secure")

    def apply_capture(self, amount: Decimal, gateway_transaction_id: Optional[str] = None) -> TransactionState:
        self.check_capture(amount)
        previous = self._move("capture", TransactionState.CAPTURED)
        self.captured_amount += amount
        if gateway_transaction_id and not self.gateway_transaction_id:
            self.gateway_transaction_id = gateway_transaction_id
        return previous

    def apply_refund(self, amount: Decimal) -> TransactionState:
        self.check_refund(amount)
        remaining = self.captured_amount - amount
        target = TransactionState.REFUNDED if remaining == 0 else TransactionState.PARTIALLY_REFUNDED
        previous = self._move("refund", target)
        self.captured_amount = remaining
        self.refunded_amount += amount
        return previous

    def apply_void(self) -> TransactionState:
        return self._move("void", TransactionState.VOIDED)

    def mark_error(self, reason: Optional[str] = None) -> TransactionState:
        if self.is_terminal():
            raise InvalidTransitionException(self.ref_no, self.state.value, "gateway_error")
        previous = self.state
        self.state = TransactionState.ERROR
        self.failure_reason = reason
        self.next_check_after = None
        self.updated_at = _now()
        return previous

    def register_payment_method(self, method: dict[str, Any]) -> None:
        self.payment_methods.append(dict(method))
        self.updated_at = _now()

    def _settle_pending(self, gateway_transaction_id: Optional[str]) -> None:
        if gateway_transaction_id:
            self.gateway_transaction_id = gateway_transaction_id
        self.next_check_after = None
