"""
Gateway/ledger specific codes and the state→result status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Ledger guards (2xxxx, next to generic business errors)
    TRANSACTION_NOT_FOUND = 20100
    DUPLICATE_REF = 20101
    VERSION_CONFLICT = 20102
    INVALID_TRANSITION = 20103
    INVALID_AMOUNT = 20104
    OPERATION_IN_FLIGHT = 20105

    # Callback reconciliation
    STALE_CALLBACK = 20200
    UNKNOWN_CALLBACK = 20201

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    PROVIDER_REJECTED = 60002
    TIMEOUT = 60003


# Ledger state → outbound result status.
# PENDING_3DS reports PENDING together with a step-up redirect descriptor.
STATE_TO_RESULT_STATUS = {
    "INITIATED": "PENDING",
    "PENDING_REDIRECT": "REDIRECT",
    "PENDING_3DS": "PENDING",
    "AUTHORIZED": "APPROVED",
    "CAPTURED": "APPROVED",
    "DECLINED": "DECLINED",
    "PARTIALLY_REFUNDED": "REFUNDED",
    "REFUNDED": "REFUNDED",
    "VOIDED": "APPROVED",
    "ERROR": "ERROR",
}


# Raw gateway status → normalized gateway status understood by the ledger
GATEWAY_STATUS_TO_INTERNAL = {
    "approved": "approved",
    "ok": "approved",
    "success": "approved",
    "succeeded": "approved",
    "declined": "declined",
    "fail": "declined",
    "failed": "declined",
    "rejected": "declined",
    "error": "error",
}
