"""
Idempotency guard port and request fingerprinting.

The guard is the at-most-once primitive of the ledger: a request whose
fingerprint was already recorded never reaches the gateway again.
"""
from __future__ import annotations

import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional, Union


@dataclass(frozen=True)
class FirstSeen:
    """No prior request with this fingerprint; the caller now owns it."""


@dataclass(frozen=True)
class Duplicate:
    """A prior identical request exists.

    previous_result is None while that request is still in flight.
    """

    previous_result: Optional[dict[str, Any]] = None

    @property
    def in_flight(self) -> bool:
        return self.previous_result is None


Outcome = Union[FirstSeen, Duplicate]


def _canonical(value: Any) -> Any:
    if isinstance(value, Decimal):
        # 60, 60.0 and 60.00 are the same amount
        return format(value.normalize(), "f")
    if isinstance(value, Mapping):
        return {str(k): _canonical(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if isinstance(value, Enum):
        return _canonical(value.value)
    return value


def fingerprint(operation_kind: str, fields: Mapping[str, Any]) -> str:
    """Stable sha256 over the semantically meaningful request fields.

    Callers must not pass wall-clock or random values.
    """
    payload = json.dumps(
        {"op": operation_kind, "fields": _canonical(fields)},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def idempotency_key(ref_no: str, operation_kind: str, request_fingerprint: str) -> str:
    return f"{ref_no}:{operation_kind}:{request_fingerprint}"


class IdempotencyStore(ABC):
    """Guard storage contract.

    check_and_record must be atomic: of several concurrent callers with the
    same key exactly one gets FirstSeen.
    """

    @abstractmethod
    async def check_and_record(self, ref_no: str, operation_kind: str, request_fingerprint: str) -> Outcome:
        """Reserve the key or report the prior request"""

    @abstractmethod
    async def complete(
        self,
        ref_no: str,
        operation_kind: str,
        request_fingerprint: str,
        result: dict[str, Any],
    ) -> None:
        """Store the final result for replay"""

    @abstractmethod
    async def release(self, ref_no: str, operation_kind: str, request_fingerprint: str) -> None:
        """Drop a reservation whose request had no effect, so a retry may run"""
