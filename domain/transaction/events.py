"""
Ledger domain events.

Dataclass events record transaction lifecycle facts for downstream handling
(host notification, audit). Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
import uuid


@dataclass
class TransactionEvent:
    ref_no: str
    version: int
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class TransactionStateChanged(TransactionEvent):
    from_state: str = ""
    to_state: str = ""
    trigger: str = ""
    gateway_transaction_id: Optional[str] = None


@dataclass
class PaymentMethodRegistered(TransactionEvent):
    method: dict[str, Any] = field(default_factory=dict)
