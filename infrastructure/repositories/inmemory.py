"""
In-memory transaction repository for tests and the demo provider.

Records are copied on the way in and out, so callers never share mutable
state with the store. The version check runs under an asyncio lock, which
makes update a real compare-and-set within one event loop.
"""
from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Optional

from domain.common.exceptions import DuplicateRefException, VersionConflictException
from domain.transaction.entity import CaptureMode, TransactionRecord
from domain.transaction.repository import TransactionRepository


class InMemoryTransactionRepository(TransactionRepository):
    def __init__(self) -> None:
        self._records: dict[str, TransactionRecord] = {}
        # correlation id / gateway transaction id -> ref_no
        self._external_refs: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, ref_no: str) -> Optional[TransactionRecord]:
        record = self._records.get(ref_no)
        return record.copy() if record else None

    async def create(
        self,
        ref_no: str,
        amount: Decimal,
        currency: str,
        *,
        capture_mode: CaptureMode = CaptureMode.AUTH,
        tokens_enabled: bool = False,
    ) -> TransactionRecord:
        record = TransactionRecord(
            ref_no=ref_no,
            amount=amount,
            currency=currency,
            capture_mode=capture_mode,
            tokens_enabled=tokens_enabled,
            version=1,
        )
        async with self._lock:
            if ref_no in self._records:
                raise DuplicateRefException(ref_no)
            self._records[ref_no] = record.copy()
        return record

    async def update(self, record: TransactionRecord, expected_version: int) -> TransactionRecord:
        async with self._lock:
            current = self._records.get(record.ref_no)
            actual = current.version if current else None
            if actual != expected_version:
                raise VersionConflictException(record.ref_no, expected_version, actual)
            stored = record.copy()
            stored.version = expected_version + 1
            self._records[record.ref_no] = stored
            self._index(stored)
        return stored.copy()

    async def find_by_external_ref(self, external_ref: str) -> Optional[TransactionRecord]:
        ref_no = self._external_refs.get(external_ref)
        return await self.get(ref_no) if ref_no else None

    def _index(self, record: TransactionRecord) -> None:
        for correlation_id in record.correlation_ids:
            self._external_refs[correlation_id] = record.ref_no
        if record.gateway_transaction_id:
            self._external_refs[record.gateway_transaction_id] = record.ref_no

    def __len__(self) -> int:
        return len(self._records)
