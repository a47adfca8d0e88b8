"""进程内幂等存储（测试与单实例部署）"""
from __future__ import annotations

import asyncio
import copy
from typing import Any, Optional

from domain.transaction.idempotency import Duplicate, FirstSeen, IdempotencyStore, Outcome, idempotency_key


class InMemoryIdempotencyStore(IdempotencyStore):
    def __init__(self) -> None:
        # key -> None while in flight, else the stored result
        self._entries: dict[str, Optional[dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def check_and_record(self, ref_no: str, operation_kind: str, request_fingerprint: str) -> Outcome:
        key = idempotency_key(ref_no, operation_kind, request_fingerprint)
        async with self._lock:
            if key in self._entries:
                return Duplicate(copy.deepcopy(self._entries[key]))
            self._entries[key] = None
            return FirstSeen()

    async def complete(
        self,
        ref_no: str,
        operation_kind: str,
        request_fingerprint: str,
        result: dict[str, Any],
    ) -> None:
        async with self._lock:
            self._entries[idempotency_key(ref_no, operation_kind, request_fingerprint)] = copy.deepcopy(result)

    async def release(self, ref_no: str, operation_kind: str, request_fingerprint: str) -> None:
        async with self._lock:
            self._entries.pop(idempotency_key(ref_no, operation_kind, request_fingerprint), None)

    def __len__(self) -> int:
        return len(self._entries)
