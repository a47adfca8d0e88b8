"""
Transaction repository port - durable keyed storage of TransactionRecords.
"""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

from .entity import CaptureMode, TransactionRecord


class TransactionRepository(ABC):
    """Record store contract.

    The store has no locking of its own. `update` is a compare-and-set on
    `version`: it succeeds only when the stored version equals
    `expected_version`, then persists the record with version + 1.
    """

    @abstractmethod
    async def get(self, ref_no: str) -> Optional[TransactionRecord]:
        """Return a detached copy of the record, or None"""

    @abstractmethod
    async def create(
        self,
        ref_no: str,
        amount: Decimal,
        currency: str,
        *,
        capture_mode: CaptureMode = CaptureMode.AUTH,
        tokens_enabled: bool = False,
    ) -> TransactionRecord:
        """Insert a new INITIATED record; raises DuplicateRefException if ref_no exists"""

    @abstractmethod
    async def update(self, record: TransactionRecord, expected_version: int) -> TransactionRecord:
        """Persist record; raises VersionConflictException on a stale expected_version"""

    @abstractmethod
    async def find_by_external_ref(self, external_ref: str) -> Optional[TransactionRecord]:
        """Resolve a correlation id or gateway transaction id to its record"""
