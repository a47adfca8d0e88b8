"""
交易仓储实现 - 使用SQLAlchemy实现数据访问

每次调用使用独立会话并立即提交；乐观锁通过
UPDATE ... WHERE ref_no = :ref_no AND version = :expected 实现。
"""
from typing import Optional
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from domain.common.exceptions import DuplicateRefException, VersionConflictException
from domain.transaction.entity import CaptureMode, TransactionRecord, TransactionState
from domain.transaction.repository import TransactionRepository
from infrastructure.models.transaction import TransactionCorrelationModel, TransactionModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyTransactionRepository(TransactionRepository):
    """交易仓储的SQLAlchemy实现"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    def _to_entity(self, model: TransactionModel) -> TransactionRecord:
        """将数据库模型转换为领域实体"""
        correlations = sorted(model.correlations, key=lambda c: c.created_at)
        return TransactionRecord(
            ref_no=model.ref_no,
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            state=TransactionState(model.state),
            capture_mode=CaptureMode(model.capture_mode),
            gateway_transaction_id=model.gateway_transaction_id,
            captured_amount=Decimal(str(model.captured_amount)),
            refunded_amount=Decimal(str(model.refunded_amount)),
            idempotency_keys=set(model.idempotency_keys or []),
            version=model.version,
            in_flight=model.in_flight,
            in_flight_since=model.in_flight_since,
            correlation_ids=[c.correlation_id for c in correlations],
            next_check_after=model.next_check_after,
            tokens_enabled=bool(model.tokens_enabled),
            payment_methods=list(model.payment_methods or []),
            details=dict(model.details or {}),
            failure_reason=model.failure_reason,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _values(entity: TransactionRecord) -> dict:
        """可变字段 -> 列值"""
        return {
            "state": entity.state.value,
            "gateway_transaction_id": entity.gateway_transaction_id,
            "captured_amount": entity.captured_amount,
            "refunded_amount": entity.refunded_amount,
            "in_flight": entity.in_flight,
            "in_flight_since": entity.in_flight_since,
            "idempotency_keys": sorted(entity.idempotency_keys),
            "next_check_after": entity.next_check_after,
            "tokens_enabled": entity.tokens_enabled,
            "payment_methods": entity.payment_methods,
            "details": entity.details,
            "failure_reason": entity.failure_reason,
            "updated_at": entity.updated_at,
        }

    async def _load(self, session: AsyncSession, ref_no: str) -> Optional[TransactionModel]:
        result = await session.execute(
            select(TransactionModel).where(TransactionModel.ref_no == ref_no)
        )
        return result.scalar_one_or_none()

    async def get(self, ref_no: str) -> Optional[TransactionRecord]:
        async with self.session_factory() as session:
            model = await self._load(session, ref_no)
            return self._to_entity(model) if model else None

    async def create(
        self,
        ref_no: str,
        amount: Decimal,
        currency: str,
        *,
        capture_mode: CaptureMode = CaptureMode.AUTH,
        tokens_enabled: bool = False,
    ) -> TransactionRecord:
        """创建交易记录"""
        entity = TransactionRecord(
            ref_no=ref_no,
            amount=amount,
            currency=currency,
            capture_mode=capture_mode,
            tokens_enabled=tokens_enabled,
            version=1,
        )
        async with self.session_factory() as session:
            model = TransactionModel(
                ref_no=entity.ref_no,
                amount=entity.amount,
                currency=entity.currency,
                capture_mode=entity.capture_mode.value,
                version=entity.version,
                created_at=entity.created_at,
                **self._values(entity),
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.warning("transaction_create_conflict", ref_no=ref_no)
                raise DuplicateRefException(ref_no)
        logger.info("transaction_created", ref_no=ref_no, amount=str(amount), currency=entity.currency)
        return entity

    async def update(self, record: TransactionRecord, expected_version: int) -> TransactionRecord:
        """条件更新：版本号不符时抛出 VersionConflictException"""
        async with self.session_factory() as session:
            result = await session.execute(
                update(TransactionModel)
                .where(
                    TransactionModel.ref_no == record.ref_no,
                    TransactionModel.version == expected_version,
                )
                .values(version=expected_version + 1, **self._values(record))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                current = await self._load(session, record.ref_no)
                raise VersionConflictException(
                    record.ref_no, expected_version, current.version if current else None
                )

            # 新增的关联ID与状态更新在同一事务中提交
            existing = set(
                (await session.execute(
                    select(TransactionCorrelationModel.correlation_id)
                    .where(TransactionCorrelationModel.ref_no == record.ref_no)
                )).scalars().all()
            )
            for correlation_id in record.correlation_ids:
                if correlation_id not in existing:
                    session.add(TransactionCorrelationModel(correlation_id=correlation_id, ref_no=record.ref_no))
            await session.commit()

        stored = record.copy()
        stored.version = expected_version + 1
        return stored

    async def find_by_external_ref(self, external_ref: str) -> Optional[TransactionRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TransactionCorrelationModel.ref_no)
                .where(TransactionCorrelationModel.correlation_id == external_ref)
            )
            ref_no = result.scalar_one_or_none()
            if ref_no is None:
                result = await session.execute(
                    select(TransactionModel.ref_no)
                    .where(TransactionModel.gateway_transaction_id == external_ref)
                    .limit(1)
                )
                ref_no = result.scalar_one_or_none()
            if ref_no is None:
                return None
            model = await self._load(session, ref_no)
            return self._to_entity(model) if model else None
