"""
交易账本数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, JSON, Boolean,
    Index, ForeignKey
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


class TransactionModel(Base):
    """
    交易记录数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有状态迁移规则都在 domain.transaction.entity.TransactionRecord 中
    """
    __tablename__ = "transactions"

    # 主键（宿主系统的交易参考号）
    ref_no = Column(String(100), primary_key=True, comment="宿主交易参考号")

    # 金额信息（使用 Numeric 存储精确金额）
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="交易金额")
    currency = Column(String(3), nullable=False, comment="货币代码 ISO-4217")
    captured_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="当前已捕获净额")
    refunded_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="累计退款金额")

    # 状态
    state = Column(String(32), nullable=False, default="INITIATED", index=True, comment="账本状态")
    capture_mode = Column(String(16), nullable=False, default="auth", comment="捕获模式: sale/auth")
    gateway_transaction_id = Column(String(200), nullable=True, index=True, comment="网关交易ID")

    # 乐观锁版本号
    version = Column(Integer, nullable=False, default=1, comment="版本号")
    in_flight = Column(String(32), nullable=True, comment="进行中的网关操作")
    in_flight_since = Column(DateTime(timezone=True), nullable=True, comment="进行中操作的开始时间")

    # 幂等指纹（JSON 数组）
    idempotency_keys = Column(JSON, nullable=False, default=list, comment="已提交请求指纹")

    next_check_after = Column(DateTime(timezone=True), nullable=True, comment="挂起状态的下次检查时间")
    tokens_enabled = Column(Boolean, nullable=False, default=False, comment="是否保存支付方式令牌")
    payment_methods = Column(JSON, nullable=False, default=list, comment="已登记的支付方式")
    details = Column(JSON, nullable=False, default=dict, comment="交易明细")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    # 时间戳
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )

    # 关系
    correlations = relationship(
        "TransactionCorrelationModel",
        back_populates="transaction",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return (
            f"<TransactionModel(ref_no='{self.ref_no}', amount={self.amount}, "
            f"state='{self.state}', version={self.version})>"
        )


class TransactionCorrelationModel(Base):
    """
    回调关联模型

    重定向/3DS 下发时生成的关联ID，回调通过它找回交易
    """
    __tablename__ = "transaction_correlations"

    correlation_id = Column(String(64), primary_key=True, comment="关联ID")
    ref_no = Column(
        String(100),
        ForeignKey("transactions.ref_no", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="交易参考号"
    )
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )

    transaction = relationship("TransactionModel", back_populates="correlations")

    __table_args__ = (
        Index("ix_transaction_correlations_ref_no_created", "ref_no", "created_at"),
    )
