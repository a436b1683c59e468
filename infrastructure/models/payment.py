"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, String, Numeric, DateTime, Text, JSON,
    Index, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentTransactionModel(Base):
    """
    交易数据库模型

    这是数据库表的映射，不包含业务逻辑
    状态转换规则在 domain.payment.entity 中定义
    """
    __tablename__ = "payment_transactions"

    id = Column(String(36), primary_key=True, comment="交易ID (uuid4)")

    # 订单信息（可为空：无订单的收款）
    order_id = Column(String(100), nullable=True, index=True, comment="订单ID")

    # 支付方式与渠道
    method = Column(String(20), nullable=False, comment="支付方式: cash/card/qr/wallet")
    provider = Column(String(50), nullable=True, index=True, comment="支付渠道，现金为空")
    provider_transaction_id = Column(String(200), nullable=True, comment="渠道交易号（webhook 对账键）")
    payment_method_id = Column(String(255), nullable=True, comment="渠道侧支付令牌（不含卡数据）")

    # 金额信息（使用 Numeric 存储精确金额）
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="收款金额（含小费）")
    tip_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="小费")
    currency = Column(String(3), nullable=False, default="USD", comment="货币代码 ISO-4217")

    status = Column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="交易状态: pending/succeeded/failed/refunded"
    )

    idempotency_key = Column(String(255), nullable=False, index=True, comment="幂等键")

    # 渠道响应快照（后写覆盖）
    provider_response = Column(JSON, nullable=True, comment="渠道响应快照")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    created_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
        comment="更新时间"
    )

    refunds = relationship("RefundModel", back_populates="transaction", lazy="select")

    __table_args__ = (
        Index("ix_payment_transactions_provider_ref", "provider", "provider_transaction_id"),
        Index("ix_payment_transactions_provider_tx", "provider_transaction_id"),
        Index("ix_payment_transactions_created_at", "created_at"),
    )

    def __repr__(self):
        return (
            f"<PaymentTransactionModel(id='{self.id}', order_id='{self.order_id}', "
            f"provider='{self.provider}', amount={self.amount}, status='{self.status}')>"
        )


class RefundModel(Base):
    """
    退款数据库模型

    退款归属于某一笔交易，记录交易的退款明细
    """
    __tablename__ = "refunds"

    id = Column(String(36), primary_key=True, comment="退款ID (uuid4)")

    transaction_id = Column(
        String(36),
        ForeignKey("payment_transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联的交易ID"
    )

    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="退款金额")
    reason = Column(Text, nullable=True, comment="退款原因")

    status = Column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="退款状态: pending/processing/succeeded/failed"
    )

    provider_refund_id = Column(String(200), nullable=True, index=True, comment="渠道退款ID")
    provider_response = Column(JSON, nullable=True, comment="渠道响应快照")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    created_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
        comment="创建时间"
    )
    processed_at = Column(DateTime(timezone=True), nullable=True, comment="渠道处理完成时间")

    transaction = relationship("PaymentTransactionModel", back_populates="refunds")

    __table_args__ = (
        Index("ix_refunds_transaction_status", "transaction_id", "status"),
    )

    def __repr__(self):
        return (
            f"<RefundModel(id='{self.id}', transaction_id='{self.transaction_id}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class ProcessedWebhookEventModel(Base):
    """已接收的 webhook 事件，(provider, event_id) 唯一；parked 行保存待重放内容"""
    __tablename__ = "processed_webhook_events"

    provider = Column(String(50), primary_key=True, comment="支付渠道")
    event_id = Column(String(255), primary_key=True, comment="渠道事件ID")
    event_type = Column(String(100), nullable=False, comment="事件类型")
    status = Column(String(20), nullable=False, default="processed", comment="processed / parked")
    kind = Column(String(50), nullable=True, comment="归一化事件类别")
    provider_transaction_id = Column(String(255), nullable=True, comment="渠道交易ID")
    provider_refund_id = Column(String(255), nullable=True, comment="渠道退款ID")
    order_id = Column(String(255), nullable=True, comment="订单ID")
    payload = Column(JSON, nullable=True, comment="事件数据（仅 parked 时保存）")
    received_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
        comment="接收时间"
    )

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),
        Index("ix_webhook_events_parked_tx", "status", "provider_transaction_id"),
        Index("ix_webhook_events_parked_refund", "status", "provider_refund_id"),
    )


class PaymentTerminalModel(Base):
    """已配对的收款终端"""
    __tablename__ = "payment_terminals"

    terminal_id = Column(String(100), primary_key=True, comment="终端ID")
    provider = Column(String(50), nullable=False, comment="支付渠道")
    device_type = Column(String(50), nullable=True, comment="设备类型")
    location_id = Column(String(100), nullable=True, comment="门店/位置ID")
    status = Column(String(20), nullable=False, default="active", comment="终端状态")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="首次配对时间")
    last_seen_at = Column(DateTime(timezone=True), nullable=True, comment="最近一次配对时间")
