"""
支付领域实体 - 交易聚合根与退款实体

状态机（单调推进，任何到达顺序下都不回退）：

    pending ──▶ succeeded ──▶ refunded
       │
       └──────▶ failed

退款：pending ──▶ processing ──▶ succeeded | failed（也允许 pending 直接到终态）
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException


class PaymentMethod(str, Enum):
    """支付方式"""
    CASH = "cash"
    CARD = "card"
    QR = "qr"
    WALLET = "wallet"


class TransactionStatus(str, Enum):
    """交易状态枚举"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class RefundStatus(str, Enum):
    """退款状态枚举"""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# target -> states it may be entered from
TRANSACTION_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset(),
    TransactionStatus.SUCCEEDED: frozenset({TransactionStatus.PENDING}),
    TransactionStatus.FAILED: frozenset({TransactionStatus.PENDING}),
    TransactionStatus.REFUNDED: frozenset({TransactionStatus.SUCCEEDED}),
}

REFUND_TRANSITIONS: dict[RefundStatus, frozenset[RefundStatus]] = {
    RefundStatus.PENDING: frozenset(),
    RefundStatus.PROCESSING: frozenset({RefundStatus.PENDING}),
    RefundStatus.SUCCEEDED: frozenset({RefundStatus.PENDING, RefundStatus.PROCESSING}),
    RefundStatus.FAILED: frozenset({RefundStatus.PENDING, RefundStatus.PROCESSING}),
}

# Refunds that still count against the refundable amount
OUTSTANDING_REFUND_STATUSES = frozenset(
    {RefundStatus.PENDING, RefundStatus.PROCESSING, RefundStatus.SUCCEEDED}
)


def allowed_predecessors(target: TransactionStatus) -> frozenset[TransactionStatus]:
    """返回可以进入 target 状态的前驱状态集合"""
    return TRANSACTION_TRANSITIONS[target]


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PaymentTransaction:
    """
    交易聚合根 - 一次收款请求对应唯一一行记录

    业务规则：
    1. 金额必须大于0
    2. 非现金支付必须指定 provider
    3. 状态只能沿状态机单调推进
    4. provider_transaction_id 是 webhook 对账的关联键
    """

    id: str
    method: PaymentMethod
    amount: Decimal
    currency: str
    status: TransactionStatus
    idempotency_key: str
    order_id: Optional[str] = None
    provider: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    tip_amount: Decimal = field(default_factory=lambda: Decimal("0"))
    provider_response: dict[str, Any] = field(default_factory=dict)
    failure_reason: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise DomainValidationException(
                f"Payment amount must be greater than 0: {self.amount}",
                field="amount",
            )
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise DomainValidationException(
                f"Invalid currency code: {self.currency}",
                field="currency",
            )
        self.currency = self.currency.upper()
        if self.method != PaymentMethod.CASH and not self.provider:
            raise DomainValidationException(
                "provider is required for non-cash payments",
                field="provider",
            )
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        if self.metadata is None:
            self.metadata = {}
        if self.provider_response is None:
            self.provider_response = {}

    @property
    def is_cash(self) -> bool:
        return self.method == PaymentMethod.CASH

    def can_refund(self) -> bool:
        """只有成功且拥有渠道交易号的交易才能退款"""
        return self.status == TransactionStatus.SUCCEEDED and bool(self.provider_transaction_id)


@dataclass
class Refund:
    """
    退款实体 - 归属于某一笔 PaymentTransaction

    同一笔交易可以多次部分退款；未失败退款之和不得超过交易金额。
    """

    id: str
    transaction_id: str
    amount: Decimal
    status: RefundStatus
    reason: Optional[str] = None
    provider_refund_id: Optional[str] = None
    provider_response: dict[str, Any] = field(default_factory=dict)
    failure_reason: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise DomainValidationException(
                f"Refund amount must be greater than 0: {self.amount}",
                field="amount",
            )
        self.created_at = _ensure_utc(self.created_at)
        self.processed_at = _ensure_utc(self.processed_at)
        if self.metadata is None:
            self.metadata = {}
        if self.provider_response is None:
            self.provider_response = {}


@dataclass
class IdempotencyRecord:
    """幂等记录：key -> 缓存响应，带过期时间"""

    key: str
    cached_response: dict[str, Any]
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class WebhookEventStatus(str, Enum):
    """webhook 事件台账状态"""
    PROCESSED = "processed"
    # 目标交易/退款尚未落库，等待订单侧写入渠道ID后重放
    PARKED = "parked"


@dataclass
class ProcessedWebhookEvent:
    """
    已接收的 webhook 事件（按渠道事件ID去重）

    找不到目标记录的事件以 parked 状态保存归一化后的内容，
    写入 provider_transaction_id / provider_refund_id 之后据此重放。
    """

    provider: str
    event_id: str
    event_type: str
    received_at: Optional[datetime] = None
    status: WebhookEventStatus = WebhookEventStatus.PROCESSED
    kind: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    provider_refund_id: Optional[str] = None
    order_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_parked(self) -> bool:
        return self.status == WebhookEventStatus.PARKED


class TerminalStatus(str, Enum):
    ACTIVE = "active"


@dataclass
class PaymentTerminal:
    """已配对的实体收款终端，terminal_id 全局唯一；重复配对只刷新状态与 last_seen_at"""

    terminal_id: str
    provider: str
    device_type: Optional[str] = None
    location_id: Optional[str] = None
    status: TerminalStatus = TerminalStatus.ACTIVE
    created_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
