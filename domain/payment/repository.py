"""
支付仓储接口 - 定义交易/退款/webhook 事件数据访问的抽象接口

所有状态变更都必须是条件更新（只在当前状态属于允许的前驱集合时生效），
以便在同步请求与异步回调并发写同一行时仍保持状态单调。
"""
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional, List
from decimal import Decimal

from .entity import (
    PaymentTerminal,
    PaymentTransaction,
    Refund,
    RefundStatus,
    TransactionStatus,
    ProcessedWebhookEvent,
)


class PaymentTransactionRepository(ABC):
    """交易仓储抽象接口"""

    @abstractmethod
    async def create(self, transaction: PaymentTransaction) -> PaymentTransaction:
        """创建交易记录"""
        pass

    @abstractmethod
    async def get_by_id(self, transaction_id: str, *, for_update: bool = False) -> Optional[PaymentTransaction]:
        """根据ID获取交易，for_update=True 时加行锁"""
        pass

    @abstractmethod
    async def get_by_provider_transaction_id(
        self,
        provider_transaction_id: str,
        provider: Optional[str] = None,
    ) -> Optional[PaymentTransaction]:
        """根据渠道交易号获取交易"""
        pass

    @abstractmethod
    async def list_transactions(
        self,
        *,
        order_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        provider: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[PaymentTransaction]:
        pass

    @abstractmethod
    async def count(
        self,
        *,
        order_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        provider: Optional[str] = None,
    ) -> int:
        pass

    @abstractmethod
    async def transition(
        self,
        transaction_id: str,
        target: TransactionStatus,
        allowed_from: Iterable[TransactionStatus],
        *,
        provider_transaction_id: Optional[str] = None,
        provider_response: Optional[dict[str, Any]] = None,
        failure_reason: Optional[str] = None,
    ) -> bool:
        """条件状态更新：仅当当前状态在 allowed_from 中时生效，返回是否生效"""
        pass

    @abstractmethod
    async def record_provider_response(
        self,
        transaction_id: str,
        provider_response: dict[str, Any],
        *,
        provider_transaction_id: Optional[str] = None,
    ) -> None:
        """只更新审计快照（不改变状态）"""
        pass


class RefundRepository(ABC):
    """退款仓储抽象接口"""

    @abstractmethod
    async def create(self, refund: Refund) -> Refund:
        pass

    @abstractmethod
    async def get_by_id(self, refund_id: str) -> Optional[Refund]:
        pass

    @abstractmethod
    async def get_by_provider_refund_id(self, provider_refund_id: str) -> Optional[Refund]:
        pass

    @abstractmethod
    async def list_by_transaction(self, transaction_id: str) -> List[Refund]:
        pass

    @abstractmethod
    async def sum_outstanding(self, transaction_id: str) -> Decimal:
        """统计 pending/processing/succeeded 状态的退款总额"""
        pass

    @abstractmethod
    async def transition(
        self,
        refund_id: str,
        target: RefundStatus,
        allowed_from: Iterable[RefundStatus],
        *,
        provider_refund_id: Optional[str] = None,
        provider_response: Optional[dict[str, Any]] = None,
        failure_reason: Optional[str] = None,
    ) -> bool:
        pass


class WebhookEventRepository(ABC):
    """已处理 webhook 事件台账"""

    @abstractmethod
    async def add_if_absent(self, event: ProcessedWebhookEvent) -> bool:
        """记录事件；已存在时返回 False"""
        pass

    @abstractmethod
    async def exists(self, provider: str, event_id: str) -> bool:
        pass

    @abstractmethod
    async def get(self, provider: str, event_id: str) -> Optional[ProcessedWebhookEvent]:
        pass

    @abstractmethod
    async def park(self, event: ProcessedWebhookEvent) -> None:
        """保存（或覆盖为）parked 状态，连同归一化后的事件内容"""
        pass

    @abstractmethod
    async def mark_processed(self, provider: str, event_id: str) -> bool:
        """parked -> processed 的条件更新；返回是否由本次调用认领"""
        pass

    @abstractmethod
    async def list_parked(
        self,
        provider: str,
        *,
        provider_transaction_id: Optional[str] = None,
        provider_refund_id: Optional[str] = None,
    ) -> List[ProcessedWebhookEvent]:
        """按渠道交易ID或渠道退款ID查找等待重放的事件"""
        pass


class PaymentTerminalRepository(ABC):
    """收款终端仓储"""

    @abstractmethod
    async def get(self, terminal_id: str) -> Optional[PaymentTerminal]:
        pass

    @abstractmethod
    async def create(self, terminal: PaymentTerminal) -> PaymentTerminal:
        """插入新终端；terminal_id 已存在时由实现抛出重复错误"""
        pass

    @abstractmethod
    async def mark_active(self, terminal_id: str) -> Optional[PaymentTerminal]:
        """已存在则置为 active 并刷新 last_seen_at，不存在返回 None"""
        pass
