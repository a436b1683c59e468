"""
支付仓储实现 - 使用SQLAlchemy实现数据访问

状态更新统一走 UPDATE ... WHERE status IN (允许的前驱状态)，
由数据库保证比较与写入的原子性，不依赖全局锁。
"""
from typing import Any, Iterable, Optional, List
from decimal import Decimal
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, or_, update
from sqlalchemy.exc import IntegrityError

from domain.payment.entity import (
    PaymentMethod,
    PaymentTerminal,
    PaymentTransaction,
    ProcessedWebhookEvent,
    Refund,
    RefundStatus,
    TransactionStatus,
    OUTSTANDING_REFUND_STATUSES,
    TerminalStatus,
    WebhookEventStatus,
)
from domain.payment.repository import (
    PaymentTerminalRepository,
    PaymentTransactionRepository,
    RefundRepository,
    WebhookEventRepository,
)
from infrastructure.models.payment import (
    PaymentTerminalModel,
    PaymentTransactionModel,
    RefundModel,
    ProcessedWebhookEventModel,
)
from core.logging_config import get_logger


logger = get_logger(__name__)


class DuplicateWebhookEventError(Exception):
    """并发投递同一事件时由唯一约束触发"""

    def __init__(self, provider: str, event_id: str):
        self.provider = provider
        self.event_id = event_id
        super().__init__(f"webhook event already recorded: {provider}/{event_id}")


class DuplicateTerminalError(Exception):
    """并发配对同一 terminal_id 时由主键约束触发"""

    def __init__(self, terminal_id: str):
        self.terminal_id = terminal_id
        super().__init__(f"terminal already paired: {terminal_id}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SQLAlchemyPaymentTransactionRepository(PaymentTransactionRepository):
    """交易仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentTransactionModel) -> PaymentTransaction:
        """将数据库模型转换为领域实体"""
        return PaymentTransaction(
            id=model.id,
            order_id=model.order_id,
            method=PaymentMethod(model.method),
            provider=model.provider,
            provider_transaction_id=model.provider_transaction_id,
            payment_method_id=model.payment_method_id,
            amount=Decimal(str(model.amount)),
            tip_amount=Decimal(str(model.tip_amount or 0)),
            currency=model.currency,
            status=TransactionStatus(model.status),
            idempotency_key=model.idempotency_key,
            provider_response=model.provider_response or {},
            failure_reason=model.failure_reason,
            metadata=model.extra_metadata or {},
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: PaymentTransaction) -> PaymentTransactionModel:
        """将领域实体转换为数据库模型"""
        return PaymentTransactionModel(
            id=entity.id,
            order_id=entity.order_id,
            method=entity.method.value,
            provider=entity.provider,
            provider_transaction_id=entity.provider_transaction_id,
            payment_method_id=entity.payment_method_id,
            amount=entity.amount,
            tip_amount=entity.tip_amount,
            currency=entity.currency,
            status=entity.status.value,
            idempotency_key=entity.idempotency_key,
            provider_response=entity.provider_response,
            failure_reason=entity.failure_reason,
            extra_metadata=entity.metadata,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )

    async def create(self, transaction: PaymentTransaction) -> PaymentTransaction:
        """创建交易记录"""
        db_tx = self._to_model(transaction)
        self.session.add(db_tx)
        await self.session.flush()
        await self.session.refresh(db_tx)
        logger.info(
            "transaction_created",
            transaction_id=db_tx.id,
            order_id=db_tx.order_id,
            method=db_tx.method,
            provider=db_tx.provider,
        )
        return self._to_entity(db_tx)

    async def get_by_id(self, transaction_id: str, *, for_update: bool = False) -> Optional[PaymentTransaction]:
        """根据ID获取交易"""
        query = select(PaymentTransactionModel).where(PaymentTransactionModel.id == transaction_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        db_tx = result.scalar_one_or_none()
        return self._to_entity(db_tx) if db_tx else None

    async def get_by_provider_transaction_id(
        self,
        provider_transaction_id: str,
        provider: Optional[str] = None,
    ) -> Optional[PaymentTransaction]:
        """根据渠道交易号获取交易"""
        query = select(PaymentTransactionModel).where(
            PaymentTransactionModel.provider_transaction_id == provider_transaction_id
        )
        if provider:
            query = query.where(PaymentTransactionModel.provider == provider)
        result = await self.session.execute(query.order_by(PaymentTransactionModel.created_at.desc()))
        db_tx = result.scalars().first()
        return self._to_entity(db_tx) if db_tx else None

    def _filtered(self, query, *, order_id, status, provider):
        if order_id:
            query = query.where(PaymentTransactionModel.order_id == order_id)
        if status:
            query = query.where(PaymentTransactionModel.status == status.value)
        if provider:
            query = query.where(PaymentTransactionModel.provider == provider)
        return query

    async def list_transactions(
        self,
        *,
        order_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        provider: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[PaymentTransaction]:
        query = self._filtered(
            select(PaymentTransactionModel), order_id=order_id, status=status, provider=provider
        )
        query = query.order_by(PaymentTransactionModel.created_at.desc()).offset(skip).limit(limit)
        result = await self.session.execute(query)
        return [self._to_entity(m) for m in result.scalars().all()]

    async def count(
        self,
        *,
        order_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        provider: Optional[str] = None,
    ) -> int:
        query = self._filtered(
            select(func.count(PaymentTransactionModel.id)), order_id=order_id, status=status, provider=provider
        )
        result = await self.session.execute(query)
        return result.scalar_one()

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
        allowed = [s.value for s in allowed_from]
        if not allowed:
            return False
        values: dict[str, Any] = {"status": target.value, "updated_at": _utcnow()}
        if provider_transaction_id:
            values["provider_transaction_id"] = provider_transaction_id
        if provider_response is not None:
            values["provider_response"] = provider_response
        if failure_reason is not None:
            values["failure_reason"] = failure_reason
        result = await self.session.execute(
            update(PaymentTransactionModel)
            .where(
                PaymentTransactionModel.id == transaction_id,
                PaymentTransactionModel.status.in_(allowed),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        applied = (result.rowcount or 0) > 0
        if applied:
            logger.info("transaction_transitioned", transaction_id=transaction_id, status=target.value)
        else:
            logger.info(
                "transaction_transition_skipped",
                transaction_id=transaction_id,
                target=target.value,
                allowed_from=allowed,
            )
        return applied

    async def record_provider_response(
        self,
        transaction_id: str,
        provider_response: dict[str, Any],
        *,
        provider_transaction_id: Optional[str] = None,
    ) -> None:
        values: dict[str, Any] = {"provider_response": provider_response, "updated_at": _utcnow()}
        if provider_transaction_id:
            values["provider_transaction_id"] = provider_transaction_id
        await self.session.execute(
            update(PaymentTransactionModel)
            .where(PaymentTransactionModel.id == transaction_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )


class SQLAlchemyRefundRepository(RefundRepository):
    """退款仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: RefundModel) -> Refund:
        """将数据库模型转换为领域实体"""
        return Refund(
            id=model.id,
            transaction_id=model.transaction_id,
            amount=Decimal(str(model.amount)),
            status=RefundStatus(model.status),
            reason=model.reason,
            provider_refund_id=model.provider_refund_id,
            provider_response=model.provider_response or {},
            failure_reason=model.failure_reason,
            metadata=model.extra_metadata or {},
            created_at=model.created_at,
            processed_at=model.processed_at,
        )

    def _to_model(self, entity: Refund) -> RefundModel:
        """将领域实体转换为数据库模型"""
        return RefundModel(
            id=entity.id,
            transaction_id=entity.transaction_id,
            amount=entity.amount,
            status=entity.status.value,
            reason=entity.reason,
            provider_refund_id=entity.provider_refund_id,
            provider_response=entity.provider_response,
            failure_reason=entity.failure_reason,
            extra_metadata=entity.metadata,
            created_at=entity.created_at,
            processed_at=entity.processed_at,
        )

    async def create(self, refund: Refund) -> Refund:
        """创建退款记录"""
        db_refund = self._to_model(refund)
        self.session.add(db_refund)
        await self.session.flush()
        await self.session.refresh(db_refund)

        logger.info(
            "refund_created",
            refund_id=db_refund.id,
            transaction_id=db_refund.transaction_id,
            amount=str(db_refund.amount),
        )

        return self._to_entity(db_refund)

    async def get_by_id(self, refund_id: str) -> Optional[Refund]:
        """根据ID获取退款"""
        result = await self.session.execute(
            select(RefundModel).where(RefundModel.id == refund_id)
        )
        db_refund = result.scalar_one_or_none()
        return self._to_entity(db_refund) if db_refund else None

    async def get_by_provider_refund_id(self, provider_refund_id: str) -> Optional[Refund]:
        """根据渠道退款ID获取退款"""
        result = await self.session.execute(
            select(RefundModel).where(RefundModel.provider_refund_id == provider_refund_id)
        )
        db_refund = result.scalars().first()
        return self._to_entity(db_refund) if db_refund else None

    async def list_by_transaction(self, transaction_id: str) -> List[Refund]:
        """获取交易的退款列表"""
        result = await self.session.execute(
            select(RefundModel)
            .where(RefundModel.transaction_id == transaction_id)
            .order_by(RefundModel.created_at.desc())
        )
        return [self._to_entity(r) for r in result.scalars().all()]

    async def sum_outstanding(self, transaction_id: str) -> Decimal:
        """获取未失败退款总额"""
        result = await self.session.execute(
            select(func.coalesce(func.sum(RefundModel.amount), 0)).where(
                RefundModel.transaction_id == transaction_id,
                RefundModel.status.in_([s.value for s in OUTSTANDING_REFUND_STATUSES]),
            )
        )
        total = result.scalar_one()
        return Decimal(str(total)) if total else Decimal("0")

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
        allowed = [s.value for s in allowed_from]
        if not allowed:
            return False
        values: dict[str, Any] = {"status": target.value, "processed_at": _utcnow()}
        if provider_refund_id:
            values["provider_refund_id"] = provider_refund_id
        if provider_response is not None:
            values["provider_response"] = provider_response
        if failure_reason is not None:
            values["failure_reason"] = failure_reason
        result = await self.session.execute(
            update(RefundModel)
            .where(RefundModel.id == refund_id, RefundModel.status.in_(allowed))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        applied = (result.rowcount or 0) > 0
        logger.info(
            "refund_transitioned" if applied else "refund_transition_skipped",
            refund_id=refund_id,
            status=target.value,
        )
        return applied


class SQLAlchemyWebhookEventRepository(WebhookEventRepository):
    """webhook 事件台账：去重 + 暂存找不到目标记录的事件"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: ProcessedWebhookEventModel) -> ProcessedWebhookEvent:
        return ProcessedWebhookEvent(
            provider=model.provider,
            event_id=model.event_id,
            event_type=model.event_type,
            received_at=model.received_at,
            status=WebhookEventStatus(model.status or WebhookEventStatus.PROCESSED.value),
            kind=model.kind,
            provider_transaction_id=model.provider_transaction_id,
            provider_refund_id=model.provider_refund_id,
            order_id=model.order_id,
            payload=model.payload or {},
        )

    def _apply_fields(self, model: ProcessedWebhookEventModel, event: ProcessedWebhookEvent) -> None:
        model.event_type = event.event_type
        model.status = event.status.value
        model.kind = event.kind
        model.provider_transaction_id = event.provider_transaction_id
        model.provider_refund_id = event.provider_refund_id
        model.order_id = event.order_id
        model.payload = event.payload or None

    async def _flush(self, event: ProcessedWebhookEvent) -> None:
        try:
            await self.session.flush()
        except IntegrityError as exc:
            # 并发投递：另一请求已先写入
            raise DuplicateWebhookEventError(event.provider, event.event_id) from exc

    async def exists(self, provider: str, event_id: str) -> bool:
        result = await self.session.execute(
            select(func.count()).select_from(ProcessedWebhookEventModel).where(
                ProcessedWebhookEventModel.provider == provider,
                ProcessedWebhookEventModel.event_id == event_id,
            )
        )
        return result.scalar_one() > 0

    async def get(self, provider: str, event_id: str) -> Optional[ProcessedWebhookEvent]:
        result = await self.session.execute(
            select(ProcessedWebhookEventModel).where(
                ProcessedWebhookEventModel.provider == provider,
                ProcessedWebhookEventModel.event_id == event_id,
            )
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def add_if_absent(self, event: ProcessedWebhookEvent) -> bool:
        if await self.exists(event.provider, event.event_id):
            return False
        model = ProcessedWebhookEventModel(
            provider=event.provider,
            event_id=event.event_id,
            received_at=event.received_at or _utcnow(),
        )
        self._apply_fields(model, event)
        self.session.add(model)
        await self._flush(event)
        return True

    async def park(self, event: ProcessedWebhookEvent) -> None:
        event.status = WebhookEventStatus.PARKED
        result = await self.session.execute(
            select(ProcessedWebhookEventModel).where(
                ProcessedWebhookEventModel.provider == event.provider,
                ProcessedWebhookEventModel.event_id == event.event_id,
            )
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        if model is None:
            model = ProcessedWebhookEventModel(
                provider=event.provider,
                event_id=event.event_id,
                received_at=event.received_at or _utcnow(),
            )
            self.session.add(model)
        self._apply_fields(model, event)
        await self._flush(event)
        logger.info(
            "webhook_event_parked",
            provider=event.provider,
            event_id=event.event_id,
            provider_transaction_id=event.provider_transaction_id,
            provider_refund_id=event.provider_refund_id,
        )

    async def mark_processed(self, provider: str, event_id: str) -> bool:
        result = await self.session.execute(
            update(ProcessedWebhookEventModel)
            .where(
                ProcessedWebhookEventModel.provider == provider,
                ProcessedWebhookEventModel.event_id == event_id,
                ProcessedWebhookEventModel.status == WebhookEventStatus.PARKED.value,
            )
            .values(status=WebhookEventStatus.PROCESSED.value, payload=None)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0

    async def list_parked(
        self,
        provider: str,
        *,
        provider_transaction_id: Optional[str] = None,
        provider_refund_id: Optional[str] = None,
    ) -> List[ProcessedWebhookEvent]:
        keys = []
        if provider_transaction_id:
            keys.append(ProcessedWebhookEventModel.provider_transaction_id == provider_transaction_id)
        if provider_refund_id:
            keys.append(ProcessedWebhookEventModel.provider_refund_id == provider_refund_id)
        if not keys:
            return []
        result = await self.session.execute(
            select(ProcessedWebhookEventModel)
            .where(
                ProcessedWebhookEventModel.provider == provider,
                ProcessedWebhookEventModel.status == WebhookEventStatus.PARKED.value,
                or_(*keys),
            )
            .order_by(ProcessedWebhookEventModel.received_at.asc())
        )
        return [self._to_entity(m) for m in result.scalars().all()]


class SQLAlchemyPaymentTerminalRepository(PaymentTerminalRepository):
    """收款终端仓储：按 terminal_id 配对/刷新"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentTerminalModel) -> PaymentTerminal:
        return PaymentTerminal(
            terminal_id=model.terminal_id,
            provider=model.provider,
            device_type=model.device_type,
            location_id=model.location_id,
            status=TerminalStatus(model.status),
            created_at=model.created_at,
            last_seen_at=model.last_seen_at,
        )

    async def get(self, terminal_id: str) -> Optional[PaymentTerminal]:
        result = await self.session.execute(
            select(PaymentTerminalModel)
            .where(PaymentTerminalModel.terminal_id == terminal_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def create(self, terminal: PaymentTerminal) -> PaymentTerminal:
        model = PaymentTerminalModel(
            terminal_id=terminal.terminal_id,
            provider=terminal.provider,
            device_type=terminal.device_type,
            location_id=terminal.location_id,
            status=terminal.status.value,
            created_at=terminal.created_at or _utcnow(),
        )
        self.session.add(model)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise DuplicateTerminalError(terminal.terminal_id) from exc
        return self._to_entity(model)

    async def mark_active(self, terminal_id: str) -> Optional[PaymentTerminal]:
        result = await self.session.execute(
            update(PaymentTerminalModel)
            .where(PaymentTerminalModel.terminal_id == terminal_id)
            .values(status=TerminalStatus.ACTIVE.value, last_seen_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            return None
        return await self.get(terminal_id)
