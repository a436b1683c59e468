"""SQLAlchemy Unit of Work 实现

一个工作单元对应一个数据库事务：交易、退款、webhook 账本与终端的写入在同一事务内
完成，退出时无异常则提交，否则回滚。只读工作单元不开启显式事务，也不提交。
"""
from __future__ import annotations

from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, AsyncSessionTransaction

from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.database import AsyncSessionLocal
from infrastructure.repositories.payment_repository import (
    SQLAlchemyPaymentTerminalRepository,
    SQLAlchemyPaymentTransactionRepository,
    SQLAlchemyRefundRepository,
    SQLAlchemyWebhookEventRepository,
)


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """基于 SQLAlchemy AsyncSession 的支付工作单元"""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        # 外部传入的会话由调用方负责关闭
        self._owns_session = session is None
        self.session: Optional[AsyncSession] = session
        self._transaction: Optional[AsyncSessionTransaction] = None

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if self.session is None:
            self.session = self._session_factory()
        self.transactions = SQLAlchemyPaymentTransactionRepository(self.session)
        self.refunds = SQLAlchemyRefundRepository(self.session)
        self.webhook_events = SQLAlchemyWebhookEventRepository(self.session)
        self.terminals = SQLAlchemyPaymentTerminalRepository(self.session)
        self._committed = False
        if not self._readonly and not self.session.in_transaction():
            self._transaction = await self.session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            if self._transaction is not None and self._transaction.is_active:
                await self._transaction.rollback()
            self._transaction = None
            if self._owns_session and self.session is not None:
                await self.session.close()
                self.session = None
            self.transactions = None  # type: ignore[assignment]
            self.refunds = None  # type: ignore[assignment]
            self.webhook_events = None  # type: ignore[assignment]
            self.terminals = None  # type: ignore[assignment]

    async def commit(self) -> None:
        if self._readonly:
            self._committed = True
            return
        if self.session is not None and self.session.in_transaction():
            await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self.session is not None and self.session.in_transaction():
            await self.session.rollback()
        self._committed = False
