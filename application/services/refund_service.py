"""
Application service for the refund use-case.

The refundable-amount check and the insert of the pending refund happen in one
unit of work while the transaction row is locked, so concurrent refunds cannot
jointly exceed the charged amount. Refunds of one transaction are also serialized
inside the process, for backends without SELECT ... FOR UPDATE.
"""
from __future__ import annotations

import asyncio
import uuid
import weakref
from decimal import Decimal
from typing import Optional

from application.dtos.payments import (
    ProviderRefundRequest,
    RefundRequest,
    RefundResult,
    RefundView,
)
from application.ports.orders import OrdersGateway
from application.ports.payment_gateway import ParkedWebhookReplayer, ProviderLookup
from application.services.notifications import notify_order, replay_parked_events
from application.services.payment_service import UowFactory, provider_idempotency_key
from core.logging_config import get_logger
from domain.payment.entity import (
    REFUND_TRANSITIONS,
    Refund,
    RefundStatus,
    TransactionStatus,
    allowed_predecessors,
    utcnow,
)
from domain.payment.service import (
    RefundNotFoundException,
    TransactionNotFoundException,
    ensure_refundable,
    remaining_refundable,
    resolve_refund_amount,
)


logger = get_logger(__name__)


class RefundOrchestrator:
    def __init__(
        self,
        *,
        uow_factory: UowFactory,
        providers: ProviderLookup,
        orders: Optional[OrdersGateway] = None,
        webhook_replayer: Optional[ParkedWebhookReplayer] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._providers = providers
        self._orders = orders
        self._replayer = webhook_replayer
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, transaction_id: str) -> asyncio.Lock:
        lock = self._locks.get(transaction_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[transaction_id] = lock
        return lock

    async def process_refund(self, req: RefundRequest) -> RefundResult:
        async with self._lock_for(req.transaction_id):
            return await self._process_refund(req)

    async def _process_refund(self, req: RefundRequest) -> RefundResult:
        requested = Decimal(req.amount) if req.amount is not None else None

        async with self._uow_factory() as uow:
            tx = await uow.transactions.get_by_id(req.transaction_id, for_update=True)
            if tx is None:
                raise TransactionNotFoundException(req.transaction_id)
            ensure_refundable(tx)
            outstanding = await uow.refunds.sum_outstanding(tx.id)
            remaining = remaining_refundable(tx, outstanding)
            amount = resolve_refund_amount(requested, remaining)
            adapter = self._providers.get(tx.provider)

            refund = await uow.refunds.create(
                Refund(
                    id=str(uuid.uuid4()),
                    transaction_id=tx.id,
                    amount=amount,
                    status=RefundStatus.PENDING,
                    reason=req.reason,
                    metadata=dict(req.metadata or {}),
                    created_at=utcnow(),
                )
            )

        logger.info(
            "refund_started",
            refund_id=refund.id,
            transaction_id=tx.id,
            provider=tx.provider,
            amount=str(amount),
            remaining=str(remaining),
        )

        try:
            provider_result = await adapter.refund(
                ProviderRefundRequest(
                    provider_transaction_id=tx.provider_transaction_id,
                    amount=amount,
                    currency=tx.currency,
                    idempotency_key=provider_idempotency_key("refund", refund.id),
                    reason=req.reason,
                )
            )
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.error("refund_provider_failed", refund_id=refund.id, transaction_id=tx.id, error=error)
            async with self._uow_factory() as uow:
                await uow.refunds.transition(
                    refund.id,
                    RefundStatus.FAILED,
                    REFUND_TRANSITIONS[RefundStatus.FAILED],
                    failure_reason=error,
                )
            return RefundResult(
                refund_id=refund.id,
                transaction_id=tx.id,
                status="failed",
                amount=amount,
                transaction_status=tx.status.value,
                error=error,
            )

        target = RefundStatus(provider_result.status)
        promoted = False
        async with self._uow_factory() as uow:
            await uow.refunds.transition(
                refund.id,
                target,
                REFUND_TRANSITIONS[target],
                provider_refund_id=provider_result.provider_refund_id,
                provider_response=provider_result.raw,
                failure_reason="Refund rejected by provider" if target == RefundStatus.FAILED else None,
            )
            if target != RefundStatus.FAILED and amount >= remaining:
                promoted = await uow.transactions.transition(
                    tx.id,
                    TransactionStatus.REFUNDED,
                    allowed_predecessors(TransactionStatus.REFUNDED),
                )
            current = await uow.transactions.get_by_id(tx.id)

        status = target
        if await replay_parked_events(
            self._replayer,
            tx.provider,
            provider_transaction_id=tx.provider_transaction_id,
            provider_refund_id=provider_result.provider_refund_id,
        ):
            async with self._uow_factory(readonly=True) as uow:
                stored = await uow.refunds.get_by_id(refund.id)
                current = await uow.transactions.get_by_id(tx.id)
            if stored is not None:
                status = stored.status

        logger.info(
            "refund_completed",
            refund_id=refund.id,
            transaction_id=tx.id,
            status=status.value,
            provider_refund_id=provider_result.provider_refund_id,
            transaction_promoted=promoted,
        )
        if promoted:
            await notify_order(self._orders, tx.order_id, "refunded")

        return RefundResult(
            refund_id=refund.id,
            transaction_id=tx.id,
            status=status.value,
            amount=amount,
            provider_refund_id=provider_result.provider_refund_id,
            transaction_status=current.status.value if current else tx.status.value,
            error="Refund rejected by provider" if status == RefundStatus.FAILED else None,
        )

    async def get_refund(self, refund_id: str) -> RefundView:
        async with self._uow_factory(readonly=True) as uow:
            refund = await uow.refunds.get_by_id(refund_id)
        if refund is None:
            raise RefundNotFoundException(refund_id)
        return RefundView.from_entity(refund)

    async def list_refunds(self, transaction_id: str) -> list[RefundView]:
        async with self._uow_factory(readonly=True) as uow:
            tx = await uow.transactions.get_by_id(transaction_id)
            if tx is None:
                raise TransactionNotFoundException(transaction_id)
            refunds = await uow.refunds.list_by_transaction(transaction_id)
        return [RefundView.from_entity(r) for r in refunds]
