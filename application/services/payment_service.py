"""
Application service orchestrating the charge use-case.

The orchestrator depends only on application ports (provider lookup, idempotency
ledger, collaborators) and the Unit of Work abstraction. Concrete adapters are
injected from the composition root (main.py lifespan / tests).
"""
from __future__ import annotations

import asyncio
import hashlib
import uuid
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_incrementing

from application.dtos.payments import (
    ChargeRequest,
    ChargeResult,
    PaymentMethodOption,
    PaymentResult,
    ProcessPaymentRequest,
    TransactionView,
)
from application.ports.idempotency import IdempotencyLedger
from application.ports.orders import CashierGateway, OrdersGateway
from application.ports.payment_gateway import ParkedWebhookReplayer, ProviderAdapter, ProviderLookup
from application.services.notifications import notify_order, record_cash, replay_parked_events
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    PaymentMethod,
    PaymentTransaction,
    TransactionStatus,
    allowed_predecessors,
    utcnow,
)
from domain.payment.service import (
    IdempotencyInProgressException,
    TransactionNotFoundException,
    UnknownProviderException,
    validate_charge_fields,
)

logger = get_logger(__name__)

UowFactory = Callable[..., AbstractUnitOfWork]

METHOD_CATALOGUE = (
    (PaymentMethod.CARD, "Debit/Credit Card", ("stripe", "square")),
    (PaymentMethod.QR, "QR Code", ("mercadopago", "stripe")),
    (PaymentMethod.WALLET, "Digital Wallet", ("paypal", "mercadopago")),
    (PaymentMethod.CASH, "Cash", ()),
)

CACHEABLE_STATUSES = ("succeeded", "requires_action")

# stored transaction status -> status reported for the charge
STORED_TO_RESULT = {
    TransactionStatus.PENDING: "pending",
    TransactionStatus.SUCCEEDED: "succeeded",
    TransactionStatus.REFUNDED: "succeeded",
    TransactionStatus.FAILED: "failed",
}


def provider_idempotency_key(operation: str, key: str) -> str:
    """Key handed to the provider so its own retries are idempotent too."""
    return hashlib.sha256(f"{operation}|{key}".encode("utf-8")).hexdigest()


class PaymentOrchestrator:
    def __init__(
        self,
        *,
        uow_factory: UowFactory,
        providers: ProviderLookup,
        ledger: IdempotencyLedger,
        orders: Optional[OrdersGateway] = None,
        cashier: Optional[CashierGateway] = None,
        webhook_replayer: Optional[ParkedWebhookReplayer] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        attempt_timeout: Optional[float] = None,
        idempotency_ttl: Optional[int] = None,
        reservation_ttl: Optional[int] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._providers = providers
        self._ledger = ledger
        self._orders = orders
        self._cashier = cashier
        self._replayer = webhook_replayer
        self._max_attempts = max_attempts if max_attempts is not None else payment_settings.retry.max_attempts
        self._base_delay = base_delay if base_delay is not None else payment_settings.retry.base_delay
        self._attempt_timeout = (
            attempt_timeout if attempt_timeout is not None else payment_settings.timeouts.total
        )
        self._ttl = idempotency_ttl if idempotency_ttl is not None else payment_settings.idempotency.ttl_seconds
        self._reservation_ttl = (
            reservation_ttl if reservation_ttl is not None else payment_settings.idempotency.reservation_seconds
        )
        self._sleep = sleep or asyncio.sleep

    async def process_payment(self, req: ProcessPaymentRequest) -> PaymentResult:
        key = req.idempotency_key or uuid.uuid4().hex
        cached = await self._cached(key)
        if cached is not None:
            return cached

        if not await self._ledger.reserve(key, self._reservation_ttl):
            cached = await self._cached(key)
            if cached is not None:
                return cached
            logger.warning("payment_idempotency_conflict", idempotency_key=key)
            raise IdempotencyInProgressException(key)

        stored = False
        try:
            # the previous holder may have cached its result between the lookup and the claim
            cached = await self._cached(key)
            if cached is not None:
                return cached
            result = await self._process(req, key)
            if result.status in CACHEABLE_STATUSES:
                await self._ledger.put(key, result.model_dump(mode="json"), self._ttl)
                stored = True
            return result
        finally:
            if not stored:
                await self._ledger.release(key)

    async def _cached(self, key: str) -> Optional[PaymentResult]:
        cached = await self._ledger.get(key)
        if cached is None:
            return None
        logger.info("payment_idempotent_replay", idempotency_key=key)
        return PaymentResult.model_validate(cached)

    async def _process(self, req: ProcessPaymentRequest, key: str) -> PaymentResult:
        tip = Decimal(req.tip or 0)
        amount = Decimal(req.amount) + tip
        validate_charge_fields(
            amount=amount,
            method=req.method,
            provider=req.provider,
            payment_method_id=req.payment_method_id,
        )

        adapter: Optional[ProviderAdapter] = None
        unknown: Optional[UnknownProviderException] = None
        if req.method != PaymentMethod.CASH:
            try:
                adapter = self._providers.get(req.provider)
            except UnknownProviderException as exc:
                unknown = exc

        tx = PaymentTransaction(
            id=str(uuid.uuid4()),
            order_id=req.order_id,
            method=req.method,
            provider=adapter.provider if adapter else (None if req.method == PaymentMethod.CASH else req.provider),
            payment_method_id=req.payment_method_id,
            amount=amount,
            tip_amount=tip,
            currency=req.currency,
            status=TransactionStatus.PENDING,
            idempotency_key=key,
            metadata=dict(req.metadata or {}),
            created_at=utcnow(),
            updated_at=utcnow(),
        )
        async with self._uow_factory() as uow:
            await uow.transactions.create(tx)

        logger.info(
            "payment_started",
            transaction_id=tx.id,
            order_id=tx.order_id,
            method=tx.method.value,
            provider=tx.provider,
            amount=str(tx.amount),
            currency=tx.currency,
        )

        if tx.is_cash:
            return await self._settle_cash(tx)
        if adapter is None:
            return await self._fail(tx, unknown.message if unknown else f"Unknown provider: {req.provider}")
        return await self._charge_with_retry(tx, adapter)

    async def _settle_cash(self, tx: PaymentTransaction) -> PaymentResult:
        reference = f"cash_{uuid.uuid4().hex[:16]}"
        async with self._uow_factory() as uow:
            await uow.transactions.transition(
                tx.id,
                TransactionStatus.SUCCEEDED,
                allowed_predecessors(TransactionStatus.SUCCEEDED),
                provider_transaction_id=reference,
                provider_response={"method": "cash", "reference": reference},
            )
        logger.info("payment_cash_settled", transaction_id=tx.id, reference=reference)
        await record_cash(self._cashier, (tx.metadata or {}).get("cash_session_id"), tx.amount)
        await notify_order(self._orders, tx.order_id, "paid")
        return self._result(tx, "succeeded", provider_transaction_id=reference)

    async def _charge_with_retry(self, tx: PaymentTransaction, adapter: ProviderAdapter) -> PaymentResult:
        charge_req = ChargeRequest(
            transaction_id=tx.id,
            amount=tx.amount,
            currency=tx.currency,
            payment_method_id=tx.payment_method_id,
            idempotency_key=provider_idempotency_key("charge", tx.idempotency_key),
            order_id=tx.order_id,
            metadata=tx.metadata,
        )

        def _log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.warning(
                "payment_attempt_failed",
                transaction_id=tx.id,
                provider=adapter.provider,
                attempt=state.attempt_number,
                error=self._describe(exc),
            )

        charge: Optional[ChargeResult] = None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_incrementing(start=self._base_delay, increment=self._base_delay),
                before_sleep=_log_retry,
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt:
                    charge = await asyncio.wait_for(adapter.charge(charge_req), timeout=self._attempt_timeout)
        except Exception as exc:
            error = self._describe(exc)
            logger.error(
                "payment_attempts_exhausted",
                transaction_id=tx.id,
                provider=adapter.provider,
                attempts=self._max_attempts,
                error=error,
            )
            return await self._fail(tx, error)

        if charge is None:
            raise RuntimeError(f"{adapter.provider} adapter returned no charge result")
        return await self._apply_charge(tx, charge)

    async def _apply_charge(self, tx: PaymentTransaction, charge: ChargeResult) -> PaymentResult:
        if charge.status == "failed":
            return await self._fail(
                tx,
                charge.decline_reason or "Payment declined",
                provider_transaction_id=charge.provider_transaction_id,
                provider_response=charge.raw,
            )

        if charge.status == "succeeded":
            async with self._uow_factory() as uow:
                applied = await uow.transactions.transition(
                    tx.id,
                    TransactionStatus.SUCCEEDED,
                    allowed_predecessors(TransactionStatus.SUCCEEDED),
                    provider_transaction_id=charge.provider_transaction_id,
                    provider_response=charge.raw,
                )
                current = None if applied else await uow.transactions.get_by_id(tx.id)
            await self._replay_parked(tx, charge.provider_transaction_id)
            if current is not None and current.status == TransactionStatus.FAILED:
                # a verified webhook already settled the row; report the stored outcome
                return self._stored_result(tx, current)
            logger.info("payment_succeeded", transaction_id=tx.id, provider_transaction_id=charge.provider_transaction_id)
            if applied:
                await notify_order(self._orders, tx.order_id, "paid")
            return self._result(tx, "succeeded", provider_transaction_id=charge.provider_transaction_id)

        # requires_action / pending: the row stays pending until a webhook settles it
        async with self._uow_factory() as uow:
            await uow.transactions.record_provider_response(
                tx.id,
                charge.raw,
                provider_transaction_id=charge.provider_transaction_id,
            )
        logger.info("payment_awaiting_provider", transaction_id=tx.id, status=charge.status)
        if await self._replay_parked(tx, charge.provider_transaction_id):
            async with self._uow_factory(readonly=True) as uow:
                current = await uow.transactions.get_by_id(tx.id)
            if current is not None and current.status != TransactionStatus.PENDING:
                return self._stored_result(tx, current)
        return self._result(
            tx,
            charge.status,
            provider_transaction_id=charge.provider_transaction_id,
            requires_action=charge.requires_action,
        )

    async def _fail(
        self,
        tx: PaymentTransaction,
        reason: str,
        *,
        provider_transaction_id: Optional[str] = None,
        provider_response: Optional[dict[str, Any]] = None,
    ) -> PaymentResult:
        async with self._uow_factory() as uow:
            applied = await uow.transactions.transition(
                tx.id,
                TransactionStatus.FAILED,
                allowed_predecessors(TransactionStatus.FAILED),
                provider_transaction_id=provider_transaction_id,
                provider_response=provider_response,
                failure_reason=reason,
            )
            current = None if applied else await uow.transactions.get_by_id(tx.id)

        if not applied:
            # the webhook channel settled the row first; it is the source of truth
            logger.info(
                "payment_failure_not_applied",
                transaction_id=tx.id,
                stored_status=current.status.value if current else None,
                reason=reason,
            )
            if current is not None:
                return self._stored_result(tx, current)
            return self._result(tx, "failed", provider_transaction_id=provider_transaction_id, error=reason)

        logger.info("payment_failed", transaction_id=tx.id, reason=reason)
        await notify_order(self._orders, tx.order_id, "payment_failed")
        await self._replay_parked(tx, provider_transaction_id)
        return self._result(tx, "failed", provider_transaction_id=provider_transaction_id, error=reason)

    async def _replay_parked(self, tx: PaymentTransaction, provider_transaction_id: Optional[str]) -> int:
        return await replay_parked_events(
            self._replayer,
            tx.provider,
            provider_transaction_id=provider_transaction_id,
        )

    def _describe(self, exc: Optional[BaseException]) -> str:
        if exc is None:
            return "unknown error"
        if isinstance(exc, asyncio.TimeoutError):
            return f"Provider call timed out after {self._attempt_timeout}s"
        return str(exc) or type(exc).__name__

    @staticmethod
    def _result(tx: PaymentTransaction, status: str, **kwargs: Any) -> PaymentResult:
        return PaymentResult(
            transaction_id=tx.id,
            status=status,
            amount=tx.amount,
            currency=tx.currency,
            provider=tx.provider,
            order_id=tx.order_id,
            **kwargs,
        )

    def _stored_result(self, tx: PaymentTransaction, current: PaymentTransaction) -> PaymentResult:
        status = STORED_TO_RESULT[current.status]
        return self._result(
            tx,
            status,
            provider_transaction_id=current.provider_transaction_id,
            error=current.failure_reason if status == "failed" else None,
        )

    async def get_transaction(self, transaction_id: str) -> TransactionView:
        async with self._uow_factory(readonly=True) as uow:
            tx = await uow.transactions.get_by_id(transaction_id)
        if tx is None:
            raise TransactionNotFoundException(transaction_id)
        return TransactionView.from_entity(tx)

    async def list_transactions(
        self,
        *,
        order_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        provider: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[TransactionView], int]:
        async with self._uow_factory(readonly=True) as uow:
            items = await uow.transactions.list_transactions(
                order_id=order_id, status=status, provider=provider, skip=offset, limit=limit
            )
            total = await uow.transactions.count(order_id=order_id, status=status, provider=provider)
        return [TransactionView.from_entity(tx) for tx in items], total

    def list_payment_methods(self) -> list[PaymentMethodOption]:
        enabled = set(self._providers.names())
        return [
            PaymentMethodOption(
                id=method.value,
                name=name,
                providers=[p for p in providers if p in enabled],
            )
            for method, name, providers in METHOD_CATALOGUE
        ]
