"""
Webhook dispatcher: verify, dedupe, then apply provider events to the same
transaction/refund rows the orchestrators write.

Verification happens inside the adapter's parse_webhook before anything derived
from the body is trusted; signature errors propagate to the API untouched.

An event whose transaction or refund is not stored under its provider id yet is
parked instead of dropped. The orchestrators call replay_parked right after they
write the provider id, and a redelivery of a parked event retries it.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional

from application.dtos.payments import WebhookEvent, WebhookOutcome
from application.ports.orders import OrdersGateway
from application.ports.payment_gateway import ProviderLookup
from application.services.notifications import notify_order
from application.services.payment_service import UowFactory
from core.logging_config import get_logger
from domain.payment.entity import (
    REFUND_TRANSITIONS,
    ProcessedWebhookEvent,
    RefundStatus,
    TransactionStatus,
    allowed_predecessors,
    utcnow,
)


logger = get_logger(__name__)

# event kind -> (target transaction status, order notification)
TRANSACTION_EFFECTS = {
    "payment_succeeded": (TransactionStatus.SUCCEEDED, "paid"),
    "payment_failed": (TransactionStatus.FAILED, "payment_failed"),
    "payment_refunded": (TransactionStatus.REFUNDED, "refunded"),
}

REFUND_KINDS = ("refund_succeeded", "payment_refunded")


class WebhookDispatcher:
    def __init__(
        self,
        *,
        uow_factory: UowFactory,
        providers: ProviderLookup,
        orders: Optional[OrdersGateway] = None,
        dedupe_events: bool = True,
        duplicate_errors: tuple[type[BaseException], ...] = (),
    ) -> None:
        self._uow_factory = uow_factory
        self._providers = providers
        self._orders = orders
        self._dedupe = dedupe_events
        # raised by the ledger when a concurrent delivery inserted the same event id first
        self._duplicate_errors = duplicate_errors

    async def dispatch(self, provider: str, headers: Mapping[str, Any], body: bytes) -> WebhookOutcome:
        adapter = self._providers.get(provider)
        event = adapter.parse_webhook(dict(headers), body)
        logger.info(
            "webhook_verified",
            provider=event.provider,
            event_id=event.id,
            event_type=event.type,
            kind=event.kind,
        )
        outcome = await self._run(event)

        if outcome.parked:
            # the orchestrator may have stored the provider id while this event was being parked
            for replayed in await self._replay_matching(
                event.provider,
                provider_transaction_id=event.provider_transaction_id,
                provider_refund_id=event.provider_refund_id,
            ):
                if replayed.id == event.id and not replayed.duplicate:
                    outcome = replayed
        return outcome

    async def replay_parked(
        self,
        provider: str,
        *,
        provider_transaction_id: Optional[str] = None,
        provider_refund_id: Optional[str] = None,
    ) -> int:
        """Re-apply parked events for ids that were just stored; returns how many were settled."""
        outcomes = await self._replay_matching(
            provider,
            provider_transaction_id=provider_transaction_id,
            provider_refund_id=provider_refund_id,
        )
        return sum(1 for o in outcomes if not o.duplicate and not o.parked)

    async def _replay_matching(
        self,
        provider: str,
        *,
        provider_transaction_id: Optional[str],
        provider_refund_id: Optional[str],
    ) -> list[WebhookOutcome]:
        async with self._uow_factory(readonly=True) as uow:
            parked = await uow.webhook_events.list_parked(
                provider,
                provider_transaction_id=provider_transaction_id,
                provider_refund_id=provider_refund_id,
            )

        outcomes = []
        for record in parked:
            event = WebhookEvent(
                id=record.event_id,
                type=record.event_type,
                provider=record.provider,
                kind=record.kind or "ignored",
                provider_transaction_id=record.provider_transaction_id,
                provider_refund_id=record.provider_refund_id,
                order_id=record.order_id,
                data=record.payload or {},
            )
            logger.info("webhook_replaying", provider=provider, event_id=event.id, kind=event.kind)
            outcomes.append(await self._run(event, replay=True))
        return outcomes

    async def _run(self, event: WebhookEvent, *, replay: bool = False) -> WebhookOutcome:
        try:
            outcome, notify = await self._apply(event, replay=replay)
        except self._duplicate_errors:
            logger.info("webhook_duplicate", provider=event.provider, event_id=event.id)
            return WebhookOutcome(id=event.id, type=event.type, provider=event.provider, duplicate=True)

        if notify is not None:
            order_id, action = notify
            await notify_order(self._orders, order_id, action)
        return outcome

    @staticmethod
    def _record(event: WebhookEvent) -> ProcessedWebhookEvent:
        return ProcessedWebhookEvent(
            provider=event.provider,
            event_id=event.id,
            event_type=event.type,
            received_at=utcnow(),
            kind=event.kind,
            provider_transaction_id=event.provider_transaction_id,
            provider_refund_id=event.provider_refund_id,
            order_id=event.order_id,
            payload=dict(event.data),
        )

    async def _claim(self, uow: Any, event: WebhookEvent, replay: bool) -> bool:
        """Take ownership of the event id; False means someone else already handled it."""
        if replay:
            return await uow.webhook_events.mark_processed(event.provider, event.id)
        if not self._dedupe:
            return True
        existing = await uow.webhook_events.get(event.provider, event.id)
        if existing is None:
            return await uow.webhook_events.add_if_absent(self._record(event))
        if existing.is_parked:
            # redelivery of a parked event retries it
            return await uow.webhook_events.mark_processed(event.provider, event.id)
        return False

    async def _apply(
        self, event: WebhookEvent, *, replay: bool = False
    ) -> tuple[WebhookOutcome, Optional[tuple[Optional[str], str]]]:
        outcome = WebhookOutcome(id=event.id, type=event.type, provider=event.provider)
        notify: Optional[tuple[Optional[str], str]] = None

        async with self._uow_factory() as uow:
            if not await self._claim(uow, event, replay):
                logger.info("webhook_duplicate", provider=event.provider, event_id=event.id)
                outcome.duplicate = True
                return outcome, None

            if event.kind == "ignored":
                logger.info("webhook_ignored", provider=event.provider, event_id=event.id, event_type=event.type)
                return outcome, None

            refund = None
            if event.provider_refund_id:
                refund = await uow.refunds.get_by_provider_refund_id(event.provider_refund_id)

            tx = None
            if refund is not None:
                tx = await uow.transactions.get_by_id(refund.transaction_id)
            elif event.provider_transaction_id:
                tx = await uow.transactions.get_by_provider_transaction_id(
                    event.provider_transaction_id, event.provider
                )
            awaiting_refund = event.kind in REFUND_KINDS and bool(event.provider_refund_id) and refund is None

            if tx is None:
                logger.warning(
                    "webhook_transaction_not_found",
                    provider=event.provider,
                    event_id=event.id,
                    provider_transaction_id=event.provider_transaction_id,
                    provider_refund_id=event.provider_refund_id,
                )
                await uow.webhook_events.park(self._record(event))
                outcome.parked = True
                return outcome, None

            outcome.transaction_id = tx.id
            applied = False

            if refund is not None and event.kind in REFUND_KINDS:
                applied = await uow.refunds.transition(
                    refund.id,
                    RefundStatus.SUCCEEDED,
                    REFUND_TRANSITIONS[RefundStatus.SUCCEEDED],
                    provider_response=event.data,
                )

            effect = TRANSACTION_EFFECTS.get(event.kind)
            if effect is not None:
                target, action = effect
                moved = await uow.transactions.transition(
                    tx.id,
                    target,
                    allowed_predecessors(target),
                    provider_response=event.data,
                    failure_reason=f"{event.provider} reported {event.type}"
                    if target == TransactionStatus.FAILED
                    else None,
                )
                if moved:
                    applied = True
                    notify = (tx.order_id, action)
                elif tx.status == target:
                    # same terminal state re-delivered: refresh the audit snapshot only
                    await uow.transactions.record_provider_response(tx.id, event.data)
                else:
                    logger.info(
                        "webhook_stale_event",
                        transaction_id=tx.id,
                        current_status=tx.status.value,
                        event_kind=event.kind,
                    )

            if awaiting_refund:
                # refund row not linked to its provider id yet; keep the event for replay
                await uow.webhook_events.park(self._record(event))
                outcome.parked = True

            current = await uow.transactions.get_by_id(tx.id)
            outcome.applied = applied
            outcome.transaction_status = current.status.value if current else tx.status.value

        logger.info(
            "webhook_applied" if outcome.applied else ("webhook_parked" if outcome.parked else "webhook_noop"),
            provider=event.provider,
            event_id=event.id,
            transaction_id=outcome.transaction_id,
            transaction_status=outcome.transaction_status,
            replay=replay,
        )
        return outcome, notify
