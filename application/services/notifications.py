"""Best-effort side effects after a transaction or refund row is written."""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from application.ports.orders import CashierGateway, OrdersGateway
from application.ports.payment_gateway import ParkedWebhookReplayer
from core.logging_config import get_logger


logger = get_logger(__name__)

ORDER_ACTIONS = {
    "paid": "mark_order_paid",
    "payment_failed": "mark_order_payment_failed",
    "refunded": "mark_order_refunded",
}


async def notify_order(orders: Optional[OrdersGateway], order_id: Optional[str], outcome: str) -> None:
    if orders is None or not order_id:
        return
    try:
        await getattr(orders, ORDER_ACTIONS[outcome])(order_id)
    except Exception as exc:
        logger.warning("order_notification_failed", order_id=order_id, outcome=outcome, error=str(exc))


async def record_cash(cashier: Optional[CashierGateway], session_id: Optional[str], amount: Decimal) -> None:
    if cashier is None or not session_id:
        return
    try:
        await cashier.record_cash_movement(session_id, amount)
    except Exception as exc:
        logger.warning("cash_movement_failed", session_id=session_id, error=str(exc))


async def replay_parked_events(
    replayer: Optional[ParkedWebhookReplayer],
    provider: Optional[str],
    *,
    provider_transaction_id: Optional[str] = None,
    provider_refund_id: Optional[str] = None,
) -> int:
    """Apply webhook events parked for a reference that was just stored."""
    if replayer is None or not provider or not (provider_transaction_id or provider_refund_id):
        return 0
    try:
        return await replayer.replay_parked(
            provider,
            provider_transaction_id=provider_transaction_id,
            provider_refund_id=provider_refund_id,
        )
    except Exception as exc:
        logger.warning(
            "parked_webhook_replay_failed",
            provider=provider,
            provider_transaction_id=provider_transaction_id,
            provider_refund_id=provider_refund_id,
            error=str(exc),
        )
        return 0
