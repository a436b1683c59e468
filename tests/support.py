"""Fakes and seeding helpers shared by the test suite."""
import hashlib
import hmac
import json
import uuid
from decimal import Decimal
from typing import Any, Optional


from application.dtos.payments import (
    ChargeRequest,
    ChargeResult,
    ProviderRefundRequest,
    ProviderRefundResult,
    WebhookEvent,
)
from domain.payment.entity import (
    PaymentMethod,
    PaymentTransaction,
    Refund,
    RefundStatus,
    TransactionStatus,
    utcnow,
)
from infrastructure.external.payments.exceptions import PaymentSignatureError, WebhookSignatureMissing


FAKE_WEBHOOK_SECRET = "fake-webhook-secret"


class FakeAdapter:
    """Scripted provider adapter.

    ``charges`` / ``refunds`` are consumed in order; each item is a result,
    an exception instance (raised) or an async callable taking the request.
    When a script runs out the adapter succeeds.
    """

    def __init__(self, provider: str = "fakepay", charges=(), refunds=()):
        self.provider = provider
        self.charges = list(charges)
        self.refunds = list(refunds)
        self.charge_calls: list[ChargeRequest] = []
        self.refund_calls: list[ProviderRefundRequest] = []
        self.closed = False

    async def _play(self, script: list, req):
        if not script:
            return None
        step = script.pop(0)
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return await step(req)
        return step

    async def charge(self, req: ChargeRequest) -> ChargeResult:
        self.charge_calls.append(req)
        result = await self._play(self.charges, req)
        return result or ChargeResult(
            status="succeeded",
            provider_transaction_id=f"fk_{len(self.charge_calls)}",
            raw={"id": f"fk_{len(self.charge_calls)}", "status": "succeeded"},
        )

    async def refund(self, req: ProviderRefundRequest) -> ProviderRefundResult:
        self.refund_calls.append(req)
        result = await self._play(self.refunds, req)
        return result or ProviderRefundResult(
            status="succeeded",
            provider_refund_id=f"rf_{len(self.refund_calls)}",
            raw={"status": "succeeded"},
        )

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        sig = headers.get("x-fake-signature")
        if not sig:
            raise WebhookSignatureMissing("X-Fake-Signature", provider=self.provider)
        expected = hmac.new(FAKE_WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, sig):
            raise PaymentSignatureError("Invalid fake signature", provider=self.provider)
        payload = json.loads(body)
        return WebhookEvent(provider=self.provider, data=payload, **payload)

    async def aclose(self) -> None:
        self.closed = True


def sign_fake(body: bytes) -> dict[str, str]:
    return {"x-fake-signature": hmac.new(FAKE_WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()}


class RecordingOrders:
    def __init__(self, fail: bool = False):
        self.calls: list[tuple[str, str]] = []
        self.fail = fail

    async def _record(self, action: str, order_id: str) -> None:
        self.calls.append((action, order_id))
        if self.fail:
            raise RuntimeError("orders service unavailable")

    async def mark_order_paid(self, order_id: str) -> None:
        await self._record("paid", order_id)

    async def mark_order_payment_failed(self, order_id: str) -> None:
        await self._record("payment_failed", order_id)

    async def mark_order_refunded(self, order_id: str) -> None:
        await self._record("refunded", order_id)


class RecordingCashier:
    def __init__(self):
        self.movements: list[tuple[str, Decimal]] = []

    async def record_cash_movement(self, session_id: str, amount: Decimal) -> None:
        self.movements.append((session_id, amount))


async def seed_transaction(
    uow_factory,
    *,
    amount: str = "100.00",
    status: TransactionStatus = TransactionStatus.SUCCEEDED,
    provider: str = "fakepay",
    provider_transaction_id: Optional[str] = "fk_seed",
    order_id: Optional[str] = "order-1",
) -> PaymentTransaction:
    tx = PaymentTransaction(
        id=str(uuid.uuid4()),
        order_id=order_id,
        method=PaymentMethod.CARD,
        provider=provider,
        payment_method_id="tok_visa",
        amount=Decimal(amount),
        currency="USD",
        status=status,
        provider_transaction_id=provider_transaction_id,
        idempotency_key=uuid.uuid4().hex,
        created_at=utcnow(),
        updated_at=utcnow(),
    )
    async with uow_factory() as uow:
        return await uow.transactions.create(tx)


async def seed_refund(
    uow_factory,
    transaction_id: str,
    *,
    amount: str,
    status: RefundStatus = RefundStatus.PROCESSING,
    provider_refund_id: Optional[str] = None,
) -> Refund:
    refund = Refund(
        id=str(uuid.uuid4()),
        transaction_id=transaction_id,
        amount=Decimal(amount),
        status=status,
        provider_refund_id=provider_refund_id,
        created_at=utcnow(),
    )
    async with uow_factory() as uow:
        return await uow.refunds.create(refund)


async def load_transaction(uow_factory, transaction_id: str) -> PaymentTransaction:
    async with uow_factory(readonly=True) as uow:
        return await uow.transactions.get_by_id(transaction_id)
