import asyncio
import hashlib
import json
from decimal import Decimal

import pytest

from application.dtos.payments import ChargeResult, ProcessPaymentRequest
from domain.payment.entity import PaymentMethod, TransactionStatus, allowed_predecessors
from domain.payment.service import IdempotencyInProgressException, PaymentValidationException
from infrastructure.external.payments.exceptions import PaymentRecoverableError
from tests.support import load_transaction, sign_fake


def _card(**overrides) -> ProcessPaymentRequest:
    data = {
        "order_id": "order-1",
        "amount": "25.00",
        "currency": "USD",
        "method": "card",
        "provider": "fakepay",
        "payment_method_id": "tok_visa",
    }
    data.update(overrides)
    return ProcessPaymentRequest(**data)


def _transient() -> PaymentRecoverableError:
    return PaymentRecoverableError("fakepay returned HTTP 503", provider="fakepay", provider_code="503")


@pytest.mark.asyncio
async def test_card_payment_succeeds_and_notifies_order(orchestrator, adapter, orders, uow_factory):
    result = await orchestrator.process_payment(_card())

    assert result.status == "succeeded"
    assert result.provider == "fakepay"
    assert result.provider_transaction_id == "fk_1"
    assert result.amount == Decimal("25.00")
    tx = await load_transaction(uow_factory, result.transaction_id)
    assert tx.status == TransactionStatus.SUCCEEDED
    assert tx.provider_transaction_id == "fk_1"
    assert orders.calls == [("paid", "order-1")]


@pytest.mark.asyncio
async def test_cash_payment_skips_provider(orchestrator, adapter, cashier, orders, uow_factory):
    req = ProcessPaymentRequest(
        order_id="order-9",
        amount="12.50",
        method="cash",
        metadata={"cash_session_id": "drawer-1"},
    )
    result = await orchestrator.process_payment(req)

    assert result.status == "succeeded"
    assert result.provider is None
    assert result.provider_transaction_id.startswith("cash_")
    assert adapter.charge_calls == []
    assert cashier.movements == [("drawer-1", Decimal("12.50"))]
    assert orders.calls == [("paid", "order-9")]
    tx = await load_transaction(uow_factory, result.transaction_id)
    assert tx.method == PaymentMethod.CASH
    assert tx.status == TransactionStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_same_idempotency_key_returns_cached_result(orchestrator, adapter):
    first = await orchestrator.process_payment(_card(idempotency_key="K1"))
    second = await orchestrator.process_payment(_card(idempotency_key="K1"))

    assert second == first
    assert len(adapter.charge_calls) == 1
    items, total = await orchestrator.list_transactions()
    assert total == 1


@pytest.mark.asyncio
async def test_provider_receives_derived_idempotency_key(orchestrator, adapter):
    await orchestrator.process_payment(_card(idempotency_key="K2"))

    expected = hashlib.sha256(b"charge|K2").hexdigest()
    assert adapter.charge_calls[0].idempotency_key == expected


@pytest.mark.asyncio
async def test_failed_result_is_not_cached(orchestrator, adapter):
    adapter.charges = [ChargeResult(status="failed", decline_reason="card_declined")]

    first = await orchestrator.process_payment(_card(idempotency_key="K3"))
    second = await orchestrator.process_payment(_card(idempotency_key="K3"))

    assert first.status == "failed"
    assert second.status == "succeeded"
    assert len(adapter.charge_calls) == 2


@pytest.mark.asyncio
async def test_transient_errors_are_retried_with_linear_backoff(orchestrator, adapter, sleeps):
    adapter.charges = [_transient(), _transient()]

    result = await orchestrator.process_payment(_card())

    assert result.status == "succeeded"
    assert len(adapter.charge_calls) == 3
    assert sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_exhausted_retries_mark_transaction_failed(orchestrator, adapter, orders, uow_factory):
    adapter.charges = [_transient(), _transient(), _transient(), _transient()]

    result = await orchestrator.process_payment(_card())

    assert result.status == "failed"
    assert "503" in result.error
    assert len(adapter.charge_calls) == 3
    tx = await load_transaction(uow_factory, result.transaction_id)
    assert tx.status == TransactionStatus.FAILED
    assert tx.failure_reason == result.error
    assert orders.calls == [("payment_failed", "order-1")]


@pytest.mark.asyncio
async def test_decline_is_not_retried(orchestrator, adapter, sleeps, uow_factory):
    adapter.charges = [ChargeResult(status="failed", decline_reason="card_declined", raw={"code": "card_declined"})]

    result = await orchestrator.process_payment(_card())

    assert result.status == "failed"
    assert result.error == "card_declined"
    assert len(adapter.charge_calls) == 1
    assert sleeps == []
    tx = await load_transaction(uow_factory, result.transaction_id)
    assert tx.provider_response == {"code": "card_declined"}


@pytest.mark.asyncio
async def test_attempt_timeout_is_retried(orchestrator, adapter):
    async def _hang(req):
        await asyncio.sleep(5)

    adapter.charges = [_hang]

    result = await orchestrator.process_payment(_card())

    assert result.status == "succeeded"
    assert len(adapter.charge_calls) == 2


@pytest.mark.asyncio
async def test_unknown_provider_fails_without_charging(orchestrator, adapter, uow_factory):
    result = await orchestrator.process_payment(_card(provider="nope"))

    assert result.status == "failed"
    assert result.error == "Unknown provider: nope"
    assert adapter.charge_calls == []
    tx = await load_transaction(uow_factory, result.transaction_id)
    assert tx.status == TransactionStatus.FAILED


@pytest.mark.asyncio
async def test_tip_is_added_to_charged_amount(orchestrator, adapter, uow_factory):
    result = await orchestrator.process_payment(_card(amount="20.00", tip="3.50"))

    assert result.amount == Decimal("23.50")
    assert adapter.charge_calls[0].amount == Decimal("23.50")
    tx = await load_transaction(uow_factory, result.transaction_id)
    assert tx.tip_amount == Decimal("3.50")


@pytest.mark.asyncio
async def test_requires_action_is_cached_and_row_stays_pending(orchestrator, adapter, uow_factory):
    adapter.charges = [
        ChargeResult(
            status="requires_action",
            provider_transaction_id="fk_3ds",
            requires_action={"type": "redirect_to_url"},
        )
    ]

    first = await orchestrator.process_payment(_card(idempotency_key="K4"))
    second = await orchestrator.process_payment(_card(idempotency_key="K4"))

    assert first.status == "requires_action"
    assert first.requires_action == {"type": "redirect_to_url"}
    assert second == first
    tx = await load_transaction(uow_factory, first.transaction_id)
    assert tx.status == TransactionStatus.PENDING
    assert tx.provider_transaction_id == "fk_3ds"


@pytest.mark.asyncio
async def test_payment_method_id_required_for_card(orchestrator):
    with pytest.raises(PaymentValidationException):
        await orchestrator.process_payment(_card(payment_method_id=None))


@pytest.mark.asyncio
async def test_provider_required_unless_cash(orchestrator):
    with pytest.raises(PaymentValidationException):
        await orchestrator.process_payment(_card(provider=None))


@pytest.mark.asyncio
async def test_collaborator_failure_does_not_change_result(orchestrator, orders):
    orders.fail = True

    result = await orchestrator.process_payment(_card())

    assert result.status == "succeeded"
    assert orders.calls == [("paid", "order-1")]


@pytest.mark.asyncio
async def test_list_transactions_filters_by_status(orchestrator, adapter):
    adapter.charges = [ChargeResult(status="failed", decline_reason="declined")]
    await orchestrator.process_payment(_card(order_id="a"))
    await orchestrator.process_payment(_card(order_id="b"))

    items, total = await orchestrator.list_transactions(status=TransactionStatus.SUCCEEDED)

    assert total == 1
    assert [item.order_id for item in items] == ["b"]


@pytest.mark.asyncio
async def test_payment_methods_only_list_enabled_providers(orchestrator, registry, adapter):
    registry.register(adapter, "stripe")

    methods = {m.id: m.providers for m in orchestrator.list_payment_methods()}

    assert methods["card"] == ["stripe"]
    assert methods["wallet"] == []
    assert methods["cash"] == []


@pytest.mark.asyncio
async def test_exhausted_retries_report_success_recorded_meanwhile(orchestrator, adapter, ledger, orders, uow_factory):
    async def _settled_then_timeout(req):
        # the provider confirmed the charge on its webhook channel while this call failed
        async with uow_factory() as uow:
            await uow.transactions.transition(
                req.transaction_id,
                TransactionStatus.SUCCEEDED,
                allowed_predecessors(TransactionStatus.SUCCEEDED),
                provider_transaction_id="fk_hook",
            )
        raise _transient()

    adapter.charges = [_settled_then_timeout, _transient(), _transient()]

    result = await orchestrator.process_payment(_card(idempotency_key="K5"))

    assert result.status == "succeeded"
    assert result.provider_transaction_id == "fk_hook"
    assert result.error is None
    tx = await load_transaction(uow_factory, result.transaction_id)
    assert tx.status == TransactionStatus.SUCCEEDED
    assert tx.failure_reason is None
    assert orders.calls == []
    assert (await ledger.get("K5"))["status"] == "succeeded"


@pytest.mark.asyncio
async def test_decline_after_webhook_failure_reports_stored_failure(orchestrator, adapter, orders, uow_factory):
    async def _failed_elsewhere(req):
        async with uow_factory() as uow:
            await uow.transactions.transition(
                req.transaction_id,
                TransactionStatus.FAILED,
                allowed_predecessors(TransactionStatus.FAILED),
                failure_reason="fakepay reported charge.failed",
            )
        return ChargeResult(status="failed", decline_reason="card_declined")

    adapter.charges = [_failed_elsewhere]

    result = await orchestrator.process_payment(_card())

    assert result.status == "failed"
    assert result.error == "fakepay reported charge.failed"
    assert orders.calls == []


@pytest.mark.asyncio
async def test_concurrent_calls_with_same_key_charge_once(orchestrator, adapter):
    async def _slow(req):
        await asyncio.sleep(0.01)
        return ChargeResult(status="succeeded", provider_transaction_id="fk_slow", raw={"id": "fk_slow"})

    adapter.charges = [_slow]

    results = await asyncio.gather(
        orchestrator.process_payment(_card(idempotency_key="dup")),
        orchestrator.process_payment(_card(idempotency_key="dup")),
        return_exceptions=True,
    )

    assert len(adapter.charge_calls) == 1
    items, total = await orchestrator.list_transactions()
    assert total == 1
    completed = [r for r in results if not isinstance(r, BaseException)]
    rejected = [r for r in results if isinstance(r, BaseException)]
    assert [r.status for r in completed] == ["succeeded"]
    assert len(rejected) == 1
    assert isinstance(rejected[0], IdempotencyInProgressException)
    assert rejected[0].details == {"idempotency_key": "dup"}

    # once the first call finished the key replays its result
    again = await orchestrator.process_payment(_card(idempotency_key="dup"))
    assert again == completed[0]
    assert len(adapter.charge_calls) == 1


@pytest.mark.asyncio
async def test_rejected_request_releases_its_key(orchestrator, adapter, ledger):
    with pytest.raises(PaymentValidationException):
        await orchestrator.process_payment(_card(idempotency_key="K6", payment_method_id=None))

    assert await ledger.reserve("K6", 30) is True
    await ledger.release("K6")
    result = await orchestrator.process_payment(_card(idempotency_key="K6"))
    assert result.status == "succeeded"


@pytest.mark.asyncio
async def test_webhook_arriving_before_charge_returns_is_applied(orchestrator, adapter, dispatcher, orders, uow_factory):
    body = json.dumps(
        {"id": "evt_early", "type": "charge.done", "kind": "payment_succeeded", "provider_transaction_id": "fk_early"}
    ).encode()

    async def _webhook_first(req):
        outcome = await dispatcher.dispatch("fakepay", sign_fake(body), body)
        assert outcome.parked is True
        return ChargeResult(status="pending", provider_transaction_id="fk_early", raw={"id": "fk_early"})

    adapter.charges = [_webhook_first]

    result = await orchestrator.process_payment(_card(idempotency_key="K7"))

    assert result.status == "succeeded"
    assert result.provider_transaction_id == "fk_early"
    tx = await load_transaction(uow_factory, result.transaction_id)
    assert tx.status == TransactionStatus.SUCCEEDED
    assert orders.calls == [("paid", "order-1")]

    redelivered = await dispatcher.dispatch("fakepay", sign_fake(body), body)
    assert redelivered.duplicate is True
    assert orders.calls == [("paid", "order-1")]
