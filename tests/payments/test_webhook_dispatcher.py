import json

import pytest

from domain.payment.entity import RefundStatus, TransactionStatus
from domain.payment.service import UnknownProviderException
from infrastructure.external.payments.exceptions import PaymentSignatureError, WebhookSignatureMissing
from tests.support import load_transaction, seed_refund, seed_transaction, sign_fake


def _event(**fields) -> bytes:
    return json.dumps(fields).encode()


@pytest.mark.asyncio
async def test_succeeded_event_settles_pending_transaction(dispatcher, orders, uow_factory):
    tx = await seed_transaction(uow_factory, status=TransactionStatus.PENDING, provider_transaction_id="fk_9")
    body = _event(id="evt_1", type="charge.done", kind="payment_succeeded", provider_transaction_id="fk_9")

    outcome = await dispatcher.dispatch("fakepay", sign_fake(body), body)

    assert outcome.applied is True
    assert outcome.transaction_id == tx.id
    assert outcome.transaction_status == "succeeded"
    stored = await load_transaction(uow_factory, tx.id)
    assert stored.status == TransactionStatus.SUCCEEDED
    assert stored.provider_response["id"] == "evt_1"
    assert orders.calls == [("paid", "order-1")]


@pytest.mark.asyncio
async def test_late_failure_does_not_regress_success(dispatcher, orders, uow_factory):
    tx = await seed_transaction(uow_factory, provider_transaction_id="fk_9")
    body = _event(id="evt_2", type="charge.failed", kind="payment_failed", provider_transaction_id="fk_9")

    outcome = await dispatcher.dispatch("fakepay", sign_fake(body), body)

    assert outcome.applied is False
    assert outcome.transaction_status == "succeeded"
    stored = await load_transaction(uow_factory, tx.id)
    assert stored.status == TransactionStatus.SUCCEEDED
    assert stored.provider_response == {}
    assert orders.calls == []


@pytest.mark.asyncio
async def test_succeeded_event_is_noop_on_refunded_transaction(dispatcher, uow_factory):
    tx = await seed_transaction(uow_factory, status=TransactionStatus.REFUNDED, provider_transaction_id="fk_9")
    body = _event(id="evt_3", type="charge.done", kind="payment_succeeded", provider_transaction_id="fk_9")

    outcome = await dispatcher.dispatch("fakepay", sign_fake(body), body)

    assert outcome.applied is False
    stored = await load_transaction(uow_factory, tx.id)
    assert stored.status == TransactionStatus.REFUNDED


@pytest.mark.asyncio
async def test_invalid_signature_leaves_row_untouched(dispatcher, orders, uow_factory):
    tx = await seed_transaction(uow_factory, status=TransactionStatus.PENDING, provider_transaction_id="fk_9")
    before = await load_transaction(uow_factory, tx.id)
    body = _event(id="evt_4", type="charge.done", kind="payment_succeeded", provider_transaction_id="fk_9")
    tampered = body.replace(b"evt_4", b"evt_5")

    with pytest.raises(PaymentSignatureError):
        await dispatcher.dispatch("fakepay", sign_fake(body), tampered)

    after = await load_transaction(uow_factory, tx.id)
    assert after.status == TransactionStatus.PENDING
    assert after.updated_at == before.updated_at
    assert orders.calls == []


@pytest.mark.asyncio
async def test_missing_signature_is_rejected(dispatcher):
    body = _event(id="evt_6", type="charge.done", kind="payment_succeeded")

    with pytest.raises(WebhookSignatureMissing):
        await dispatcher.dispatch("fakepay", {}, body)


@pytest.mark.asyncio
async def test_duplicate_event_id_is_acknowledged_once(dispatcher, orders, uow_factory):
    await seed_transaction(uow_factory, status=TransactionStatus.PENDING, provider_transaction_id="fk_9")
    body = _event(id="evt_7", type="charge.done", kind="payment_succeeded", provider_transaction_id="fk_9")

    first = await dispatcher.dispatch("fakepay", sign_fake(body), body)
    second = await dispatcher.dispatch("fakepay", sign_fake(body), body)

    assert first.applied is True
    assert second.duplicate is True
    assert second.applied is False
    assert orders.calls == [("paid", "order-1")]


@pytest.mark.asyncio
async def test_event_for_unknown_transaction_is_acknowledged(dispatcher, orders):
    body = _event(id="evt_8", type="charge.done", kind="payment_succeeded", provider_transaction_id="elsewhere")

    outcome = await dispatcher.dispatch("fakepay", sign_fake(body), body)

    assert outcome.applied is False
    assert outcome.parked is True
    assert outcome.transaction_id is None
    assert orders.calls == []


@pytest.mark.asyncio
async def test_refund_event_settles_refund_and_transaction(dispatcher, orders, uow_factory):
    tx = await seed_transaction(uow_factory, provider_transaction_id="fk_9")
    refund = await seed_refund(uow_factory, tx.id, amount="100.00", provider_refund_id="rf_9")
    body = _event(
        id="evt_9",
        type="charge.refunded",
        kind="payment_refunded",
        provider_transaction_id="fk_9",
        provider_refund_id="rf_9",
    )

    outcome = await dispatcher.dispatch("fakepay", sign_fake(body), body)

    assert outcome.applied is True
    assert outcome.transaction_status == "refunded"
    async with uow_factory(readonly=True) as uow:
        stored_refund = await uow.refunds.get_by_id(refund.id)
    assert stored_refund.status == RefundStatus.SUCCEEDED
    assert orders.calls == [("refunded", "order-1")]


@pytest.mark.asyncio
async def test_ignored_event_is_recorded_without_effect(dispatcher, uow_factory):
    tx = await seed_transaction(uow_factory, status=TransactionStatus.PENDING, provider_transaction_id="fk_9")
    body = _event(id="evt_10", type="customer.created", provider_transaction_id="fk_9")

    outcome = await dispatcher.dispatch("fakepay", sign_fake(body), body)

    assert outcome.applied is False
    stored = await load_transaction(uow_factory, tx.id)
    assert stored.status == TransactionStatus.PENDING
    async with uow_factory(readonly=True) as uow:
        assert await uow.webhook_events.exists("fakepay", "evt_10")


@pytest.mark.asyncio
async def test_unknown_provider_is_rejected(dispatcher):
    with pytest.raises(UnknownProviderException):
        await dispatcher.dispatch("nope", {}, b"{}")


@pytest.mark.asyncio
async def test_parked_event_is_replayed_once_provider_id_is_stored(dispatcher, orders, uow_factory):
    body = _event(id="evt_11", type="charge.done", kind="payment_succeeded", provider_transaction_id="fk_late")
    parked = await dispatcher.dispatch("fakepay", sign_fake(body), body)
    assert parked.parked is True

    tx = await seed_transaction(uow_factory, status=TransactionStatus.PENDING, provider_transaction_id="fk_late")
    replayed = await dispatcher.replay_parked("fakepay", provider_transaction_id="fk_late")

    assert replayed == 1
    stored = await load_transaction(uow_factory, tx.id)
    assert stored.status == TransactionStatus.SUCCEEDED
    assert orders.calls == [("paid", "order-1")]
    assert await dispatcher.replay_parked("fakepay", provider_transaction_id="fk_late") == 0

    redelivered = await dispatcher.dispatch("fakepay", sign_fake(body), body)
    assert redelivered.duplicate is True
    assert orders.calls == [("paid", "order-1")]


@pytest.mark.asyncio
async def test_redelivery_of_parked_event_applies_it(dispatcher, orders, uow_factory):
    body = _event(id="evt_12", type="charge.failed", kind="payment_failed", provider_transaction_id="fk_slow")
    first = await dispatcher.dispatch("fakepay", sign_fake(body), body)
    assert first.parked is True

    tx = await seed_transaction(uow_factory, status=TransactionStatus.PENDING, provider_transaction_id="fk_slow")
    second = await dispatcher.dispatch("fakepay", sign_fake(body), body)

    assert second.duplicate is False
    assert second.parked is False
    assert second.applied is True
    stored = await load_transaction(uow_factory, tx.id)
    assert stored.status == TransactionStatus.FAILED
    assert stored.failure_reason == "fakepay reported charge.failed"
    assert orders.calls == [("payment_failed", "order-1")]


@pytest.mark.asyncio
async def test_replay_only_touches_matching_provider_ids(dispatcher, uow_factory):
    body = _event(id="evt_13", type="charge.done", kind="payment_succeeded", provider_transaction_id="fk_a")
    await dispatcher.dispatch("fakepay", sign_fake(body), body)
    await seed_transaction(uow_factory, status=TransactionStatus.PENDING, provider_transaction_id="fk_b")

    assert await dispatcher.replay_parked("fakepay", provider_transaction_id="fk_b") == 0
    assert await dispatcher.replay_parked("otherpay", provider_transaction_id="fk_a") == 0
    async with uow_factory(readonly=True) as uow:
        record = await uow.webhook_events.get("fakepay", "evt_13")
    assert record.is_parked
    assert record.payload["provider_transaction_id"] == "fk_a"


@pytest.mark.asyncio
async def test_ignored_event_is_not_parked(dispatcher, uow_factory):
    body = _event(id="evt_14", type="customer.created", provider_transaction_id="nowhere")

    outcome = await dispatcher.dispatch("fakepay", sign_fake(body), body)

    assert outcome.parked is False
    async with uow_factory(readonly=True) as uow:
        record = await uow.webhook_events.get("fakepay", "evt_14")
    assert record is not None
    assert not record.is_parked
