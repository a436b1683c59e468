import json

import httpx
import pytest

from api.dependencies import get_payment_orchestrator
from domain.payment.entity import TransactionStatus
from domain.payment.service import IdempotencyInProgressException
from tests.support import seed_transaction, sign_fake


@pytest.fixture
async def client(orchestrator, refund_orchestrator, dispatcher, terminal_service):
    from main import app

    app.state.payment_orchestrator = orchestrator
    app.state.refund_orchestrator = refund_orchestrator
    app.state.webhook_dispatcher = dispatcher
    app.state.terminal_service = terminal_service
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_routes_registered():
    from main import app

    routes = {r.path for r in app.routes}
    assert "/api/v1/payments/process" in routes
    assert "/api/v1/payments/refund/{transaction_id}" in routes
    assert "/api/v1/webhooks/{provider}" in routes
    assert "/api/v1/payments/terminal/pair" in routes
    assert "/health" in routes


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["data"] == {"status": "healthy"}
    assert "X-Request-ID" in resp.headers


@pytest.mark.asyncio
async def test_process_card_payment(client):
    resp = await client.post(
        "/api/v1/payments/process",
        json={
            "order_id": "order-1",
            "amount": "19.99",
            "currency": "usd",
            "method": "card",
            "provider": "FakePay",
            "payment_method_id": "tok_visa",
            "idempotency_key": "K-http",
        },
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["code"] == 0
    assert body["data"]["status"] == "succeeded"
    assert body["data"]["currency"] == "USD"
    assert body["data"]["provider"] == "fakepay"

    fetched = await client.get(f"/api/v1/payments/{body['data']['transaction_id']}")
    assert fetched.status_code == 200
    assert fetched.json()["data"]["status"] == "succeeded"
    assert fetched.json()["data"]["idempotency_key"] == "K-http"


@pytest.mark.asyncio
async def test_invalid_amount_is_bad_request(client):
    resp = await client.post(
        "/api/v1/payments/process",
        json={"amount": "0", "method": "cash"},
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "validation_error"


@pytest.mark.asyncio
async def test_missing_provider_token_is_bad_request(client):
    resp = await client.post(
        "/api/v1/payments/process",
        json={"amount": "5", "method": "card", "provider": "fakepay"},
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["field"] == "payment_method_id"


@pytest.mark.asyncio
async def test_unknown_provider_is_failed_result(client):
    resp = await client.post(
        "/api/v1/payments/process",
        json={"amount": "5", "method": "card", "provider": "nope", "payment_method_id": "tok"},
    )

    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "failed"
    assert resp.json()["data"]["error"] == "Unknown provider: nope"


@pytest.mark.asyncio
async def test_transaction_not_found(client):
    resp = await client.get("/api/v1/payments/does-not-exist")

    assert resp.status_code == 404
    assert resp.json()["error"]["type"] == "not_found"


@pytest.mark.asyncio
async def test_list_transactions_paginates(client):
    for order in ("a", "b", "c"):
        await client.post(
            "/api/v1/payments/process",
            json={"order_id": order, "amount": "1", "method": "cash"},
        )

    resp = await client.get("/api/v1/payments", params={"limit": 2, "offset": 0})

    data = resp.json()["data"]
    assert data["total"] == 3
    assert len(data["items"]) == 2
    assert data["limit"] == 2


@pytest.mark.asyncio
async def test_payment_methods(client):
    resp = await client.get("/api/v1/payments/methods")

    ids = [m["id"] for m in resp.json()["data"]]
    assert ids == ["card", "qr", "wallet", "cash"]


@pytest.mark.asyncio
async def test_refund_flow(client, uow_factory):
    tx = await seed_transaction(uow_factory, amount="100.00")

    partial = await client.post(f"/api/v1/payments/refund/{tx.id}", json={"amount": "60"})
    assert partial.status_code == 200
    assert partial.json()["data"]["status"] == "succeeded"

    exceeded = await client.post(f"/api/v1/payments/refund/{tx.id}", json={"amount": "50"})
    assert exceeded.status_code == 400
    assert exceeded.json()["error"]["type"] == "amount_exceeded"

    rest = await client.post(f"/api/v1/payments/refund/{tx.id}")
    assert rest.status_code == 200
    assert rest.json()["data"]["transaction_status"] == "refunded"

    listed = await client.get(f"/api/v1/payments/{tx.id}/refunds")
    assert len(listed.json()["data"]) == 2

    refund_id = partial.json()["data"]["refund_id"]
    single = await client.get(f"/api/v1/payments/refund/{refund_id}")
    assert single.json()["data"]["amount"] == "60.00"


@pytest.mark.asyncio
async def test_refund_of_pending_transaction_is_rejected(client, uow_factory):
    tx = await seed_transaction(uow_factory, status=TransactionStatus.PENDING)

    resp = await client.post(f"/api/v1/payments/refund/{tx.id}")

    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "invalid_state"


@pytest.mark.asyncio
async def test_refund_of_missing_transaction(client):
    resp = await client.post("/api/v1/payments/refund/missing", json={"amount": "1"})

    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_webhook_statuses(client, uow_factory):
    await seed_transaction(uow_factory, status=TransactionStatus.PENDING, provider_transaction_id="fk_w")
    body = json.dumps(
        {"id": "evt_http", "type": "charge.done", "kind": "payment_succeeded", "provider_transaction_id": "fk_w"}
    ).encode()

    missing = await client.post("/api/v1/webhooks/fakepay", content=body)
    assert missing.status_code == 400

    forged = await client.post("/api/v1/webhooks/fakepay", content=body, headers={"x-fake-signature": "00"})
    assert forged.status_code == 403
    assert forged.json()["error"]["type"] == "signature_invalid"

    unknown = await client.post("/api/v1/webhooks/venmo", content=body, headers=sign_fake(body))
    assert unknown.status_code == 404

    ok = await client.post("/api/v1/webhooks/fakepay", content=body, headers=sign_fake(body))
    assert ok.status_code == 200
    assert ok.json()["data"]["applied"] is True

    again = await client.post("/api/v1/webhooks/fakepay", content=body, headers=sign_fake(body))
    assert again.status_code == 200
    assert again.json()["data"]["duplicate"] is True


@pytest.mark.asyncio
async def test_unexpected_error_is_enveloped(orchestrator):
    from main import app

    class _Broken:
        async def process_payment(self, req):
            raise RuntimeError("boom")

    app.dependency_overrides[get_payment_orchestrator] = lambda: _Broken()
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            resp = await c.post("/api/v1/payments/process", json={"amount": "1", "method": "cash"})
    finally:
        app.dependency_overrides.clear()

    assert resp.status_code == 500
    assert resp.json()["message"] == "Internal server error"


@pytest.mark.asyncio
async def test_webhook_for_unrecorded_payment_is_queued(client):
    body = json.dumps(
        {"id": "evt_early", "type": "charge.done", "kind": "payment_succeeded", "provider_transaction_id": "fk_none"}
    ).encode()

    resp = await client.post("/api/v1/webhooks/fakepay", content=body, headers=sign_fake(body))

    assert resp.status_code == 200
    assert resp.json()["message"] == "Webhook queued until the payment is recorded"
    assert resp.json()["data"]["parked"] is True


@pytest.mark.asyncio
async def test_in_flight_idempotency_key_is_conflict():
    from main import app

    class _Busy:
        async def process_payment(self, req):
            raise IdempotencyInProgressException(req.idempotency_key)

    app.dependency_overrides[get_payment_orchestrator] = lambda: _Busy()
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            resp = await c.post(
                "/api/v1/payments/process",
                json={"amount": "1", "method": "cash", "idempotency_key": "K-busy"},
            )
    finally:
        app.dependency_overrides.clear()

    assert resp.status_code == 409
    assert resp.json()["error"]["type"] == "idempotency_in_progress"


@pytest.mark.asyncio
async def test_pair_terminal_upserts(client):
    payload = {"terminal_id": "tmr_http", "provider": "Stripe", "device_type": "wisepos", "location_id": "loc-1"}

    first = await client.post("/api/v1/payments/terminal/pair", json=payload)
    second = await client.post("/api/v1/payments/terminal/pair", json=payload)

    assert first.status_code == 200
    assert first.json()["message"] == "Terminal paired"
    assert first.json()["data"]["provider"] == "stripe"
    assert first.json()["data"]["last_seen_at"] is None
    assert second.json()["data"]["status"] == "active"
    assert second.json()["data"]["last_seen_at"] is not None

    invalid = await client.post("/api/v1/payments/terminal/pair", json={"provider": "stripe"})
    assert invalid.status_code == 400
