import json
from decimal import Decimal

import httpx
import pytest

from application.services.notifications import notify_order, record_cash
from core.settings import CollaboratorSettings
from infrastructure.external.orders import (
    CollaboratorError,
    HttpCashierClient,
    HttpOrdersClient,
    LoggingOrdersGateway,
    build_orders_gateway,
)
from tests.support import RecordingOrders


@pytest.mark.asyncio
async def test_orders_client_patches_payment_status():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    client = HttpOrdersClient(
        "http://orders.local/api", api_key="k", transport=httpx.MockTransport(handler)
    )
    await client.mark_order_refunded("order-7")
    await client.aclose()

    assert seen[0].method == "PATCH"
    assert seen[0].url.path == "/api/orders/order-7/payment-status"
    assert json.loads(seen[0].content) == {"payment_status": "refunded"}
    assert seen[0].headers["Authorization"] == "Bearer k"


@pytest.mark.asyncio
async def test_orders_client_retries_unavailable_then_succeeds():
    responses = [httpx.Response(503), httpx.Response(200, json={})]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    client = HttpOrdersClient(
        "http://orders.local", retry_delay=0, transport=httpx.MockTransport(handler)
    )
    await client.mark_order_paid("order-1")

    assert responses == []


@pytest.mark.asyncio
async def test_orders_client_raises_on_client_error():
    client = HttpOrdersClient(
        "http://orders.local", retry_delay=0, transport=httpx.MockTransport(lambda r: httpx.Response(404))
    )

    with pytest.raises(CollaboratorError):
        await client.mark_order_payment_failed("order-1")


@pytest.mark.asyncio
async def test_cashier_client_posts_movement():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={})

    client = HttpCashierClient("http://cashier.local", transport=httpx.MockTransport(handler))
    await client.record_cash_movement("drawer-1", Decimal("12.50"))

    assert seen[0].method == "POST"
    assert seen[0].url.path == "/cash-sessions/drawer-1/movements"
    assert json.loads(seen[0].content) == {"type": "sale", "amount": "12.50"}


def test_gateway_factory_without_base_url_logs_only():
    assert isinstance(build_orders_gateway(CollaboratorSettings()), LoggingOrdersGateway)
    assert isinstance(build_orders_gateway(CollaboratorSettings(base_url="http://o")), HttpOrdersClient)


@pytest.mark.asyncio
async def test_notification_failures_are_swallowed():
    orders = RecordingOrders(fail=True)

    await notify_order(orders, "order-1", "paid")
    await notify_order(orders, None, "paid")
    await record_cash(None, "drawer-1", Decimal("1"))

    assert orders.calls == [("paid", "order-1")]
