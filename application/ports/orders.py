"""
Collaborator ports consumed by the payment core.

The payment core only reports terminal outcomes; it never reads or writes
any other order or cash-session field.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Protocol, runtime_checkable


@runtime_checkable
class OrdersGateway(Protocol):
    async def mark_order_paid(self, order_id: str) -> None: ...

    async def mark_order_payment_failed(self, order_id: str) -> None: ...

    async def mark_order_refunded(self, order_id: str) -> None: ...


@runtime_checkable
class CashierGateway(Protocol):
    async def record_cash_movement(self, session_id: str, amount: Decimal) -> None: ...
