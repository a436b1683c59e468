"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional, Literal
from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic.types import condecimal

from domain.payment.entity import PaymentMethod

# Common ISO-4217 currencies (extend as needed)
ISO_4217 = {
    "USD", "EUR", "GBP", "CNY", "JPY", "KRW", "HKD", "AUD", "CAD", "SGD",
    "MXN", "BRL", "ARS", "CLP", "COP", "PEN", "UYU",
}

ChargeStatus = Literal["succeeded", "requires_action", "pending", "failed"]
ProviderRefundStatus = Literal["succeeded", "processing", "failed"]


def _normalize_currency(v: str) -> str:
    u = (v or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    if u not in ISO_4217:
        raise ValueError("unsupported currency")
    return u


class ProcessPaymentRequest(BaseModel):
    order_id: Optional[str] = None
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    currency: str = Field(default="USD")
    method: PaymentMethod
    provider: Optional[str] = None
    payment_method_id: Optional[str] = None  # opaque provider-side token
    idempotency_key: Optional[str] = None
    tip: Optional[condecimal(ge=0)] = None  # type: ignore[valid-type]
    metadata: Optional[dict[str, Any]] = None

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency(cls, v: str) -> str:
        return _normalize_currency(v)

    @field_validator("provider")
    @classmethod
    def _lower_provider(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower() if v else v


class PaymentResult(BaseModel):
    transaction_id: str
    status: ChargeStatus
    amount: Decimal
    currency: str
    provider: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    error: Optional[str] = None
    requires_action: Optional[dict[str, Any]] = None  # e.g. 3DS next_action


class RefundRequest(BaseModel):
    transaction_id: str
    amount: Optional[condecimal(gt=0)] = None  # type: ignore[valid-type]
    reason: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class RefundPayload(BaseModel):
    """HTTP body for POST /payments/refund/{transaction_id}"""
    amount: Optional[condecimal(gt=0)] = None  # type: ignore[valid-type]
    reason: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class RefundResult(BaseModel):
    refund_id: str
    transaction_id: str
    status: Literal["pending", "processing", "succeeded", "failed"]
    amount: Decimal
    provider_refund_id: Optional[str] = None
    transaction_status: Optional[str] = None
    error: Optional[str] = None


class ChargeRequest(BaseModel):
    """What a provider adapter receives for a single charge attempt."""
    transaction_id: str
    amount: Decimal
    currency: str
    payment_method_id: Optional[str] = None
    idempotency_key: str
    order_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChargeResult(BaseModel):
    status: ChargeStatus
    provider_transaction_id: Optional[str] = None
    requires_action: Optional[dict[str, Any]] = None
    decline_reason: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class ProviderRefundRequest(BaseModel):
    provider_transaction_id: str
    amount: Decimal
    currency: str
    idempotency_key: str
    reason: Optional[str] = None


class ProviderRefundResult(BaseModel):
    status: ProviderRefundStatus
    provider_refund_id: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


WebhookKind = Literal[
    "payment_succeeded",
    "payment_failed",
    "payment_refunded",
    "refund_succeeded",
    "ignored",
]


class WebhookEvent(BaseModel):
    id: str
    type: str
    provider: str
    kind: WebhookKind = "ignored"
    provider_transaction_id: Optional[str] = None
    provider_refund_id: Optional[str] = None
    order_id: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(arbitrary_types_allowed=True)


class WebhookOutcome(BaseModel):
    id: str
    type: str
    provider: str
    applied: bool = False
    duplicate: bool = False
    # target row not stored yet; kept for replay
    parked: bool = False
    transaction_id: Optional[str] = None
    transaction_status: Optional[str] = None


class TransactionView(BaseModel):
    id: str
    order_id: Optional[str] = None
    method: str
    provider: Optional[str] = None
    amount: Decimal
    tip_amount: Decimal = Decimal("0")
    currency: str
    status: str
    provider_transaction_id: Optional[str] = None
    idempotency_key: str
    failure_reason: Optional[str] = None
    provider_response: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[Any] = None
    updated_at: Optional[Any] = None

    @classmethod
    def from_entity(cls, tx) -> "TransactionView":
        return cls(
            id=tx.id,
            order_id=tx.order_id,
            method=tx.method.value,
            provider=tx.provider,
            amount=tx.amount,
            tip_amount=tx.tip_amount,
            currency=tx.currency,
            status=tx.status.value,
            provider_transaction_id=tx.provider_transaction_id,
            idempotency_key=tx.idempotency_key,
            failure_reason=tx.failure_reason,
            provider_response=tx.provider_response or {},
            metadata=tx.metadata or {},
            created_at=tx.created_at,
            updated_at=tx.updated_at,
        )


class RefundView(BaseModel):
    id: str
    transaction_id: str
    amount: Decimal
    status: str
    reason: Optional[str] = None
    provider_refund_id: Optional[str] = None
    failure_reason: Optional[str] = None
    provider_response: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[Any] = None
    processed_at: Optional[Any] = None

    @classmethod
    def from_entity(cls, refund) -> "RefundView":
        return cls(
            id=refund.id,
            transaction_id=refund.transaction_id,
            amount=refund.amount,
            status=refund.status.value,
            reason=refund.reason,
            provider_refund_id=refund.provider_refund_id,
            failure_reason=refund.failure_reason,
            provider_response=refund.provider_response or {},
            created_at=refund.created_at,
            processed_at=refund.processed_at,
        )


class PaymentMethodOption(BaseModel):
    id: str
    name: str
    providers: list[str]


class PairTerminalRequest(BaseModel):
    terminal_id: str = Field(min_length=1, max_length=100)
    provider: str = Field(min_length=1, max_length=50)
    device_type: Optional[str] = Field(default=None, max_length=50)
    location_id: Optional[str] = Field(default=None, max_length=100)

    @field_validator("provider")
    @classmethod
    def _lower_provider(cls, v: str) -> str:
        return v.strip().lower()


class TerminalView(BaseModel):
    terminal_id: str
    provider: str
    device_type: Optional[str] = None
    location_id: Optional[str] = None
    status: str
    created_at: Optional[Any] = None
    last_seen_at: Optional[Any] = None

    @classmethod
    def from_entity(cls, terminal) -> "TerminalView":
        return cls(
            terminal_id=terminal.terminal_id,
            provider=terminal.provider,
            device_type=terminal.device_type,
            location_id=terminal.location_id,
            status=terminal.status.value,
            created_at=terminal.created_at,
            last_seen_at=terminal.last_seen_at,
        )
