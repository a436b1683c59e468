"""
Square Payments API adapter (REST over httpx).

Square has no timestamp in its webhook signature, so replay protection relies on
the processed-event ledger keyed by ``event_id``.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx

from application.dtos.payments import (
    ChargeRequest,
    ChargeResult,
    ProviderRefundRequest,
    ProviderRefundResult,
    WebhookEvent,
)
from core.settings import SquareSettings
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentSignatureError,
    WebhookSignatureMissing,
)
from infrastructure.external.payments.signatures import get_header, verify_square_signature


SIGNATURE_HEADER = "X-Square-HmacSha256-Signature"
LEGACY_SIGNATURE_HEADER = "X-Square-Signature"
# Square rejects idempotency keys longer than 45 characters
IDEMPOTENCY_KEY_MAX = 45


class SquareClient(BasePaymentClient):
    provider = "square"

    def __init__(
        self,
        config: SquareSettings,
        *,
        timeouts: Optional[dict[str, float]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url=config.base_url, timeouts=timeouts, transport=transport)
        if not config.access_token:
            raise RuntimeError("PAYMENT__SQUARE__ACCESS_TOKEN not configured")
        self._config = config

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.access_token}",
            "Square-Version": self._config.api_version,
            "Content-Type": "application/json",
        }

    def _error_message(self, body: dict[str, Any]) -> Optional[str]:
        errors = body.get("errors") or []
        if errors and isinstance(errors[0], dict):
            first = errors[0]
            return first.get("detail") or first.get("code")
        return None

    async def charge(self, req: ChargeRequest) -> ChargeResult:
        payload: dict[str, Any] = {
            "source_id": req.payment_method_id,
            "idempotency_key": req.idempotency_key[:IDEMPOTENCY_KEY_MAX],
            "amount_money": {
                "amount": self._to_minor(req.amount, req.currency),
                "currency": req.currency,
            },
            "reference_id": req.transaction_id,
            "autocomplete": True,
        }
        if self._config.location_id:
            payload["location_id"] = self._config.location_id
        if req.order_id:
            payload["note"] = f"order {req.order_id}"

        try:
            body = await self._request("POST", "/v2/payments", json_body=payload, headers=self._headers())
        except PaymentProviderError as exc:
            return self._declined(exc)

        payment = body.get("payment") or {}
        status = self._map_status(str(payment.get("status", "")))
        self._log("charge_completed", provider_transaction_id=payment.get("id"), status=status)
        return ChargeResult(
            status=status,
            provider_transaction_id=payment.get("id"),
            decline_reason=self._error_message(body) if status == "failed" else None,
            raw=body,
        )

    async def refund(self, req: ProviderRefundRequest) -> ProviderRefundResult:
        payload: dict[str, Any] = {
            "idempotency_key": req.idempotency_key[:IDEMPOTENCY_KEY_MAX],
            "payment_id": req.provider_transaction_id,
            "amount_money": {
                "amount": self._to_minor(req.amount, req.currency),
                "currency": req.currency,
            },
        }
        if req.reason:
            payload["reason"] = req.reason[:192]

        body = await self._request("POST", "/v2/refunds", json_body=payload, headers=self._headers())
        refund = body.get("refund") or {}
        return ProviderRefundResult(
            status=self._map_refund_status(str(refund.get("status", ""))),
            provider_refund_id=refund.get("id"),
            raw=body,
        )

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        sig = get_header(headers, SIGNATURE_HEADER, LEGACY_SIGNATURE_HEADER)
        if not sig:
            raise WebhookSignatureMissing(SIGNATURE_HEADER, provider=self.provider)
        key = self._config.webhook_signature_key
        url = self._config.notification_url
        if not key or not url:
            raise PaymentSignatureError(
                "Square webhook signature key or notification URL not configured",
                provider=self.provider,
            )
        if not verify_square_signature(body, sig, key, url):
            raise PaymentSignatureError("Invalid Square signature", provider=self.provider)

        event = self._load_json(body)
        event_type = str(event.get("type", ""))
        obj = (event.get("data") or {}).get("object") or {}
        normalized: dict[str, Any] = {}

        if event_type in {"payment.created", "payment.updated"}:
            payment = obj.get("payment") or {}
            status = payment.get("status")
            if status == "COMPLETED":
                normalized = {"kind": "payment_succeeded"}
            elif status in {"CANCELED", "FAILED"}:
                normalized = {"kind": "payment_failed"}
            normalized["provider_transaction_id"] = payment.get("id")
        elif event_type in {"refund.created", "refund.updated"}:
            refund = obj.get("refund") or {}
            if refund.get("status") == "COMPLETED":
                normalized = {"kind": "refund_succeeded"}
            normalized["provider_transaction_id"] = refund.get("payment_id")
            normalized["provider_refund_id"] = refund.get("id")

        return WebhookEvent(
            id=str(event.get("event_id") or event.get("id")),
            type=event_type,
            provider=self.provider,
            data=event,
            **normalized,
        )
