"""
Mercado Pago Payments API adapter (REST over httpx).
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
from core.settings import MercadoPagoSettings
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentSignatureError,
    WebhookSignatureMissing,
)
from infrastructure.external.payments.signatures import get_header, verify_mercadopago_signature


SIGNATURE_HEADER = "X-Signature"
REQUEST_ID_HEADER = "X-Request-Id"


class MercadoPagoClient(BasePaymentClient):
    provider = "mercadopago"

    def __init__(
        self,
        config: MercadoPagoSettings,
        *,
        timeouts: Optional[dict[str, float]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url=config.base_url, timeouts=timeouts, transport=transport)
        if not config.access_token:
            raise RuntimeError("PAYMENT__MERCADOPAGO__ACCESS_TOKEN not configured")
        self._config = config

    def _headers(self, idempotency_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.access_token}",
            "X-Idempotency-Key": idempotency_key,
            "Content-Type": "application/json",
        }

    async def charge(self, req: ChargeRequest) -> ChargeResult:
        metadata = dict(req.metadata or {})
        payload: dict[str, Any] = {
            "transaction_amount": float(req.amount),
            "token": req.payment_method_id,
            "installments": 1,
            "description": f"Order {req.order_id}" if req.order_id else "POS payment",
            "external_reference": req.order_id or req.transaction_id,
            "metadata": {"transaction_id": req.transaction_id},
        }
        if metadata.get("payment_method"):
            payload["payment_method_id"] = metadata["payment_method"]
        if metadata.get("payer_email"):
            payload["payer"] = {"email": metadata["payer_email"]}

        try:
            body = await self._request(
                "POST", "/v1/payments", json_body=payload, headers=self._headers(req.idempotency_key)
            )
        except PaymentProviderError as exc:
            return self._declined(exc)

        status = self._map_status(str(body.get("status", "")))
        provider_id = body.get("id")
        self._log("charge_completed", provider_transaction_id=provider_id, status=status)
        return ChargeResult(
            status=status,
            provider_transaction_id=str(provider_id) if provider_id is not None else None,
            decline_reason=body.get("status_detail") if status == "failed" else None,
            raw=body,
        )

    async def refund(self, req: ProviderRefundRequest) -> ProviderRefundResult:
        body = await self._request(
            "POST",
            f"/v1/payments/{req.provider_transaction_id}/refunds",
            json_body={"amount": float(req.amount)},
            headers=self._headers(req.idempotency_key),
        )
        refund_id = body.get("id")
        return ProviderRefundResult(
            status=self._map_refund_status(str(body.get("status", ""))),
            provider_refund_id=str(refund_id) if refund_id is not None else None,
            raw=body,
        )

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        sig = get_header(headers, SIGNATURE_HEADER)
        if not sig:
            raise WebhookSignatureMissing(SIGNATURE_HEADER, provider=self.provider)
        if not self._config.webhook_secret:
            raise PaymentSignatureError("Missing PAYMENT__MERCADOPAGO__WEBHOOK_SECRET", provider=self.provider)
        request_id = get_header(headers, REQUEST_ID_HEADER)
        if not verify_mercadopago_signature(body, sig, self._config.webhook_secret, request_id):
            raise PaymentSignatureError("Invalid Mercado Pago signature", provider=self.provider)

        event = self._load_json(body)
        event_type = str(event.get("type", ""))
        action = event.get("action") or (event.get("data") or {}).get("action")
        data = event.get("data") or {}
        normalized: dict[str, Any] = {}

        # Notifications may omit the status; those are recorded and acknowledged only
        if event_type == "payment" and action in {"payment.updated", "payment.created"}:
            status = data.get("status")
            if status == "approved":
                normalized = {"kind": "payment_succeeded"}
            elif status in {"rejected", "cancelled"}:
                normalized = {"kind": "payment_failed"}
            elif status == "refunded":
                normalized = {"kind": "payment_refunded"}
            if data.get("id") is not None:
                normalized["provider_transaction_id"] = str(data["id"])

        return WebhookEvent(
            id=str(event.get("id") or request_id),
            type=f"{event_type}.{action}" if action else event_type,
            provider=self.provider,
            data=event,
            **normalized,
        )
