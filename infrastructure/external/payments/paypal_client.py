"""
PayPal Orders v2 adapter (REST over httpx) for wallet payments.

``payment_method_id`` is the PayPal order id the buyer approved in the wallet;
charging captures that order. Webhook authenticity is only checked against the
configured webhook id (see ``verify_paypal_webhook_id``).
"""
from __future__ import annotations

import time
from typing import Any, Optional

import httpx

from application.dtos.payments import (
    ChargeRequest,
    ChargeResult,
    ProviderRefundRequest,
    ProviderRefundResult,
    WebhookEvent,
)
from core.settings import PayPalSettings
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentSignatureError,
    WebhookSignatureMissing,
)
from infrastructure.external.payments.signatures import (
    PAYPAL_TRANSMISSION_HEADERS,
    get_header,
    verify_paypal_webhook_id,
)


class PayPalClient(BasePaymentClient):
    provider = "paypal"

    def __init__(
        self,
        config: PayPalSettings,
        *,
        timeouts: Optional[dict[str, float]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url=config.base_url, timeouts=timeouts, transport=transport)
        if not config.client_id or not config.client_secret:
            raise RuntimeError("PAYMENT__PAYPAL__CLIENT_ID / CLIENT_SECRET not configured")
        self._config = config
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def _error_message(self, body: dict[str, Any]) -> Optional[str]:
        details = body.get("details") or []
        if details and isinstance(details[0], dict):
            return details[0].get("description") or details[0].get("issue")
        return body.get("message")

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        body = await self._request(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self._config.client_id or "", self._config.client_secret or ""),
        )
        self._token = body["access_token"]
        # refresh a minute before expiry
        self._token_expires_at = time.monotonic() + max(int(body.get("expires_in", 0)) - 60, 0)
        return self._token

    async def _headers(self, request_id: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {await self._access_token()}",
            "PayPal-Request-Id": request_id,
            "Content-Type": "application/json",
        }

    async def charge(self, req: ChargeRequest) -> ChargeResult:
        headers = await self._headers(req.idempotency_key)
        try:
            body = await self._request(
                "POST",
                f"/v2/checkout/orders/{req.payment_method_id}/capture",
                json_body={},
                headers=headers,
            )
        except PaymentProviderError as exc:
            return self._declined(exc)

        captures = []
        for unit in body.get("purchase_units") or []:
            captures.extend((unit.get("payments") or {}).get("captures") or [])
        capture = captures[0] if captures else {}
        status = self._map_status(str(capture.get("status") or body.get("status", "")))
        requires_action = None
        if status == "requires_action":
            links = [l for l in body.get("links") or [] if l.get("rel") == "payer-action"]
            requires_action = {"type": "redirect", "url": links[0].get("href")} if links else {}
        self._log("charge_completed", provider_transaction_id=capture.get("id"), status=status)
        return ChargeResult(
            status=status,
            provider_transaction_id=capture.get("id") or body.get("id"),
            requires_action=requires_action,
            decline_reason=(capture.get("status_details") or {}).get("reason") if status == "failed" else None,
            raw=body,
        )

    async def refund(self, req: ProviderRefundRequest) -> ProviderRefundResult:
        payload: dict[str, Any] = {
            "amount": {
                "value": self._to_major_str(req.amount, req.currency),
                "currency_code": req.currency,
            },
        }
        if req.reason:
            payload["note_to_payer"] = req.reason[:255]
        body = await self._request(
            "POST",
            f"/v2/payments/captures/{req.provider_transaction_id}/refund",
            json_body=payload,
            headers=await self._headers(req.idempotency_key),
        )
        return ProviderRefundResult(
            status=self._map_refund_status(str(body.get("status", ""))),
            provider_refund_id=body.get("id"),
            raw=body,
        )

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        for name in PAYPAL_TRANSMISSION_HEADERS:
            if not get_header(headers, name):
                raise WebhookSignatureMissing(name, provider=self.provider)
        event = self._load_json(body)
        if not self._config.webhook_id:
            raise PaymentSignatureError("Missing PAYMENT__PAYPAL__WEBHOOK_ID", provider=self.provider)
        if not verify_paypal_webhook_id(headers, event, self._config.webhook_id):
            raise PaymentSignatureError("PayPal webhook id mismatch", provider=self.provider)

        event_type = str(event.get("event_type", ""))
        resource = event.get("resource") or {}
        normalized: dict[str, Any] = {}

        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            normalized = {"kind": "payment_succeeded", "provider_transaction_id": resource.get("id")}
        elif event_type == "PAYMENT.CAPTURE.DENIED":
            normalized = {"kind": "payment_failed", "provider_transaction_id": resource.get("id")}
        elif event_type == "PAYMENT.CAPTURE.REFUNDED":
            # resource is the refund; its "up" link points at the capture
            capture_id = None
            for link in resource.get("links") or []:
                if link.get("rel") == "up" and link.get("href"):
                    capture_id = link["href"].rstrip("/").rsplit("/", 1)[-1]
            normalized = {
                "kind": "refund_succeeded" if resource.get("status") == "COMPLETED" else "ignored",
                "provider_transaction_id": capture_id,
                "provider_refund_id": resource.get("id"),
            }

        return WebhookEvent(
            id=str(event.get("id") or get_header(headers, "PAYPAL-TRANSMISSION-ID")),
            type=event_type,
            provider=self.provider,
            data=event,
            **normalized,
        )
