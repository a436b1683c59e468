"""
Stripe PaymentIntents adapter using the official stripe-python SDK.

Notes on SDK usage:
- The SDK is synchronous; calls run in a worker thread via ``asyncio.to_thread``.
- Idempotency keys are supplied through the ``idempotency_key`` request option and
  the API key per request.
- ``stripe.max_network_retries`` is the one module-level setting touched: it is
  forced to 0 process-wide because the orchestrator owns the retry policy.
- Webhook signatures are checked with ``stripe.WebhookSignature.verify_header``.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import stripe

from application.dtos.payments import (
    ChargeRequest,
    ChargeResult,
    ProviderRefundRequest,
    ProviderRefundResult,
    WebhookEvent,
)
from core.settings import StripeSettings
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
    PaymentSignatureError,
    WebhookSignatureMissing,
)
from infrastructure.external.payments.signatures import get_header


SIGNATURE_HEADER = "Stripe-Signature"


def _as_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    return json.loads(json.dumps(obj, default=str))


class StripeClient(BasePaymentClient):
    provider = "stripe"

    def __init__(
        self,
        config: StripeSettings,
        *,
        timeouts: Optional[dict[str, float]] = None,
        webhook_tolerance: Optional[int] = 300,
    ):
        super().__init__(timeouts=timeouts)
        if not config.secret_key:
            raise RuntimeError("PAYMENT__STRIPE__SECRET_KEY not configured")
        self._secret_key = config.secret_key
        self._webhook_secret = config.webhook_secret
        self._webhook_tolerance = webhook_tolerance
        stripe.max_network_retries = 0

    def _translate(self, exc: Exception) -> Exception:
        if isinstance(exc, (stripe.RateLimitError, stripe.APIConnectionError, stripe.APIError)):
            return PaymentRecoverableError(str(exc), provider=self.provider, provider_code=getattr(exc, "code", None))
        return PaymentProviderError(str(exc), provider=self.provider, provider_code=getattr(exc, "code", None))

    async def charge(self, req: ChargeRequest) -> ChargeResult:
        metadata = {k: str(v) for k, v in (req.metadata or {}).items()}
        metadata["transaction_id"] = req.transaction_id
        if req.order_id:
            metadata["order_id"] = req.order_id

        try:
            pi = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=self._to_minor(req.amount, req.currency),
                currency=req.currency.lower(),
                payment_method=req.payment_method_id,
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                metadata=metadata,
                api_key=self._secret_key,
                idempotency_key=req.idempotency_key,
            )
        except (stripe.CardError, stripe.InvalidRequestError) as exc:
            self._log("charge_declined", reason=getattr(exc, "user_message", None) or str(exc))
            return ChargeResult(
                status="failed",
                decline_reason=getattr(exc, "user_message", None) or str(exc),
                raw=_as_dict(getattr(exc, "json_body", None)),
            )
        except stripe.StripeError as exc:
            raise self._translate(exc) from exc

        raw = _as_dict(pi)
        status = self._map_status(str(raw.get("status", "")))
        self._log("charge_completed", provider_transaction_id=raw.get("id"), status=status)
        return ChargeResult(
            status=status,
            provider_transaction_id=str(raw.get("id")),
            requires_action=raw.get("next_action") if status == "requires_action" else None,
            decline_reason=((raw.get("last_payment_error") or {}).get("message") if status == "failed" else None),
            raw=raw,
        )

    async def refund(self, req: ProviderRefundRequest) -> ProviderRefundResult:
        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create,
                payment_intent=req.provider_transaction_id,
                amount=self._to_minor(req.amount, req.currency),
                metadata={"reason": req.reason or ""},
                api_key=self._secret_key,
                idempotency_key=req.idempotency_key,
            )
        except stripe.StripeError as exc:
            raise self._translate(exc) from exc

        raw = _as_dict(refund)
        status = self._map_status(str(raw.get("status", "")), table="stripe_refund")
        return ProviderRefundResult(
            status=status if status != "pending" else "processing",
            provider_refund_id=str(raw.get("id")),
            raw=raw,
        )

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        sig = get_header(headers, SIGNATURE_HEADER)
        if not sig:
            raise WebhookSignatureMissing(SIGNATURE_HEADER, provider=self.provider)
        if not self._webhook_secret:
            raise PaymentSignatureError("Missing PAYMENT__STRIPE__WEBHOOK_SECRET", provider=self.provider)
        try:
            stripe.WebhookSignature.verify_header(
                body.decode("utf-8"),
                sig,
                self._webhook_secret,
                tolerance=self._webhook_tolerance,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            raise PaymentSignatureError("Invalid Stripe signature", provider=self.provider) from exc

        event = self._load_json(body)
        event_type = str(event.get("type", ""))
        obj = (event.get("data") or {}).get("object") or {}
        normalized: dict[str, Any] = {}

        if event_type == "payment_intent.succeeded":
            normalized = {"kind": "payment_succeeded", "provider_transaction_id": obj.get("id")}
        elif event_type == "payment_intent.payment_failed":
            normalized = {"kind": "payment_failed", "provider_transaction_id": obj.get("id")}
        elif event_type == "charge.refunded":
            refunds = (obj.get("refunds") or {}).get("data") or []
            normalized = {
                "kind": "payment_refunded" if obj.get("refunded") else "refund_succeeded",
                "provider_transaction_id": obj.get("payment_intent"),
                "provider_refund_id": refunds[0].get("id") if refunds else None,
            }
        elif event_type in {"refund.updated", "charge.refund.updated"} and obj.get("status") == "succeeded":
            normalized = {
                "kind": "refund_succeeded",
                "provider_transaction_id": obj.get("payment_intent"),
                "provider_refund_id": obj.get("id"),
            }

        return WebhookEvent(
            id=str(event.get("id")),
            type=event_type,
            provider=self.provider,
            order_id=(obj.get("metadata") or {}).get("order_id"),
            data=event,
            **normalized,
        )
