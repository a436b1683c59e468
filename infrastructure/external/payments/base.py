"""
Base payment client implementing shared concerns: http, error mapping, logging, status mapping.

Concrete providers subclass and implement charge/refund/parse_webhook. Retrying is
the orchestrator's job: adapters make exactly one provider call per invocation.
"""
from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Optional
from contextlib import asynccontextmanager

import httpx

from core.logging_config import get_logger
from application.dtos.payments import ChargeResult
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
    PaymentSignatureError,
)
from shared.codes.payment_codes import PROVIDER_STATUS_TO_INTERNAL


logger = get_logger(__name__)

# ISO-4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "CLP", "VND", "PYG", "ISK", "UGX"}


class BasePaymentClient:
    provider: str = "base"

    def __init__(
        self,
        *,
        base_url: str = "",
        timeouts: Optional[dict[str, float]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url
        self._timeouts_cfg = timeouts or {"connect": 1.0, "read": 5.0, "write": 5.0, "total": 10.0}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            pool=self._timeouts_cfg["total"],
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self.timeouts,
                transport=self._transport,
            )
        try:
            yield self._client
        finally:
            # Keep open for reuse; explicit aclose() will close.
            ...

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        data: Optional[dict[str, str]] = None,
        auth: Optional[tuple[str, str]] = None,
    ) -> dict[str, Any]:
        """Single HTTP call; transport errors, 429 and 5xx raise PaymentRecoverableError."""
        async with self.client() as client:
            try:
                resp = await client.request(
                    method,
                    path,
                    json=json_body,
                    data=data,
                    headers=headers,
                    auth=auth,
                )
            except httpx.TimeoutException as exc:
                raise PaymentRecoverableError(
                    f"{self.provider} request timed out", provider=self.provider, provider_code="timeout"
                ) from exc
            except httpx.TransportError as exc:
                raise PaymentRecoverableError(
                    f"{self.provider} transport error: {exc}", provider=self.provider, provider_code="transport"
                ) from exc

        body = self._decode(resp)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise PaymentRecoverableError(
                f"{self.provider} returned HTTP {resp.status_code}",
                provider=self.provider,
                provider_code=str(resp.status_code),
                details={"body": body},
            )
        if resp.status_code >= 400:
            raise PaymentProviderError(
                self._error_message(body) or f"{self.provider} returned HTTP {resp.status_code}",
                provider=self.provider,
                provider_code=str(resp.status_code),
                details={"body": body},
            )
        return body

    @staticmethod
    def _decode(resp: httpx.Response) -> dict[str, Any]:
        if not resp.content:
            return {}
        try:
            body = resp.json()
        except ValueError:
            return {"text": resp.text}
        return body if isinstance(body, dict) else {"data": body}

    def _error_message(self, body: dict[str, Any]) -> Optional[str]:
        """Provider-specific human-readable message from an error body."""
        return body.get("message") if isinstance(body.get("message"), str) else None

    def _declined(self, exc: PaymentProviderError) -> ChargeResult:
        """A definitive 4xx on charge is a decline, not a retryable failure."""
        body = (exc.details or {}).get("body") or {}
        self._log("charge_declined", reason=exc.message, provider_code=(exc.details or {}).get("provider_code"))
        return ChargeResult(status="failed", decline_reason=exc.message, raw=body)

    def _load_json(self, body: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise PaymentSignatureError("Webhook body is not valid JSON", provider=self.provider) from exc
        if not isinstance(payload, dict):
            raise PaymentSignatureError("Webhook body must be a JSON object", provider=self.provider)
        return payload

    # Helpers
    @staticmethod
    def _to_minor(amount: Decimal, currency: str) -> int:
        exponent = 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2
        return int((amount * (Decimal(10) ** exponent)).to_integral_value())

    @staticmethod
    def _to_major_str(amount: Decimal, currency: str) -> str:
        if currency.upper() in ZERO_DECIMAL_CURRENCIES:
            return str(amount.quantize(Decimal("1")))
        return str(amount.quantize(Decimal("0.01")))

    def _map_status(self, provider_status: str, *, table: Optional[str] = None) -> str:
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(table or self.provider, {})
        return mapping.get(provider_status, "pending")

    def _map_refund_status(self, provider_status: str) -> str:
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(f"{self.provider}_refund", {})
        return mapping.get(provider_status, "processing")

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
