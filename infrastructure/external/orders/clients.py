"""
Orders / Cashier collaborator clients

HTTP 实现通过 httpx 调用订单服务与收银会话服务；未配置 base_url 时使用仅记录日志的实现。
协作方调用是尽力而为：失败会被记录，但不会改变支付结果。
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.logging_config import get_logger
from core.settings import CollaboratorSettings


logger = get_logger(__name__)

RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class CollaboratorError(Exception):
    """协作方调用失败"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class _RetryableStatus(CollaboratorError):
    pass


class _HttpCollaborator:
    """共享的 httpx 客户端、认证头与有限重试"""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        max_retries: int = 2,
        retry_delay: float = 0.2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.default_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "pos-payments-core/1.0",
        }
        if api_key:
            self.default_headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers=self.default_headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, endpoint: str, payload: dict[str, Any]) -> None:
        async def _send_once() -> None:
            resp = await self._client.request(method, endpoint, json=payload)
            if resp.status_code in RETRY_STATUS_CODES:
                raise _RetryableStatus(f"{method} {endpoint} returned {resp.status_code}", resp.status_code)
            if resp.status_code >= 400:
                raise CollaboratorError(f"{method} {endpoint} returned {resp.status_code}", resp.status_code)

        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_delay, min=self.retry_delay, max=self.retry_delay * 8),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError, _RetryableStatus)),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await _send_once()
        except httpx.HTTPError as exc:
            raise CollaboratorError(f"{method} {endpoint} failed: {exc}") from exc


class HttpOrdersClient(_HttpCollaborator):
    """PATCH /orders/{id}/payment-status"""

    async def _set_payment_status(self, order_id: str, status: str) -> None:
        await self._send("PATCH", f"/orders/{order_id}/payment-status", {"payment_status": status})
        logger.info("order_payment_status_updated", order_id=order_id, payment_status=status)

    async def mark_order_paid(self, order_id: str) -> None:
        await self._set_payment_status(order_id, "paid")

    async def mark_order_payment_failed(self, order_id: str) -> None:
        await self._set_payment_status(order_id, "failed")

    async def mark_order_refunded(self, order_id: str) -> None:
        await self._set_payment_status(order_id, "refunded")


class HttpCashierClient(_HttpCollaborator):
    """POST /cash-sessions/{id}/movements"""

    async def record_cash_movement(self, session_id: str, amount: Decimal) -> None:
        await self._send(
            "POST",
            f"/cash-sessions/{session_id}/movements",
            {"type": "sale", "amount": str(amount)},
        )
        logger.info("cash_movement_recorded", session_id=session_id, amount=str(amount))


class LoggingOrdersGateway:
    async def mark_order_paid(self, order_id: str) -> None:
        logger.info("order_mark_paid", order_id=order_id)

    async def mark_order_payment_failed(self, order_id: str) -> None:
        logger.info("order_mark_payment_failed", order_id=order_id)

    async def mark_order_refunded(self, order_id: str) -> None:
        logger.info("order_mark_refunded", order_id=order_id)

    async def aclose(self) -> None:
        return None


class LoggingCashierGateway:
    async def record_cash_movement(self, session_id: str, amount: Decimal) -> None:
        logger.info("cash_movement", session_id=session_id, amount=str(amount))

    async def aclose(self) -> None:
        return None


def build_orders_gateway(cfg: CollaboratorSettings, *, timeout: float = 5.0):
    if cfg.base_url:
        return HttpOrdersClient(cfg.base_url, api_key=cfg.api_key, timeout=timeout)
    return LoggingOrdersGateway()


def build_cashier_gateway(cfg: CollaboratorSettings, *, timeout: float = 5.0):
    if cfg.base_url:
        return HttpCashierClient(cfg.base_url, api_key=cfg.api_key, timeout=timeout)
    return LoggingCashierGateway()
