"""
Request ID 中间件
生成或透传追踪ID，并绑定到 structlog 上下文，供支付日志与错误响应关联
"""
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

import structlog


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Request ID 追踪中间件

    webhook 请求额外绑定渠道名，便于按渠道检索签名失败与重复投递日志
    """

    HEADER_NAME = "X-Request-ID"
    WEBHOOK_PREFIX = "/api/v1/webhooks/"

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(self.HEADER_NAME) or str(uuid.uuid4())
        client_ip = self._get_client_ip(request)

        request.state.request_id = request_id
        request.state.client_ip = client_ip

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            client_ip=client_ip,
            method=request.method,
            path=request.url.path,
        )
        if request.url.path.startswith(self.WEBHOOK_PREFIX):
            structlog.contextvars.bind_contextvars(
                webhook_provider=request.url.path[len(self.WEBHOOK_PREFIX):].strip("/").lower(),
            )

        response = await call_next(request)
        response.headers[self.HEADER_NAME] = request_id
        return response

    def _get_client_ip(self, request: Request) -> str:
        """X-Forwarded-For 首个地址 > X-Real-IP > 直连地址"""
        x_forwarded_for = request.headers.get("X-Forwarded-For")
        if x_forwarded_for:
            return x_forwarded_for.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip
        return request.client.host if request.client else "unknown"
