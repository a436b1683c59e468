"""
API依赖项 - 从应用状态装配编排服务

组合根（main.py lifespan）把 provider 注册表、幂等台账与协作方客户端挂到
app.state 上；路由通过这些依赖拿到编排服务，测试可用 dependency_overrides 替换。
"""
from fastapi import Request

from application.services.payment_service import PaymentOrchestrator
from application.services.refund_service import RefundOrchestrator
from application.services.terminal_service import TerminalService
from application.services.webhook_service import WebhookDispatcher


async def get_payment_orchestrator(request: Request) -> PaymentOrchestrator:
    return request.app.state.payment_orchestrator


async def get_refund_orchestrator(request: Request) -> RefundOrchestrator:
    return request.app.state.refund_orchestrator


async def get_webhook_dispatcher(request: Request) -> WebhookDispatcher:
    return request.app.state.webhook_dispatcher


async def get_terminal_service(request: Request) -> TerminalService:
    return request.app.state.terminal_service
