"""
FastAPI应用主入口
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.routes import payments as payments_routes
from api.routes import webhooks as webhooks_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from application.services.payment_service import PaymentOrchestrator
from application.services.refund_service import RefundOrchestrator
from application.services.terminal_service import TerminalService
from application.services.webhook_service import WebhookDispatcher
from core.config import settings
from core.settings import payment_settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.logging_config import get_logger, configure_logging
from infrastructure.database import create_tables
from infrastructure.external.orders import build_cashier_gateway, build_orders_gateway
from infrastructure.external.payments import build_provider_registry
from infrastructure.idempotency import build_idempotency_ledger
from infrastructure.repositories.payment_repository import DuplicateTerminalError, DuplicateWebhookEventError
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


# 初始化日志：在入口处显式配置，避免模块导入时的副作用
configure_logging()
logger = get_logger(__name__)


def init_payment_services(app: FastAPI) -> None:
    """组合根：构建 provider 注册表、幂等台账、协作方与编排服务并挂到 app.state"""
    registry = build_provider_registry(payment_settings)
    ledger = build_idempotency_ledger(payment_settings.idempotency.backend)
    timeout = payment_settings.timeouts.total
    orders = build_orders_gateway(payment_settings.orders, timeout=timeout)
    cashier = build_cashier_gateway(payment_settings.cashier, timeout=timeout)

    app.state.provider_registry = registry
    app.state.idempotency_ledger = ledger
    app.state.orders_gateway = orders
    app.state.cashier_gateway = cashier
    dispatcher = WebhookDispatcher(
        uow_factory=SQLAlchemyUnitOfWork,
        providers=registry,
        orders=orders,
        dedupe_events=payment_settings.webhook.dedupe_events,
        duplicate_errors=(DuplicateWebhookEventError,),
    )
    app.state.webhook_dispatcher = dispatcher
    # 编排服务写入渠道ID后重放提前到达的 webhook
    app.state.payment_orchestrator = PaymentOrchestrator(
        uow_factory=SQLAlchemyUnitOfWork,
        providers=registry,
        ledger=ledger,
        orders=orders,
        cashier=cashier,
        webhook_replayer=dispatcher,
    )
    app.state.refund_orchestrator = RefundOrchestrator(
        uow_factory=SQLAlchemyUnitOfWork,
        providers=registry,
        orders=orders,
        webhook_replayer=dispatcher,
    )
    app.state.terminal_service = TerminalService(
        uow_factory=SQLAlchemyUnitOfWork,
        duplicate_errors=(DuplicateTerminalError,),
    )
    logger.info("payment_services_initialized", providers=registry.names())


async def shutdown_payment_services(app: FastAPI) -> None:
    for name in ("provider_registry", "idempotency_ledger", "orders_gateway", "cashier_gateway"):
        resource = getattr(app.state, name, None)
        close = getattr(resource, "aclose", None)
        if callable(close):
            try:
                await close()
            except Exception as exc:
                logger.warning("resource_close_failed", resource=name, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时创建数据库表（仅开发环境）。生产应使用 Alembic 迁移
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", message="Database tables created (development)")
    else:
        logger.info(
            "database_migrations_required",
            message="No auto-create in production, use Alembic migrations (alembic upgrade head)"
        )

    init_payment_services(app)

    yield

    await shutdown_payment_services(app)
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="POS 支付与对账核心服务",
)

# 添加中间件（注意顺序：从下往上执行）
# 1. Request ID中间件（最先执行，为后续中间件提供request_id）
app.add_middleware(RequestIDMiddleware)

# 2. 日志中间件（依赖request_id）
app.add_middleware(LoggingMiddleware)

# 3. CORS中间件
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册全局异常处理器
register_exception_handlers(app)


# 注册路由
app.include_router(payments_routes.router, prefix="/api/v1")
app.include_router(webhooks_routes.router, prefix="/api/v1")


@app.get("/", tags=["Root"])
async def root():
    """API根路径"""
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": "/docs",
            "redoc": "/redoc"
        },
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点"""
    return success_response(data={"status": "healthy"}, message="OK")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
