"""
数据库引擎与会话工厂

交易/退款/webhook 账本共用同一个异步引擎；状态迁移依赖数据库的条件更新，
因此 sqlite 仅用于本地调试与测试，生产环境使用 PostgreSQL（asyncpg）。
"""
from typing import Any

from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker

from core.config import settings
from infrastructure.models import Base


ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def build_async_url(database_url: str) -> URL:
    """确保数据库URL使用异步驱动"""
    url = make_url(database_url)
    if "+" in url.drivername:
        return url
    if url.drivername not in ASYNC_DRIVERS:
        raise ValueError(f"不支持的数据库驱动: {url.drivername}. 请使用 async 驱动或更新 DATABASE__URL")
    return url.set(drivername=ASYNC_DRIVERS[url.drivername])


def engine_options(url: URL) -> dict[str, Any]:
    """按方言给出引擎参数：sqlite 无连接池配置，PostgreSQL 开启连接探活"""
    if url.get_backend_name() == "sqlite":
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": settings.database.pool_size,
        "max_overflow": settings.database.max_overflow,
    }


def create_engine_from_settings() -> AsyncEngine:
    url = build_async_url(settings.database.url)
    return create_async_engine(url, echo=settings.database.echo, **engine_options(url))


engine = create_engine_from_settings()

# 创建异步会话工厂
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
)


async def create_tables() -> None:
    """
    创建所有表

    仅在 DEBUG 启动时调用；生产环境由 alembic 迁移建表
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
