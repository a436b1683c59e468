"""幂等台账实现：Redis 与进程内两种后端"""
from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta
from typing import Any, Optional

from redis import asyncio as aioredis

from core.config import settings
from core.logging_config import get_logger
from domain.payment.entity import IdempotencyRecord, utcnow


logger = get_logger(__name__)


def _json_dumps(value: Any) -> str:
    """将任意对象序列化为JSON字符串"""
    return json.dumps(value, default=str)


def _json_loads(value: Optional[str]) -> Any:
    """将JSON字符串反序列化为对象"""
    if value is None:
        return None
    return json.loads(value)


class RedisIdempotencyLedger:
    """基于Redis的幂等台账，过期由 Redis EX 负责"""

    def __init__(self, client: aioredis.Redis, namespace: str = "") -> None:
        self._client = client
        self._namespace = namespace.strip(":")

    def _format_key(self, key: str) -> str:
        if not self._namespace:
            return f"idempotency:{key}"
        return f"{self._namespace}:idempotency:{key}"

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        value = await self._client.get(self._format_key(key))
        if value is None:
            return None
        return _json_loads(value)

    def _reservation_key(self, key: str) -> str:
        return f"{self._format_key(key)}:in-flight"

    async def reserve(self, key: str, ttl_seconds: int) -> bool:
        """SET NX EX：仅第一个请求能占用该幂等键"""
        return bool(await self._client.set(self._reservation_key(key), "1", nx=True, ex=ttl_seconds))

    async def release(self, key: str) -> None:
        await self._client.delete(self._reservation_key(key))

    async def put(self, key: str, response: dict[str, Any], ttl_seconds: int) -> None:
        await self._client.set(self._format_key(key), _json_dumps(response), ex=ttl_seconds)
        await self._client.delete(self._reservation_key(key))

    async def aclose(self) -> None:
        await self._client.aclose()


class InMemoryIdempotencyLedger:
    """进程内幂等台账（测试及未配置 Redis 时使用），过期记录在读取时惰性清理"""

    def __init__(self) -> None:
        self._records: dict[str, IdempotencyRecord] = {}
        # key -> 占用到期时间
        self._reservations: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        async with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            if record.is_expired():
                del self._records[key]
                return None
            return _json_loads(_json_dumps(record.cached_response))

    async def reserve(self, key: str, ttl_seconds: int) -> bool:
        async with self._lock:
            now = utcnow()
            expires_at = self._reservations.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._reservations[key] = now + timedelta(seconds=ttl_seconds)
            return True

    async def release(self, key: str) -> None:
        async with self._lock:
            self._reservations.pop(key, None)

    async def put(self, key: str, response: dict[str, Any], ttl_seconds: int) -> None:
        async with self._lock:
            self._reservations.pop(key, None)
            self._records[key] = IdempotencyRecord(
                key=key,
                cached_response=_json_loads(_json_dumps(response)),
                expires_at=utcnow() + timedelta(seconds=ttl_seconds),
            )

    async def aclose(self) -> None:
        async with self._lock:
            self._records.clear()
            self._reservations.clear()

    def __len__(self) -> int:
        return len(self._records)


def build_idempotency_ledger(backend: str = "auto", redis_url: Optional[str] = None):
    """
    按配置构建幂等台账

    backend:
        auto   - 配置了 Redis URL 时使用 Redis，否则退回进程内实现
        redis  - 强制 Redis，未配置 URL 时报错
        memory - 进程内实现（多实例部署下不共享）
    """
    url = redis_url if redis_url is not None else settings.redis.url
    if backend == "memory" or (backend == "auto" and not url):
        logger.info("idempotency_ledger_initialized", backend="memory")
        return InMemoryIdempotencyLedger()
    if not url:
        raise RuntimeError("REDIS__URL 未配置，无法初始化Redis幂等台账")
    client = aioredis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=settings.redis.max_connections,
    )
    logger.info("idempotency_ledger_initialized", backend="redis")
    return RedisIdempotencyLedger(client=client, namespace=settings.redis.namespace)
