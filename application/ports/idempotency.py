"""
Idempotency ledger port: key -> cached response with expiry.

``reserve`` claims a key for one in-flight request; the claim is cleared by
``put`` (result cached) or ``release`` (result not cacheable).
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class IdempotencyLedger(Protocol):
    async def get(self, key: str) -> Optional[dict[str, Any]]: ...

    async def reserve(self, key: str, ttl_seconds: int) -> bool: ...

    async def release(self, key: str) -> None: ...

    async def put(self, key: str, response: dict[str, Any], ttl_seconds: int) -> None: ...
