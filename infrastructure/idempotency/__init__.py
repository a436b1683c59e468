"""幂等台账对外暴露的接口"""
from .ledger import (
    RedisIdempotencyLedger,
    InMemoryIdempotencyLedger,
    build_idempotency_ledger,
)

__all__ = [
    "RedisIdempotencyLedger",
    "InMemoryIdempotencyLedger",
    "build_idempotency_ledger",
]
