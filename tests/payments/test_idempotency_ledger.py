import pytest

from infrastructure.idempotency import (
    InMemoryIdempotencyLedger,
    RedisIdempotencyLedger,
    build_idempotency_ledger,
)


class _FakeRedis:
    def __init__(self):
        self.store = {}
        self.ttls = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, key):
        self.store.pop(key, None)
        self.ttls.pop(key, None)

    async def aclose(self):
        return None


@pytest.mark.asyncio
async def test_memory_ledger_round_trip_returns_copy():
    ledger = InMemoryIdempotencyLedger()
    response = {"transaction_id": "tx-1", "status": "succeeded", "amount": "10.00"}

    await ledger.put("K1", response, 60)
    cached = await ledger.get("K1")
    cached["status"] = "mutated"

    assert (await ledger.get("K1"))["status"] == "succeeded"
    assert await ledger.get("other") is None


@pytest.mark.asyncio
async def test_memory_ledger_expires_entries_lazily():
    ledger = InMemoryIdempotencyLedger()

    await ledger.put("K1", {"status": "succeeded"}, 0)

    assert len(ledger) == 1
    assert await ledger.get("K1") is None
    assert len(ledger) == 0


@pytest.mark.asyncio
async def test_redis_ledger_namespaces_keys_and_sets_ttl():
    client = _FakeRedis()
    ledger = RedisIdempotencyLedger(client, namespace="pos-payments")

    await ledger.put("K1", {"status": "succeeded"}, 3600)

    assert client.ttls == {"pos-payments:idempotency:K1": 3600}
    assert await ledger.get("K1") == {"status": "succeeded"}
    assert await ledger.get("K2") is None


def test_build_ledger_falls_back_to_memory_without_redis():
    assert isinstance(build_idempotency_ledger("auto", redis_url=""), InMemoryIdempotencyLedger)
    assert isinstance(build_idempotency_ledger("memory", redis_url="redis://localhost"), InMemoryIdempotencyLedger)
    with pytest.raises(RuntimeError):
        build_idempotency_ledger("redis", redis_url="")


@pytest.mark.asyncio
async def test_memory_ledger_reservation_is_exclusive_until_released():
    ledger = InMemoryIdempotencyLedger()

    assert await ledger.reserve("K1", 60)
    assert not await ledger.reserve("K1", 60)

    await ledger.release("K1")
    assert await ledger.reserve("K1", 60)


@pytest.mark.asyncio
async def test_memory_ledger_put_clears_reservation_and_expired_claim_is_reclaimable():
    ledger = InMemoryIdempotencyLedger()

    await ledger.reserve("K1", 60)
    await ledger.put("K1", {"status": "succeeded"}, 60)
    assert await ledger.reserve("K1", 60)

    await ledger.reserve("K2", 0)
    assert await ledger.reserve("K2", 60)


@pytest.mark.asyncio
async def test_redis_ledger_reserves_with_set_nx():
    client = _FakeRedis()
    ledger = RedisIdempotencyLedger(client, namespace="pos-payments")

    assert await ledger.reserve("K1", 120)
    assert not await ledger.reserve("K1", 120)
    assert client.ttls["pos-payments:idempotency:K1:in-flight"] == 120

    await ledger.put("K1", {"status": "succeeded"}, 3600)
    assert "pos-payments:idempotency:K1:in-flight" not in client.store
    assert await ledger.reserve("K1", 120)
