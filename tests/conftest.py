"""Pytest bootstrap configuration.

Ensure environment variables are set before test collection and module
imports that depend on application settings, then provide an in-memory
database, fake provider adapters and recording collaborators.
"""
import os

# Settings are read at import time; point them at throwaway backends
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMENT__IDEMPOTENCY__BACKEND", "memory")

import functools

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from infrastructure.external.payments import ProviderRegistry
from infrastructure.idempotency import InMemoryIdempotencyLedger
from infrastructure.models import Base
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork
from tests.support import FakeAdapter, RecordingCashier, RecordingOrders


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def uow_factory(engine):
    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)
    return functools.partial(SQLAlchemyUnitOfWork, session_factory)


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def registry(adapter):
    return ProviderRegistry([adapter])


@pytest.fixture
def ledger():
    return InMemoryIdempotencyLedger()


@pytest.fixture
def orders():
    return RecordingOrders()


@pytest.fixture
def cashier():
    return RecordingCashier()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(uow_factory, registry, ledger, orders, cashier, sleeps, dispatcher):
    from application.services.payment_service import PaymentOrchestrator

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return PaymentOrchestrator(
        uow_factory=uow_factory,
        providers=registry,
        ledger=ledger,
        orders=orders,
        cashier=cashier,
        webhook_replayer=dispatcher,
        max_attempts=3,
        base_delay=0.5,
        attempt_timeout=0.2,
        idempotency_ttl=60,
        sleep=_sleep,
    )


@pytest.fixture
def refund_orchestrator(uow_factory, registry, orders, dispatcher):
    from application.services.refund_service import RefundOrchestrator

    return RefundOrchestrator(
        uow_factory=uow_factory,
        providers=registry,
        orders=orders,
        webhook_replayer=dispatcher,
    )


@pytest.fixture
def dispatcher(uow_factory, registry, orders):
    from application.services.webhook_service import WebhookDispatcher
    from infrastructure.repositories.payment_repository import DuplicateWebhookEventError

    return WebhookDispatcher(
        uow_factory=uow_factory,
        providers=registry,
        orders=orders,
        duplicate_errors=(DuplicateWebhookEventError,),
    )


@pytest.fixture
def terminal_service(uow_factory):
    from application.services.terminal_service import TerminalService
    from infrastructure.repositories.payment_repository import DuplicateTerminalError

    return TerminalService(uow_factory=uow_factory, duplicate_errors=(DuplicateTerminalError,))
