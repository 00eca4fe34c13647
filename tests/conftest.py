"""Test configuration and fixtures."""

from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from escrow_relay.config import Settings
from escrow_relay.core.audit import AuditLog
from escrow_relay.core.conflict_monitor import IdempotencyConflictMonitor, MemoryCache
from escrow_relay.core.outbox_repository import OutboxRepository
from escrow_relay.core.reconciliation import ReconcilerRegistry
from escrow_relay.core.webhook_auth import WebhookAuthenticator
from escrow_relay.core.webhook_pipeline import WebhookPipeline
from escrow_relay.database import Base
from escrow_relay.dependencies import get_webhook_pipeline
from escrow_relay.main import app
from escrow_relay.models import OutboxEvent, Tenant

from tests.helpers import QITECH_SECRET, STARKBANK_TOKEN, FixedClock, StubReconciler

# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def test_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    """Session factory bound to the test engine."""
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def tenant(session_factory) -> Tenant:
    """Create test tenant."""
    async with session_factory() as session:
        async with session.begin():
            tenant = Tenant(
                id=UUID("123e4567-e89b-12d3-a456-426614174000"),
                slug="clinica-sao-paulo",
                name="Clinica Sao Paulo",
            )
            session.add(tenant)
    return tenant


@pytest_asyncio.fixture
async def other_tenant(session_factory) -> Tenant:
    """Create a second tenant for isolation checks."""
    async with session_factory() as session:
        async with session.begin():
            tenant = Tenant(slug="hospital-norte", name="Hospital Norte")
            session.add(tenant)
    return tenant


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def make_event(session_factory, tenant):
    """Factory recording an outbox event for the test tenant."""

    async def _make_event(
        event_type: str = "ESCROW_PAYOUT_REQUESTED",
        payload: dict | None = None,
        idempotency_key: str | None = None,
        tenant_id: UUID | None = None,
    ) -> OutboxEvent:
        async with session_factory() as session:
            async with session.begin():
                return await OutboxRepository.record_event(
                    session=session,
                    tenant_id=tenant_id or tenant.id,
                    aggregate_type="EscrowPayout",
                    aggregate_id=uuid4(),
                    event_type=event_type,
                    payload=payload or {"amount_cents": 150000},
                    idempotency_key=idempotency_key,
                )

    return _make_event


@pytest.fixture
def conflict_monitor() -> IdempotencyConflictMonitor:
    """In-memory conflict monitor with a low threshold."""
    return IdempotencyConflictMonitor(cache=MemoryCache(), enabled=True, threshold=3, window_seconds=300)


@pytest.fixture
def webhook_settings() -> Settings:
    """Settings with QITECH in HMAC mode and STARKBANK in token mode."""
    return Settings(
        _env_file=None,
        qitech_webhook_secret=QITECH_SECRET,
        qitech_webhook_token="",
        starkbank_webhook_secret="",
        starkbank_webhook_token=STARKBANK_TOKEN,
        webhook_credentials={},
    )


@pytest.fixture
def reconciler() -> StubReconciler:
    return StubReconciler()


@pytest.fixture
def webhook_pipeline(session_factory, webhook_settings, reconciler, clock) -> WebhookPipeline:
    """Webhook pipeline wired to the test database and stub reconciler."""
    return WebhookPipeline(
        session_factory=session_factory,
        authenticator=WebhookAuthenticator(webhook_settings),
        reconcilers=ReconcilerRegistry(default=reconciler),
        audit_log=AuditLog(session_factory),
        clock=clock,
    )


@pytest_asyncio.fixture
async def client(webhook_pipeline: WebhookPipeline) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with the webhook pipeline override."""
    app.dependency_overrides[get_webhook_pipeline] = lambda: webhook_pipeline

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def mock_redis() -> MagicMock:
    """Create mock Redis client with a transactional pipeline."""
    pipeline = MagicMock()
    pipeline.__aenter__.return_value = pipeline
    pipeline.execute = AsyncMock(return_value=[1, True])

    redis_mock = MagicMock()
    redis_mock.get = AsyncMock(return_value=None)
    redis_mock.set = AsyncMock(return_value=True)
    redis_mock.pipeline.return_value = pipeline
    return redis_mock


@pytest_asyncio.fixture
async def file_session_factories(tmp_path) -> AsyncGenerator[tuple[async_sessionmaker, async_sessionmaker], None]:
    """Two engines on one SQLite file, so a second writer can commit mid-transaction."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'escrow_relay.db'}"
    engines = [create_async_engine(url), create_async_engine(url)]

    async with engines[0].begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield tuple(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False) for engine in engines)

    for engine in engines:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_tenant(file_session_factories) -> Tenant:
    """Test tenant stored in the file-backed database."""
    primary, _ = file_session_factories
    async with primary() as session:
        async with session.begin():
            tenant = Tenant(slug="clinica-sao-paulo", name="Clinica Sao Paulo")
            session.add(tenant)
    return tenant
