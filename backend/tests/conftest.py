"""Pytest configuration and fixtures for async testing."""
import os
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from usage_billing.cost_tables import DEFAULT_PLANS
from usage_billing.database import Base
from usage_billing.models import Plan, Subscription, SubscriptionStatus, TransactionType, User
from usage_billing.services.ledger_service import LedgerService
from utils.factories import SubscriptionFactory, UserFactory

# In-memory SQLite by default; set TEST_DATABASE_URL to run against PostgreSQL
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

if TEST_DATABASE_URL.startswith("sqlite"):
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    test_engine = create_async_engine(TEST_DATABASE_URL, pool_pre_ping=True)

TestAsyncSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

WEBHOOK_SECRET = "whsec_test_secret"


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create a fresh database session for each test.

    Yields:
        AsyncSession: Database session for testing
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestAsyncSessionLocal() as session:
        yield session
        await session.rollback()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def webhook_secret() -> str:
    return WEBHOOK_SECRET


@pytest_asyncio.fixture
async def plans(db_session: AsyncSession) -> dict[str, Plan]:
    """Default plan catalog (HOBBY, STARTER, PRO, TEAM) keyed by name."""
    catalog = {}
    for order, pricing in enumerate(DEFAULT_PLANS):
        plan = Plan(
            name=pricing.name,
            display_name=pricing.display_name,
            price_monthly_usd=pricing.price_monthly_usd,
            monthly_credits=pricing.monthly_credits,
            is_active=True,
            sort_order=order,
            features=[],
        )
        db_session.add(plan)
        catalog[pricing.name] = plan
    await db_session.commit()
    return catalog


@pytest_asyncio.fixture
async def make_user(db_session: AsyncSession) -> Callable[..., Awaitable[User]]:
    """
    Factory fixture creating a committed user.

    A starting balance is written through the ledger as an ADJUSTMENT so the
    stored balance always reconciles with the transaction log.
    """

    async def _make(balance: Decimal | str = "0", **overrides) -> User:
        user = User(**UserFactory.create(overrides))
        db_session.add(user)
        await db_session.flush()
        if Decimal(balance) > 0:
            await LedgerService(db_session).credit(
                user.id, Decimal(balance), TransactionType.ADJUSTMENT, "Opening balance"
            )
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _make


@pytest_asyncio.fixture
async def user(make_user) -> User:
    return await make_user(balance="50")


@pytest_asyncio.fixture
async def make_subscription(db_session: AsyncSession) -> Callable[..., Awaitable[Subscription]]:
    """Factory fixture creating a committed subscription."""

    async def _make(user: User, plan: Plan, **overrides) -> Subscription:
        data = SubscriptionFactory.create({"user_id": user.id, "plan_id": plan.id, **overrides})
        data.setdefault("status", SubscriptionStatus.ACTIVE)
        subscription = Subscription(**data)
        db_session.add(subscription)
        await db_session.commit()
        await db_session.refresh(subscription)
        return subscription

    return _make


@pytest.fixture
def period_start() -> datetime:
    """Fixed billing period start used by date-sensitive tests."""
    return datetime(2025, 1, 1)


@pytest.fixture
def period_end(period_start: datetime) -> datetime:
    return period_start + timedelta(days=30)


@pytest_asyncio.fixture(scope="function")
async def async_client(db_session: AsyncSession, user: User) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client authenticated as ``user``, sharing the test session.

    Yields:
        AsyncClient: Async HTTP client for API testing
    """
    from usage_billing.api.deps import get_current_user, get_webhook_processor
    from usage_billing.database import get_db
    from usage_billing.main import app
    from usage_billing.services.webhook_processor import WebhookProcessor

    user_id = user.id

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_current_user():
        return user_id

    def override_webhook_processor() -> WebhookProcessor:
        return WebhookProcessor(db_session, secret=WEBHOOK_SECRET)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_current_user
    app.dependency_overrides[get_webhook_processor] = override_webhook_processor

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def session_factory() -> async_sessionmaker:
    """Session factory bound to the test engine, for code that opens its own sessions."""
    return TestAsyncSessionLocal
