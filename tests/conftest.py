"""
Global pytest fixtures for the billing engine test suite.

Provides:
- Async SQLite database (temporary file) with all tables created
- fakeredis-backed Redis shared by locks, idempotency and reference mappings
- Test data factories for users, plans and subscriptions
- A started BillingEngine wired to the fixtures above
"""
import os

# Set test environment BEFORE any billing_engine imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/0"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_webhook_secret"
os.environ["PAYSTACK_DEFAULT_CURRENCY"] = "NGN"

from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import billing_engine.models  # noqa: F401
from billing_engine.models.billing import BillingPlan, Subscription, User
from billing_engine.modules.governance.domain.security.audit_log import AuditLogger
from billing_engine.shared.core.config import get_settings
from billing_engine.shared.db.base import Base


# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Create async SQLite engine for testing using a temporary file."""
    db_url = f"sqlite+aiosqlite:///{tmp_path / f'test_{uuid4().hex}.sqlite'}"
    engine = create_async_engine(db_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Session for assertions; each read sees committed state."""
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def redis() -> AsyncGenerator[FakeAsyncRedis, None]:
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def audit_logger(session_maker) -> AuditLogger:
    return AuditLogger(session_maker)


# ============================================================================
# Test Data Factories
# ============================================================================

class BillingFactory:
    """Persists users, plans and subscriptions in their own transactions."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def user(self, email: Optional[str] = None) -> User:
        user = User(id=uuid4(), email=email or f"user-{uuid4().hex[:8]}@example.com")
        async with self.session_maker() as session, session.begin():
            session.add(user)
        return user

    async def plan(
        self, price: str = "29.00", currency: str = "NGN", name: Optional[str] = None
    ) -> BillingPlan:
        plan = BillingPlan(
            id=uuid4(),
            name=name or f"Plan {price}",
            price=Decimal(price),
            currency=currency,
            interval="monthly",
        )
        async with self.session_maker() as session, session.begin():
            session.add(plan)
        return plan

    async def subscription(
        self,
        user: User,
        plan: BillingPlan,
        status: str = "incomplete",
        created_at: Optional[datetime] = None,
        **fields,
    ) -> Subscription:
        subscription = Subscription(
            id=uuid4(),
            user_id=user.id,
            plan_id=plan.id,
            status=status,
            created_at=created_at or datetime.now(timezone.utc),
            **fields,
        )
        async with self.session_maker() as session, session.begin():
            session.add(subscription)
        return subscription


@pytest.fixture
def factory(session_maker) -> BillingFactory:
    return BillingFactory(session_maker)


# ============================================================================
# Engine Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def billing_engine(session_maker, redis, settings):
    from billing_engine.modules.billing.domain.billing.engine import BillingEngine

    engine = BillingEngine(session_maker=session_maker, redis=redis, settings=settings)
    await engine.startup()
    yield engine
    await engine.shutdown()
