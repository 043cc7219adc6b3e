"""
Shared pytest fixtures.

Each test gets its own in-memory SQLite database. Time-dependent behavior
runs against a frozen clock the test can move forward.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["SECRET_KEY"] = "test-secret-key-for-storefront"
os.environ["SCHEDULER_ENABLED"] = "false"

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import storefront.models  # noqa: F401
from storefront.api.deps import get_clock, get_mailer
from storefront.core.clock import Clock
from storefront.core.security import create_access_token
from storefront.database import Base, get_db
from storefront.main import app
from storefront.models.coupon import Coupon, DiscountType
from storefront.services.email_service import EmailMessage


class FrozenClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class RecordingMailer:
    """Mailer that keeps queued messages instead of sending them."""

    def __init__(self):
        self.messages: List[EmailMessage] = []
        self.fail = False

    def queue_email(self, message: EmailMessage) -> None:
        if self.fail:
            raise RuntimeError("mail queue unavailable")
        self.messages.append(message)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest_asyncio.fixture
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
def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Sessions on a SQLite file, each holding its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    await engine.dispose()


@pytest.fixture
def make_coupon(db, clock):
    """Factory creating a coupon that is valid around the frozen time."""

    async def _make(
        code: str = "SAVE10",
        discount_type: DiscountType = DiscountType.PERCENTAGE,
        discount_value: str = "10",
        minimum_purchase_amount: str = None,
        max_usage_count: int = 100,
        is_active: bool = True,
        valid_from: datetime = None,
        valid_until: datetime = None,
        current_usage_count: int = 0,
    ) -> Coupon:
        now = clock.now()
        coupon = Coupon(
            code=code,
            name=f"{code} offer",
            discount_type=discount_type.value,
            discount_value=Decimal(discount_value),
            minimum_purchase_amount=(
                Decimal(minimum_purchase_amount) if minimum_purchase_amount is not None else None
            ),
            max_usage_count=max_usage_count,
            current_usage_count=current_usage_count,
            valid_from=valid_from or now - timedelta(hours=1),
            valid_until=valid_until or now + timedelta(hours=1),
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )
        db.add(coupon)
        await db.commit()
        return coupon

    return _make


@pytest_asyncio.fixture
async def client(session_factory, clock, mailer):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_mailer] = lambda: mailer

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Build an Authorization header for a customer ID."""

    def _headers(customer_id: int) -> dict:
        return {"Authorization": f"Bearer {create_access_token(customer_id)}"}

    return _headers
