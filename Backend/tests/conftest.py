"""
Pytest configuration and fixtures for async database testing.

Every test gets a fresh in-memory SQLite database (aiosqlite + StaticPool) with
all tables created, and an httpx client whose get_session dependency is
overridden to use the same session as the test fixtures.
"""
import os
import sys
from datetime import datetime, time, timedelta, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Settings are read once at import time; point them at SQLite before the app loads.
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite://")
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["DISABLE_AUTH_CHECKS"] = "false"
os.environ["AUTO_CREATE_TABLES"] = "false"

if "neon" in TEST_DATABASE_URL.lower():
    raise RuntimeError(
        f"DANGER: Tests are configured to use a hosted database!\n"
        f"TEST_DATABASE_URL: {TEST_DATABASE_URL}\n"
        f"Tests must ONLY run against a local or in-memory database."
    )

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from marketplace.core.db import Base
from marketplace.jwt_auth import issue_access_token
from marketplace.models import (
    Offering,
    Provider,
    ProviderLocation,
    ProviderStaff,
    StaffRole,
    User,
    UserRole,
)
from marketplace import rate_limiter


@pytest.fixture(scope="function")
async def async_engine():
    """
    Create async SQLAlchemy engine for the test database.

    Engine is created per test so every test starts from an empty schema.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False} if TEST_DATABASE_URL.startswith("sqlite") else {},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
async def async_session(async_engine):
    """Create an async session shared by fixtures and the app under test."""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with async_session_maker() as session:
        yield session


@pytest.fixture(scope="function")
async def client(async_session):
    """
    Create FastAPI AsyncClient with database session override.
    """
    # Import here so the settings above are in place first
    from marketplace.main import app
    from marketplace.core.db import get_session

    async def override_get_session():
        yield async_session

    app.dependency_overrides[get_session] = override_get_session
    rate_limiter.reset()

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
    rate_limiter.reset()


def auth_headers(user: User) -> dict:
    """Bearer header with a freshly signed access token for the user."""
    return {"Authorization": f"Bearer {issue_access_token(str(user.id))}"}


def future_at(days: int = 3, hour: int = 8, minute: int = 0) -> datetime:
    """A UTC datetime a few days ahead at a fixed wall-clock time."""
    day = datetime.now(timezone.utc) + timedelta(days=days)
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0)


def booking_payload(offering, staff=None, when: datetime = None, **extra) -> dict:
    """Body for POST /api/provider/bookings with a single offering."""
    payload = {
        "customer_name": "Walter Walkin",
        "customer_phone": "082 000 1111",
        "scheduled_at": (when or future_at()).isoformat(),
        "offering_id": str(offering.id),
    }
    if staff is not None:
        payload["staff_id"] = str(staff.id)
    payload.update(extra)
    return payload


# ============================================================================
# DOMAIN FIXTURES
# ============================================================================

@pytest.fixture
async def owner_user(async_session: AsyncSession) -> User:
    user = User(email="owner@glow.test", full_name="Olivia Owner", role=UserRole.PROVIDER_OWNER.value)
    async_session.add(user)
    await async_session.commit()
    return user


@pytest.fixture
async def provider(async_session: AsyncSession, owner_user: User) -> Provider:
    provider = Provider(
        owner_user_id=owner_user.id,
        business_name="Glow Studio",
        slug="glow-studio",
        status="active",
        timezone="Africa/Johannesburg",
        currency="ZAR",
    )
    async_session.add(provider)
    await async_session.commit()
    return provider


@pytest.fixture
async def salon_location(async_session: AsyncSession, provider: Provider) -> ProviderLocation:
    location = ProviderLocation(
        provider_id=provider.id,
        name="Glow Studio Rosebank",
        location_type="salon",
        is_primary=True,
    )
    async_session.add(location)
    await async_session.commit()
    return location


@pytest.fixture
async def staff_member(async_session: AsyncSession, provider: Provider) -> ProviderStaff:
    staff = ProviderStaff(
        provider_id=provider.id,
        name="Sam Stylist",
        role=StaffRole.EMPLOYEE.value,
        work_start=time(9, 0),
        work_end=time(17, 0),
        working_days="0,1,2,3,4,5,6",
    )
    async_session.add(staff)
    await async_session.commit()
    return staff


@pytest.fixture
async def offering(async_session: AsyncSession, provider: Provider) -> Offering:
    offering = Offering(
        provider_id=provider.id,
        name="Cut & Blow-dry",
        duration_minutes=60,
        buffer_minutes=15,
        price_cents=45000,
    )
    async_session.add(offering)
    await async_session.commit()
    return offering


@pytest.fixture
async def customer_user(async_session: AsyncSession) -> User:
    user = User(
        email="casey@example.test",
        full_name="Casey Customer",
        phone="+27821234567",
        role=UserRole.CUSTOMER.value,
    )
    async_session.add(user)
    await async_session.commit()
    return user


async def make_staff_user(
    session: AsyncSession,
    provider: Provider,
    role: str,
    email: str,
) -> User:
    """Create a provider_staff user with an active staff row at the provider."""
    user = User(email=email, full_name=email.split("@")[0], role=UserRole.PROVIDER_STAFF.value)
    session.add(user)
    await session.flush()
    session.add(ProviderStaff(provider_id=provider.id, user_id=user.id, name=user.full_name, role=role))
    await session.commit()
    return user
