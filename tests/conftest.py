import os
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, time, timedelta, timezone

os.environ.setdefault("JWT_SECRET", "test-secret-for-unit-tests-minimum-32-chars")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["STRIPE_SECRET_KEY"] = ""  # Force mock mode in tests
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret_for_unit_tests"
os.environ["REDIS_URL"] = ""
os.environ["DISABLE_PAYOUTS"] = "false"
os.environ["APP_ENV"] = "development"

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.auth.service import create_access_token
from app.database import Base, get_db
from app.main import app
from app.models.availability import WeeklySchedule
from app.models.booking import Booking
from app.models.enums import BookingStatus, PricingType, ProviderPlan, UserRole
from app.models.provider_profile import ProviderProfile
from app.models.service import Service
from app.models.user import User
from app.services.cache import MemoryCache, get_cache
from app.utils.rate_limit import limiter

# One in-memory SQLite database shared by every connection of the test engine
engine = create_async_engine(
    "sqlite+aiosqlite://",
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
test_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with test_session() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def cache() -> MemoryCache:
    return MemoryCache()


@pytest_asyncio.fixture
async def client(db: AsyncSession, cache: MemoryCache) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        yield db

    async def override_get_cache():
        return cache

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cache] = override_get_cache
    limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def make_user(db: AsyncSession, email: str, role: UserRole = UserRole.CUSTOMER) -> User:
    user = User(id=uuid.uuid4(), email=email, role=role, first_name=email.split("@")[0])
    db.add(user)
    await db.flush()
    return user


async def make_provider(
    db: AsyncSession,
    email: str,
    plan: ProviderPlan = ProviderPlan.STARTER,
    connect_id: str | None = "acct_test_fixture",
) -> ProviderProfile:
    user = await make_user(db, email, UserRole.PROVIDER)
    profile = ProviderProfile(
        id=uuid.uuid4(),
        user_id=user.id,
        business_name=f"{user.first_name} Services",
        plan=plan,
        stripe_connect_id=connect_id,
        payouts_enabled=connect_id is not None,
        charges_gst=True,
    )
    db.add(profile)
    await db.flush()
    return profile


def future_slot(days: int = 3, hour: int = 10) -> datetime:
    """A whole-hour UTC datetime ``days`` from now."""
    base = datetime.now(timezone.utc) + timedelta(days=days)
    return base.replace(hour=hour, minute=0, second=0, microsecond=0)


async def make_booking(
    db: AsyncSession,
    customer: User,
    provider: ProviderProfile,
    service: Service,
    status: BookingStatus = BookingStatus.REQUESTED,
    scheduled_date: datetime | None = None,
    payment_intent_id: str | None = None,
) -> Booking:
    booking = Booking(
        id=uuid.uuid4(),
        customer_id=customer.id,
        provider_id=provider.id,
        service_id=service.id,
        status=status,
        scheduled_date=scheduled_date or future_slot(),
        price_at_booking=service.price_in_cents,
        payment_intent_id=payment_intent_id,
    )
    db.add(booking)
    await db.flush()
    return booking


@pytest_asyncio.fixture
async def customer_user(db: AsyncSession) -> User:
    return await make_user(db, "customer@test.com")


@pytest_asyncio.fixture
async def other_customer(db: AsyncSession) -> User:
    return await make_user(db, "other@test.com")


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    return await make_user(db, "admin@test.com", UserRole.ADMIN)


@pytest_asyncio.fixture
async def provider_profile(db: AsyncSession) -> ProviderProfile:
    return await make_provider(db, "provider@test.com")


@pytest_asyncio.fixture
async def service(db: AsyncSession, provider_profile: ProviderProfile) -> Service:
    svc = Service(
        id=uuid.uuid4(),
        provider_id=provider_profile.id,
        title="Lawn mowing",
        pricing_type=PricingType.FIXED,
        price_in_cents=10_000,
    )
    db.add(svc)
    await db.flush()
    return svc


@pytest_asyncio.fixture
async def quote_service(db: AsyncSession, provider_profile: ProviderProfile) -> Service:
    svc = Service(
        id=uuid.uuid4(),
        provider_id=provider_profile.id,
        title="Bathroom renovation",
        pricing_type=PricingType.QUOTE,
        price_in_cents=0,
    )
    db.add(svc)
    await db.flush()
    return svc


@pytest_asyncio.fixture
async def open_schedule(db: AsyncSession, provider_profile: ProviderProfile) -> list[WeeklySchedule]:
    """Provider works every day, all day."""
    rows = [
        WeeklySchedule(
            provider_id=provider_profile.id,
            day_of_week=day,
            start_time=time(0, 0),
            end_time=time(23, 59, 59),
            is_enabled=True,
        )
        for day in range(7)
    ]
    db.add_all(rows)
    await db.flush()
    return rows


def token_for(user_id) -> str:
    return create_access_token(str(user_id))


def auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def auth_for(user_id) -> dict[str, str]:
    return auth_header(token_for(user_id))
