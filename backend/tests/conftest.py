import os
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

os.environ.setdefault("JWT_SECRET", "test-secret-for-unit-tests-minimum-32-chars")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import ReferralProgramConfig, settings
from app.database import Base, get_db
from app.main import app
from app.models.enums import ReferralStatus, TripStatus, UserRole
from app.models.referral import Referral
from app.models.trip import Trip
from app.models.user import User

# Use SQLite for tests (in-memory)
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(TEST_DB_URL, echo=False)
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
async def client(db: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    # Reset rate limiter storage between tests to avoid 429 errors
    from app.utils.rate_limit import limiter
    if hasattr(limiter, "_limiter") and hasattr(limiter._limiter, "_storage"):
        limiter._limiter._storage.reset()
    elif hasattr(limiter, "reset"):
        limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def config() -> ReferralProgramConfig:
    return ReferralProgramConfig()


async def make_user(
    db: AsyncSession,
    email: str | None = None,
    role: UserRole = UserRole.RIDER,
    referral_code: str | None = None,
) -> User:
    user = User(
        id=uuid.uuid4(),
        email=email or f"{uuid.uuid4().hex[:10]}@kommute.test",
        role=role,
        referral_code=referral_code,
        is_active=True,
    )
    db.add(user)
    await db.flush()
    return user


async def make_trip(db: AsyncSession, rider: User, **overrides) -> Trip:
    """A completed trip that passes every validation rule unless overridden."""
    values = {
        "id": f"trip_{uuid.uuid4().hex}",
        "rider_id": rider.id,
        "status": TripStatus.COMPLETED,
        "is_cancelled": False,
        "distance_km": Decimal("5.200"),
        "duration_seconds": 900,
        "fare": 3500,
        "completed_at": datetime.now(timezone.utc),
    }
    values.update(overrides)
    trip = Trip(**values)
    db.add(trip)
    await db.flush()
    return trip


async def make_referral(db: AsyncSession, referrer: User, referred: User, **overrides) -> Referral:
    values = {
        "id": uuid.uuid4(),
        "referrer_id": referrer.id,
        "referred_id": referred.id,
        "referral_code": referrer.referral_code or "REFTEST00001",
        "status": ReferralStatus.PENDING,
        "referred_trips_completed": 0,
        "referrer_reward_paid": False,
        "referred_reward_paid": False,
    }
    values.update(overrides)
    referral = Referral(**values)
    db.add(referral)
    await db.flush()
    return referral


@pytest_asyncio.fixture
async def referrer_user(db: AsyncSession) -> User:
    return await make_user(db, email="referrer@kommute.test", referral_code="REFABCDEF123456")


@pytest_asyncio.fixture
async def referred_user(db: AsyncSession) -> User:
    return await make_user(db, email="referred@kommute.test")


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    return await make_user(db, email="admin@kommute.test", role=UserRole.ADMIN)


@pytest_asyncio.fixture
async def referral(db: AsyncSession, referrer_user: User, referred_user: User) -> Referral:
    return await make_referral(db, referrer_user, referred_user)


def access_token(user: User, **claims) -> str:
    payload = {
        "sub": str(user.id),
        "type": "access",
        "jti": str(uuid.uuid4()),
        "iss": settings.JWT_ISSUER,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    payload.update(claims)
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
