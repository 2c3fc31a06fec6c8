import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock, patch
from uuid import UUID, uuid4

# Tests run against an in-memory SQLite database with the real schema
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_FORMAT", "console")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.redis_client import CacheManager, get_cache_manager
from app.core.security import create_access_token
from app.database import get_db, get_session_factory
from app.main import app
from app.models import (
    appointments,
    beneficiaries,
    metadata,
    practitioners,
    services,
    users,
)
from app.schemas.users import Actor, Role
from app.services.appointment_codes import generate_appointment_code

test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session on a fresh schema."""
    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)

    async with TestSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)


@pytest.fixture(autouse=True)
def fcm_send() -> MagicMock:
    """Stub Firebase Cloud Messaging; tests set side_effect to simulate outages."""
    with patch("app.services.notification_service.messaging.send") as mock_send:
        mock_send.return_value = "projects/test/messages/1"
        yield mock_send


@pytest.fixture
def session_factory() -> async_sessionmaker[AsyncSession]:
    """Sessions on the test database for work done after a request."""
    return TestSessionLocal


@pytest.fixture
def cache_redis() -> MagicMock:
    """Redis stand-in behind the projection cache, backed by a dict."""
    store: dict[str, str] = {}

    def incr(key: str) -> int:
        store[key] = str(int(store.get(key, 0)) + 1)
        return int(store[key])

    mock_redis = MagicMock()
    mock_redis.store = store
    mock_redis.get.side_effect = store.get
    mock_redis.set.side_effect = lambda key, value: store.__setitem__(key, value)
    mock_redis.setex.side_effect = lambda key, ttl, value: store.__setitem__(key, value)
    mock_redis.delete.side_effect = lambda key: store.pop(key, None)
    mock_redis.incr.side_effect = incr
    return mock_redis


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    cache_redis: MagicMock,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cache_manager] = lambda: CacheManager(cache_redis)
    app.dependency_overrides[get_session_factory] = lambda: TestSessionLocal

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


async def _create_user(db_session: AsyncSession, role: Role, email: str, **extra: Any) -> UUID:
    user_id = uuid4()
    await db_session.execute(
        insert(users).values(
            id=user_id,
            email=email,
            first_name=extra.get("first_name", role.value.capitalize()),
            last_name=extra.get("last_name", "Test"),
            phone=extra.get("phone", "+33600000000"),
            role=role.value,
            is_active=extra.get("is_active", True),
        )
    )
    await db_session.commit()
    return user_id


@pytest_asyncio.fixture
async def client_actor(db_session: AsyncSession) -> Actor:
    """The paying client."""
    user_id = await _create_user(db_session, Role.CLIENT, "client@example.com")
    return Actor(user_id=user_id, role=Role.CLIENT)


@pytest_asyncio.fixture
async def other_client_actor(db_session: AsyncSession) -> Actor:
    """A client with no relation to the test appointments."""
    user_id = await _create_user(db_session, Role.CLIENT, "other@example.com")
    return Actor(user_id=user_id, role=Role.CLIENT)


async def _create_practitioner(db_session: AsyncSession, email: str, pseudo: str) -> Actor:
    user_id = await _create_user(db_session, Role.PRACTITIONER, email)
    practitioner_id = uuid4()
    await db_session.execute(
        insert(practitioners).values(id=practitioner_id, user_id=user_id, pseudo=pseudo)
    )
    await db_session.commit()
    return Actor(user_id=user_id, role=Role.PRACTITIONER, practitioner_id=practitioner_id)


@pytest_asyncio.fixture
async def practitioner_actor(db_session: AsyncSession) -> Actor:
    """The practitioner assigned to the test appointments."""
    return await _create_practitioner(db_session, "practitioner@example.com", "Luna")


@pytest_asyncio.fixture
async def other_practitioner_actor(db_session: AsyncSession) -> Actor:
    """A practitioner not assigned to the test appointments."""
    return await _create_practitioner(db_session, "other.practitioner@example.com", "Sol")


@pytest_asyncio.fixture
async def admin_actor(db_session: AsyncSession) -> Actor:
    """A staff member."""
    user_id = await _create_user(db_session, Role.ADMIN, "admin@example.com")
    return Actor(user_id=user_id, role=Role.ADMIN)


async def _create_service(db_session: AsyncSession, name: str, price: Decimal) -> UUID:
    service_id = uuid4()
    await db_session.execute(
        insert(services).values(
            id=service_id,
            name=name,
            category="numerology",
            duration_minutes=60,
            price=price,
        )
    )
    await db_session.commit()
    return service_id


@pytest_asyncio.fixture
async def service_id(db_session: AsyncSession) -> UUID:
    """A service listed at 150."""
    return await _create_service(db_session, "Numerology reading", Decimal("150.00"))


@pytest_asyncio.fixture
async def quote_service_id(db_session: AsyncSession) -> UUID:
    """A service priced on request."""
    return await _create_service(db_session, "Company study", Decimal("9999"))


@pytest_asyncio.fixture
async def beneficiary_id(db_session: AsyncSession, client_actor: Actor) -> UUID:
    """A beneficiary owned by the paying client."""
    beneficiary_id = uuid4()
    await db_session.execute(
        insert(beneficiaries).values(
            id=beneficiary_id,
            owner_id=client_actor.user_id,
            first_name="Alice",
            last_name="Martin",
            birth_date=date(1990, 5, 17),
            email="alice@example.com",
            phone="+33611111111",
        )
    )
    await db_session.commit()
    return beneficiary_id


MakeAppointment = Callable[..., Awaitable[UUID]]


@pytest_asyncio.fixture
async def make_appointment(
    db_session: AsyncSession,
    client_actor: Actor,
    practitioner_actor: Actor,
    service_id: UUID,
) -> MakeAppointment:
    """Insert an appointment directly in a given lifecycle state."""

    async def make(
        status: str = "pending",
        payment_status: str = "unpaid",
        start_time: datetime | None = None,
        **fields: Any,
    ) -> UUID:
        start_time = start_time or datetime.now(UTC) - timedelta(hours=2)
        appointment_id = uuid4()
        values = {
            "id": appointment_id,
            "unique_code": generate_appointment_code(),
            "client_id": client_actor.user_id,
            "practitioner_id": practitioner_actor.practitioner_id,
            "service_id": service_id,
            "start_time": start_time,
            "end_time": start_time + timedelta(hours=1),
            "status": status,
            "payment_status": payment_status,
            "created_at": datetime.now(UTC),
            "updated_at": datetime.now(UTC),
        }
        values.update(fields)
        await db_session.execute(insert(appointments).values(**values))
        await db_session.commit()
        return appointment_id

    return make


@pytest.fixture
def auth_headers() -> Callable[[Actor], dict[str, str]]:
    """Create authentication headers for an actor."""

    def headers(actor: Actor) -> dict[str, str]:
        token = create_access_token(actor.user_id, expires_delta=timedelta(minutes=30))
        return {"Authorization": f"Bearer {token}"}

    return headers
