"""
Pytest configuration and fixtures for async database testing.

Every test gets its own in-memory SQLite database (aiosqlite) with the full
schema, so tests never share state and need no running PostgreSQL. The
environment is pinned before the application is imported because settings
are cached on first use.
"""
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["JWT_SECRET"] = "test-secret-for-the-flash-agenda-suite"
os.environ["JWT_AUDIENCE"] = "authenticated"
os.environ["DISPLAY_TIMEZONE"] = "America/Sao_Paulo"

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import jwt
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from flashagenda.core.config import get_settings
from flashagenda.core.db import Base, get_session
from flashagenda.notifications import get_dispatcher
from flashagenda.repositories import AgendaRepository, AvailabilityRepository, ServiceRepository
from flashagenda.slots import day_of_week

OWNER_ID = "owner-ana"
OTHER_OWNER_ID = "owner-bia"

# A Monday far enough ahead that no slot is ever in the past.
BOOKING_DATE = date(2030, 1, 7)


class RecordingDispatcher:
    """Notification dispatcher that only remembers what it was given."""

    def __init__(self):
        self.events = []

    async def dispatch(self, event):
        self.events.append(event)


class FailingDispatcher:
    async def dispatch(self, event):
        raise RuntimeError("webhook endpoint is down")


def make_token(owner_id: str = OWNER_ID, **claims) -> str:
    settings = get_settings()
    payload = {
        "sub": owner_id,
        "aud": settings.jwt_audience,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    payload.update(claims)
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


@pytest.fixture(scope="function")
async def async_engine():
    """
    Fresh in-memory database per test.

    StaticPool keeps the single SQLite connection alive for every session the
    test opens; without it each checkout would see an empty database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def serialized_session_factory(tmp_path):
    """
    Sessions on a file database with one connection each, for tests that run
    transactions at the same time with asyncio.gather.

    SQLite has no row locks, so every transaction opens with BEGIN IMMEDIATE
    and holds the write lock until it ends. Concurrent transactions then run
    one after another, the way they queue behind FOR UPDATE on PostgreSQL.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture(scope="function")
async def async_session(session_factory):
    """Session used to arrange test data and to inspect results."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture(scope="function")
async def client(session_factory, dispatcher):
    """
    FastAPI AsyncClient bound to the test database.

    Each request gets its own session, like production, and booking events go
    to the recording dispatcher instead of a webhook.
    """
    from flashagenda.main import app

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {make_token()}"}


async def seed_agenda(session, title="Estúdio Ana Beleza"):
    """Active agenda open Mondays 09:00-12:00."""
    agenda = await AgendaRepository(session).create(OWNER_ID, title)
    await AvailabilityRepository(session).add_window(
        agenda.id, day_of_week(BOOKING_DATE), "09:00", "12:00"
    )
    await session.commit()
    return agenda


async def seed_services(session):
    repo = ServiceRepository(session)
    haircut = await repo.create(OWNER_ID, "Haircut", 60, Decimal("80.00"))
    wash = await repo.create(OWNER_ID, "Wash", 30, Decimal("30.00"))
    brows = await repo.create(OWNER_ID, "Brows", 30, Decimal("25.00"))
    await session.commit()
    return {"haircut": haircut, "wash": wash, "brows": brows}


@pytest.fixture
async def agenda(async_session):
    return await seed_agenda(async_session)


@pytest.fixture
async def services(async_session):
    return await seed_services(async_session)
