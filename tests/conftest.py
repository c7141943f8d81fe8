"""Shared fixtures: in-memory database, fake Redis and a mocked Socket.IO server."""

from collections.abc import AsyncIterator
from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from prakritimitra.auth import Principal, create_access_token
from prakritimitra.config import Settings
from prakritimitra.models import Event, Message, Registration
from prakritimitra.services.room_broker import RoomBroker

VOLUNTEER = Principal(id="vol-1", name="Asha", role="volunteer")
OTHER_VOLUNTEER = Principal(id="vol-2", name="Kiran", role="volunteer")
ORGANIZER = Principal(id="org-1", name="Ravi", role="organizer")

# =============================================================================
# Database
# =============================================================================


@pytest_asyncio.fixture(name="session_maker")
async def session_maker_fixture() -> AsyncIterator[async_sessionmaker]:
    """Fresh in-memory database per test, shared by every session."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    try:
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        yield async_sessionmaker(
            bind=engine, class_=AsyncSession, expire_on_commit=False
        )
    finally:
        await engine.dispose()


@pytest_asyncio.fixture(name="session")
async def session_fixture(
    session_maker: async_sessionmaker,
) -> AsyncIterator[AsyncSession]:
    async with session_maker() as session:
        yield session


@pytest.fixture(name="settings")
def settings_fixture(tmp_path) -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        media_path=tmp_path / "uploads",
        jwt_secret="test-secret-key-long-enough-for-hs256",
    )


# =============================================================================
# Realtime
# =============================================================================


@pytest.fixture(name="mock_sio")
def mock_sio_fixture() -> MagicMock:
    """Mock Socket.IO server that keeps per-sid sessions in a dict."""
    sio_mock = MagicMock()
    sio_mock.emit = AsyncMock()
    sio_mock.enter_room = AsyncMock()
    sio_mock.leave_room = AsyncMock()
    sessions: dict[str, dict[str, Any]] = {}

    async def save_session(sid: str, data: dict[str, Any]) -> None:
        sessions[sid] = data

    async def get_session(sid: str) -> dict[str, Any]:
        return sessions[sid]

    sio_mock.save_session = AsyncMock(side_effect=save_session)
    sio_mock.get_session = AsyncMock(side_effect=get_session)
    sio_mock.sessions = sessions
    return sio_mock


@pytest_asyncio.fixture(name="fake_redis")
async def fake_redis_fixture() -> AsyncIterator[fake_aioredis.FakeRedis]:
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture(name="broker")
def broker_fixture(mock_sio: MagicMock, fake_redis) -> RoomBroker:
    return RoomBroker(mock_sio, fake_redis)


@pytest.fixture(name="socket_state")
def socket_state_fixture(
    session_maker: async_sessionmaker, settings: Settings, broker: RoomBroker
):
    """Point the module-level Socket.IO server at test resources."""
    from prakritimitra.socketio import sio

    state = SimpleNamespace(
        session_maker=session_maker, settings=settings, broker=broker
    )
    previous = getattr(sio, "app", None)
    sio.app = SimpleNamespace(state=state)
    yield state
    sio.app = previous


# =============================================================================
# HTTP
# =============================================================================


@pytest_asyncio.fixture(name="client")
async def client_fixture(
    session_maker: async_sessionmaker,
    settings: Settings,
    broker: RoomBroker,
) -> AsyncIterator[AsyncClient]:
    """Async test client with the database session overridden."""
    from prakritimitra.app import app
    from prakritimitra.dependencies import get_session

    async def get_session_override() -> AsyncIterator[AsyncSession]:
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_session] = get_session_override
    app.state.settings = settings
    app.state.broker = broker
    app.state.redis = broker.redis

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


def create_test_token(settings: Settings, user: Principal) -> str:
    return create_access_token(settings, user.id, user.name, user.role)


def auth_header(settings: Settings, user: Principal) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_test_token(settings, user)}"}


# =============================================================================
# Data helpers
# =============================================================================


async def create_event(
    session: AsyncSession,
    title: str = "Beach Cleanup",
    start_at: datetime | None = None,
    end_at: datetime | None = None,
) -> Event:
    event = Event(title=title, start_at=start_at, end_at=end_at)
    session.add(event)
    await session.commit()
    await session.refresh(event)
    return event


async def add_messages(
    session: AsyncSession,
    event_id: str,
    count: int,
    sender: Principal = VOLUNTEER,
    created_at: datetime | None = None,
) -> list[Message]:
    """Insert ``count`` messages directly, oldest first."""
    messages = []
    for i in range(count):
        msg = Message(
            event_id=event_id,
            sender_id=sender.id,
            sender_name=sender.name,
            sender_role=sender.role,
            text=f"message {i}",
        )
        if created_at is not None:
            msg.created_at = created_at + timedelta(seconds=i)
        session.add(msg)
        messages.append(msg)
    await session.commit()
    for msg in messages:
        await session.refresh(msg)
    return messages


async def create_registration(
    session: AsyncSession, event_id: str, volunteer: Principal = VOLUNTEER
) -> Registration:
    reg = Registration(
        event_id=event_id, volunteer_id=volunteer.id, volunteer_name=volunteer.name
    )
    session.add(reg)
    await session.commit()
    await session.refresh(reg)
    return reg


def emitted(mock_sio: MagicMock, name: str) -> list[tuple[dict, dict]]:
    """``(payload, kwargs)`` of every emit of ``name`` on the mock server."""
    return [
        (call.args[1], call.kwargs)
        for call in mock_sio.emit.call_args_list
        if call.args and call.args[0] == name
    ]
