"""Async database setup and application lifespan management.

Uses app.state pattern to store resources:
- settings: Settings instance
- engine / session_maker: SQLAlchemy async engine and session factory
- redis: Redis async client
- fake_server: TcpFakeServer instance (when PRAKRITI_REDIS_URL not configured)
- broker: RoomBroker wrapping the Socket.IO server
"""

import asyncio
import contextlib
import logging
import socket
import threading
from collections.abc import AsyncIterator

import redis.asyncio as redis_client
import socketio as socketio_lib
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession as SQLModelAsyncSession

import prakritimitra.models  # noqa: F401 - registers Event, Message, etc.
from prakritimitra.config import Settings
from prakritimitra.services.room_broker import RoomBroker
from prakritimitra.socketio import sio

log = logging.getLogger(__name__)


def _get_free_port() -> int:
    """Find a free port on localhost using socket binding."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _is_sqlite(database_url: str) -> bool:
    """Check if database is SQLite (sync or async)."""
    return database_url.startswith(("sqlite://", "sqlite+aiosqlite://"))


def create_engine_for_url(database_url: str) -> AsyncEngine:
    """Create an async engine; in-memory SQLite shares one connection."""
    if not _is_sqlite(database_url):
        return create_async_engine(database_url, pool_pre_ping=True)
    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in database_url or database_url.endswith("://"):
        kwargs["poolclass"] = StaticPool
    return create_async_engine(database_url, **kwargs)


def _apply_sqlite_locking(app: FastAPI) -> None:
    """Apply locking wrapper to session_maker for SQLite databases.

    Wraps the existing app.state.session_maker with an asyncio.Lock so that
    concurrent writes are serialized.
    """
    base_maker = app.state.session_maker
    db_lock = asyncio.Lock()

    @contextlib.asynccontextmanager
    async def locked_session_maker():
        async with db_lock, base_maker() as session:
            yield session

    app.state.session_maker = locked_session_maker


async def init_database(engine: AsyncEngine | None = None) -> None:
    """Create all tables.

    Idempotent - safe to call multiple times (CREATE TABLE IF NOT EXISTS).

    Parameters
    ----------
    engine : AsyncEngine | None
        Optional engine to use (app startup). If not provided, creates one
        from settings and disposes it after (CLI use).
    """
    own_engine = engine is None
    if own_engine:
        engine = create_engine_for_url(Settings().database_url)

    async with engine.begin() as conn:  # type: ignore[union-attr]
        await conn.run_sync(SQLModel.metadata.create_all)

    if own_engine:
        await engine.dispose()  # type: ignore[union-attr]


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """FastAPI lifespan context manager for all application resources."""
    settings = Settings()
    logging.getLogger("prakritimitra").setLevel(settings.log_level.upper())
    app.state.settings = settings

    engine = create_engine_for_url(settings.database_url)
    app.state.engine = engine
    app.state.session_maker = async_sessionmaker(
        engine, class_=SQLModelAsyncSession, expire_on_commit=False
    )

    try:
        if settings.init_db_on_startup:
            await init_database(engine=engine)

        if _is_sqlite(settings.database_url):
            _apply_sqlite_locking(app)

        settings.media_path.mkdir(parents=True, exist_ok=True)

        # Redis - auto-start TcpFakeServer if PRAKRITI_REDIS_URL not configured
        app.state.fake_server = None
        app.state.fake_server_thread = None
        redis_protocol: int | None = None
        if settings.redis_url is None:
            from fakeredis import TcpFakeServer

            port = _get_free_port()
            fake_server = TcpFakeServer(("127.0.0.1", port), server_type="redis")
            fake_server_thread = threading.Thread(
                target=fake_server.serve_forever, daemon=True
            )
            fake_server_thread.start()
            app.state.fake_server = fake_server
            app.state.fake_server_thread = fake_server_thread
            redis_url = f"redis://127.0.0.1:{port}"
            redis_protocol = 3  # TcpFakeServer speaks RESP3
            log.info("No Redis configured, using in-process fakeredis on %s", port)
        else:
            redis_url = settings.redis_url

        redis_kwargs: dict = {}
        if redis_protocol is not None:
            redis_kwargs["protocol"] = redis_protocol
        app.state.redis = redis_client.from_url(
            redis_url, decode_responses=True, **redis_kwargs
        )

        # Socket.IO with AsyncRedisManager
        client_manager = socketio_lib.AsyncRedisManager(redis_url)
        client_manager.set_server(sio)
        sio.manager = client_manager
        sio.manager_initialized = True
        sio.app = app  # handlers resolve app.state at event time
        app.state.broker = RoomBroker(sio, app.state.redis)

        yield

        await app.state.redis.aclose()
        if app.state.fake_server is not None:
            app.state.fake_server.shutdown()
            app.state.fake_server.server_close()
            if app.state.fake_server_thread is not None:
                app.state.fake_server_thread.join(timeout=1.0)
    finally:
        await engine.dispose()
