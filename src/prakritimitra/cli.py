import asyncio
import os
from datetime import timedelta

import typer

from prakritimitra import __version__
from prakritimitra.auth import create_access_token
from prakritimitra.config import Settings

app = typer.Typer(help="PrakritiMitra realtime chat and attendance server.")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"prakritimitra {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """PrakritiMitra realtime chat and attendance server."""


@app.command()
def serve(
    host: str | None = typer.Option(None, help="Bind address."),
    port: int | None = typer.Option(None, help="Bind port."),
    redis_url: str | None = typer.Option(
        None,
        help="Redis server URL (e.g., `redis://localhost:6379`). "
        "If not provided, an in-process fakeredis server is used.",
    ),
    database_url: str | None = typer.Option(
        None, help="SQLAlchemy async database URL."
    ),
    reload: bool = typer.Option(False, help="Reload on code changes."),
) -> None:
    """Run the HTTP + Socket.IO server."""
    import uvicorn

    # Settings are read by the app at startup, so pass overrides via env
    overrides = {
        "PRAKRITI_HOST": host,
        "PRAKRITI_PORT": str(port) if port is not None else None,
        "PRAKRITI_REDIS_URL": redis_url,
        "PRAKRITI_DATABASE_URL": database_url,
    }
    for key, value in overrides.items():
        if value is not None:
            os.environ[key] = value

    settings = Settings()
    typer.echo(f"Serving on http://{settings.host}:{settings.port}")
    uvicorn.run(
        "prakritimitra.app:socket_app",
        host=settings.host,
        port=settings.port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@app.command("init-db")
def init_db() -> None:
    """Create database tables."""
    from prakritimitra.database import init_database

    asyncio.run(init_database())
    typer.echo("✓ Database initialized")


@app.command()
def token(
    user_id: str = typer.Argument(..., help="User id (``sub`` claim)."),
    name: str = typer.Option("User", help="Display name."),
    role: str = typer.Option(
        "volunteer", help="One of volunteer, organizer or admin."
    ),
    days: int = typer.Option(7, help="Validity in days."),
) -> None:
    """Issue a development bearer token signed with the configured secret."""
    if role not in ("volunteer", "organizer", "admin"):
        typer.echo(f"✗ Unknown role: {role}", err=True)
        raise typer.Exit(1)
    access_token = create_access_token(
        Settings(), user_id, name, role, expires_in=timedelta(days=days)  # type: ignore[arg-type]
    )
    typer.echo(access_token)


@app.command("forget-user")
def forget_user(
    user_id: str = typer.Argument(..., help="Id of the deleted account."),
) -> None:
    """Detach a deleted account from its chat messages and reactions."""
    from prakritimitra.database import create_engine_for_url
    from prakritimitra.services.chat_service import ChatService
    from sqlalchemy.ext.asyncio import async_sessionmaker
    from sqlmodel.ext.asyncio.session import AsyncSession

    async def _run() -> int:
        engine = create_engine_for_url(Settings().database_url)
        try:
            session_maker = async_sessionmaker(
                engine, class_=AsyncSession, expire_on_commit=False
            )
            async with session_maker() as session:
                return await ChatService(session).forget_user(user_id)
        finally:
            await engine.dispose()

    count = asyncio.run(_run())
    typer.echo(f"✓ Detached {count} messages from user {user_id}")
