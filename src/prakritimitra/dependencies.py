"""FastAPI dependencies for database sessions and the room broker.

All resources are accessed from request.app.state, populated by the lifespan
in ``prakritimitra.database``.
"""

from collections.abc import AsyncIterator
from pathlib import Path as FilePath
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from prakritimitra.auth import CurrentUserDep, OrganizerDep  # noqa: F401 re-export
from prakritimitra.exceptions import EventNotFound
from prakritimitra.models import Event
from prakritimitra.services.room_broker import RoomBroker


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """Yield a database session from the app's session maker."""
    async with request.app.state.session_maker() as session:
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_session)]


def get_broker(request: Request) -> RoomBroker:
    """Get the realtime room broker from app.state."""
    return request.app.state.broker


BrokerDep = Annotated[RoomBroker, Depends(get_broker)]


def get_media_path(request: Request) -> FilePath:
    """Get media path from app.state.settings."""
    return request.app.state.settings.media_path


MediaPathDep = Annotated[FilePath, Depends(get_media_path)]


async def verify_event(session: AsyncSession, event_id: str) -> Event:
    """Verify event exists and return it, or raise EventNotFound."""
    event = await session.get(Event, event_id)
    if event is None:
        raise EventNotFound.exception(f"Event {event_id} not found")
    return event
