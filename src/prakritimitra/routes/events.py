"""Minimal event endpoints so chat rooms and attendance registers exist."""

from fastapi import APIRouter, status

from prakritimitra.dependencies import (
    CurrentUserDep,
    OrganizerDep,
    SessionDep,
    verify_event,
)
from prakritimitra.exceptions import (
    EventNotFound,
    NotAuthenticated,
    NotOrganizer,
    UnprocessableContent,
    problem_responses,
)
from prakritimitra.models import Event
from prakritimitra.schemas import EventCreate, EventResponse

router = APIRouter(prefix="/api/events", tags=["events"])


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    responses=problem_responses(NotAuthenticated, NotOrganizer, UnprocessableContent),
)
async def create_event(
    session: SessionDep,
    organizer: OrganizerDep,
    request: EventCreate,
) -> EventResponse:
    if request.start_at and request.end_at and request.end_at < request.start_at:
        raise UnprocessableContent.exception("endAt must not be before startAt")
    event = Event(
        title=request.title,
        start_at=request.start_at,
        end_at=request.end_at,
        created_by_id=organizer.id,
    )
    session.add(event)
    await session.commit()
    await session.refresh(event)
    return EventResponse.model_validate(event, from_attributes=True)


@router.get(
    "/{event_id}",
    responses=problem_responses(NotAuthenticated, EventNotFound),
)
async def get_event(
    session: SessionDep,
    _current_user: CurrentUserDep,
    event_id: str,
) -> EventResponse:
    event = await verify_event(session, event_id)
    return EventResponse.model_validate(event, from_attributes=True)
