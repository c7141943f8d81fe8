"""Chat REST API endpoints: history, pinned message, uploads and pinning."""

import logging
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, Depends, Query, UploadFile, status

from prakritimitra.config import Settings, SettingsDep
from prakritimitra.dependencies import (
    BrokerDep,
    CurrentUserDep,
    MediaPathDep,
    OrganizerDep,
    SessionDep,
)
from prakritimitra.exceptions import (
    EventNotFound,
    FileTooLarge,
    MessageNotFound,
    NotAuthenticated,
    NotOrganizer,
    PinConflict,
    UnsupportedFileType,
    problem_responses,
)
from prakritimitra.schemas import (
    MessageResponse,
    PinRequest,
    UploadedFile,
    UploadResponse,
)
from prakritimitra.services.chat_service import ChatService
from prakritimitra.services.room_broker import event_channel
from prakritimitra.socket_events import MessagePinned

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chatbox", tags=["chat"])

UPLOAD_URL_PREFIX = "/uploads"


def get_chat_service(session: SessionDep, settings: SettingsDep) -> ChatService:
    return ChatService(session, timedelta(seconds=settings.edit_window_seconds))


ChatServiceDep = Annotated[ChatService, Depends(get_chat_service)]


def _validate_upload(
    settings: Settings, content_type: str | None, file_bytes: bytes
) -> bytes:
    """Validate attachment type and size, returning the bytes on success."""
    if content_type not in settings.allowed_upload_types:
        raise UnsupportedFileType.exception(
            f"File type '{content_type}' is not supported"
        )
    if len(file_bytes) > settings.max_upload_bytes:
        limit_mb = settings.max_upload_bytes // (1024 * 1024)
        raise FileTooLarge.exception(f"File exceeds the {limit_mb}MB limit")
    return file_bytes


def _stored_name(filename: str) -> str:
    suffix = Path(filename).suffix.lower()[:16]
    return f"{uuid.uuid4().hex}{suffix}"


# =============================================================================
# GET: History
# =============================================================================


@router.get(
    "/events/{event_id}/messages",
    responses=problem_responses(NotAuthenticated, EventNotFound, MessageNotFound),
)
async def list_messages(
    chat: ChatServiceDep,
    settings: SettingsDep,
    _current_user: CurrentUserDep,
    event_id: str,
    limit: int | None = Query(default=None, ge=1, le=100),
    before: int | None = Query(
        default=None, description="Id of the oldest message already loaded"
    ),
) -> list[MessageResponse]:
    """One page of history, oldest to newest."""
    return await chat.list_messages(event_id, limit or settings.page_size, before)


@router.get(
    "/events/{event_id}/pinned",
    responses=problem_responses(NotAuthenticated, EventNotFound),
)
async def get_pinned_message(
    chat: ChatServiceDep,
    _current_user: CurrentUserDep,
    event_id: str,
) -> MessageResponse | None:
    """The event's pinned message, or null."""
    return await chat.pinned(event_id)


# =============================================================================
# POST: Upload attachment (multipart)
# =============================================================================


@router.post(
    "/upload",
    status_code=status.HTTP_201_CREATED,
    responses=problem_responses(NotAuthenticated, FileTooLarge, UnsupportedFileType),
)
async def upload_file(
    settings: SettingsDep,
    current_user: CurrentUserDep,
    media_path: MediaPathDep,
    file: UploadFile,
) -> UploadResponse:
    """Store a chat attachment.

    The returned descriptor is then sent with ``sendMessage`` over the socket.
    """
    file_bytes = _validate_upload(settings, file.content_type, await file.read())

    filename = Path(file.filename or "attachment").name
    stored = _stored_name(filename)
    media_path.mkdir(parents=True, exist_ok=True)
    (media_path / stored).write_bytes(file_bytes)
    log.info(
        "Stored upload %s (%d bytes) from %s", stored, len(file_bytes), current_user.id
    )

    return UploadResponse(
        file_url=UploadedFile(url=f"{UPLOAD_URL_PREFIX}/{stored}", filename=filename),
        file_type=file.content_type or "application/octet-stream",
        file_size=len(file_bytes),
    )


# =============================================================================
# PATCH: Pin toggle
# =============================================================================


@router.patch(
    "/messages/{message_id}/pin",
    responses=problem_responses(
        NotAuthenticated, NotOrganizer, MessageNotFound, PinConflict
    ),
)
async def toggle_pin(
    chat: ChatServiceDep,
    broker: BrokerDep,
    _organizer: OrganizerDep,
    message_id: int,
    request: PinRequest,
) -> MessageResponse:
    """Pin or unpin a message. At most one message per event is pinned."""
    msg = await chat.toggle_pin(request.event_id, message_id)
    await broker.broadcast(
        event_channel(request.event_id), MessagePinned(**msg.model_dump())
    )
    return msg
