"""Pydantic models for Socket.IO events.

Event names are derived from class names in lowerCamelCase:
- JoinEventRoom -> "joinEventRoom"
- MessageUnsent -> "messageUnsent"

Handler failures are reported to the caller as ``<eventName>Error``.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, Field, model_validator

from prakritimitra.schemas import ApiModel, Attachment, MessageResponse


def event_name(model: type[ApiModel] | ApiModel) -> str:
    """Socket.IO event name for a model class or instance."""
    cls = model if isinstance(model, type) else type(model)
    name = cls.__name__
    return name[0].lower() + name[1:]


def error_event_name(name: str) -> str:
    return f"{name}Error"


# =============================================================================
# Request Models (client -> server)
# =============================================================================


class _EventScoped(ApiModel):
    """Payload addressing one event.

    Accepts the bare event id string used by older clients.
    """

    event_id: str = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _wrap_bare_id(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"eventId": data}
        return data


class JoinEventRoom(_EventScoped):
    """Join an event's chat room."""


class LeaveEventRoom(_EventScoped):
    """Leave an event's chat room."""


class JoinAttendanceRoom(_EventScoped):
    """Join an event's live attendance room (organizers only)."""


class LeaveAttendanceRoom(_EventScoped):
    """Leave an event's live attendance room."""


class SendMessage(_EventScoped):
    """Send a text message or a single-attachment message."""

    text: str | None = Field(
        default=None, validation_alias=AliasChoices("text", "message")
    )
    attachment: Attachment | None = None
    reply_to: int | None = Field(
        default=None, validation_alias=AliasChoices("replyTo", "reply_to")
    )


class EditMessage(_EventScoped):
    message_id: int
    new_text: str


class UnsendMessage(_EventScoped):
    message_id: int


class PinMessage(_EventScoped):
    message_id: int


class ReactToMessage(_EventScoped):
    message_id: int
    emoji: str = Field(min_length=1, max_length=16)


class Typing(_EventScoped):
    """User is typing."""


class StopTyping(_EventScoped):
    """User stopped typing."""


# =============================================================================
# Broadcast Models (server -> clients)
# =============================================================================


class ReceiveMessage(MessageResponse):
    """Broadcast new message in an event room."""


class MessageEdited(MessageResponse):
    """Broadcast message was edited."""


class MessagePinned(MessageResponse):
    """Broadcast pin state of a message changed."""


class MessageReactionUpdate(MessageResponse):
    """Broadcast reactions of a message changed."""


class MessageUnsent(ApiModel):
    """Broadcast message was retracted by its sender."""

    event_id: str
    message_id: int


class UserTyping(ApiModel):
    event_id: str
    user_id: str
    user_name: str


class UserStoppedTyping(ApiModel):
    event_id: str
    user_id: str


class AttendanceUpdated(ApiModel):
    """Broadcast when a registration's attendance state changes."""

    event_id: str
    registration_id: str
    action: Literal["check_in", "check_out", "attendance", "in_time", "out_time"]
    has_attended: bool
    in_time: datetime | None = None
    out_time: datetime | None = None


# =============================================================================
# Acknowledgements
# =============================================================================


class RoomAck(ApiModel):
    """Acknowledgement for join/leave requests."""

    event_id: str
    channel: str
    changed: bool
