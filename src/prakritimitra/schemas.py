"""Pydantic request/response models for the REST API.

All models serialize with camelCase aliases (``eventId``, ``inTime``) and
accept either camelCase or snake_case on input.
"""

from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Senders
# =============================================================================


class ActiveSender(ApiModel):
    """Sender whose account still exists."""

    kind: Literal["active"] = "active"
    id: str
    name: str
    role: str | None = None


class DeletedSender(ApiModel):
    """Sender whose account was deleted after the message was sent."""

    kind: Literal["deleted"] = "deleted"
    last_known_name: str = "Deleted User"


Sender = Annotated[ActiveSender | DeletedSender, Field(discriminator="kind")]


def sender_label(sender: ActiveSender | DeletedSender) -> str:
    """Display name for a sender."""
    match sender:
        case ActiveSender(name=name):
            return name or "User"
        case DeletedSender(last_known_name=name):
            return f"{name} (deleted)"
    raise TypeError(f"Unknown sender variant: {sender!r}")


# =============================================================================
# Chat
# =============================================================================


class Attachment(ApiModel):
    url: str
    filename: str
    mime_type: str
    size_bytes: int | None = None


class ReactionEntry(ApiModel):
    user_id: str
    emoji: str


class ReactionSummary(ApiModel):
    emoji: str
    count: int
    user_ids: list[str]


class ReplyPreview(ApiModel):
    id: int
    text: str
    sender: Sender


class MessageResponse(ApiModel):
    id: int
    event_id: str
    sender: Sender
    text: str
    created_at: datetime
    edited_at: datetime | None = None
    edit_count: int = 0
    is_edited: bool = False
    is_pinned: bool = False
    reply_to: ReplyPreview | None = None
    reactions: list[ReactionEntry] = []
    reaction_summary: list[ReactionSummary] = []
    attachment: Attachment | None = None


class PinRequest(ApiModel):
    event_id: str


class UploadedFile(ApiModel):
    url: str
    filename: str


class UploadResponse(ApiModel):
    file_url: UploadedFile
    file_type: str
    file_size: int


# =============================================================================
# Events
# =============================================================================


class EventCreate(ApiModel):
    title: str = Field(min_length=1, max_length=200)
    start_at: datetime | None = None
    end_at: datetime | None = None


class EventResponse(ApiModel):
    id: str
    title: str
    start_at: datetime | None = None
    end_at: datetime | None = None
    created_by_id: str | None = None
    created_at: datetime


# =============================================================================
# Registrations & attendance
# =============================================================================


class RegistrationCreate(ApiModel):
    event_id: str


class RegistrationResponse(ApiModel):
    id: str
    event_id: str
    volunteer_id: str
    volunteer_name: str
    has_attended: bool
    in_time: datetime | None = None
    out_time: datetime | None = None
    exit_qr_token: str | None = None
    created_at: datetime


class RegistrationCheckResponse(ApiModel):
    registered: bool
    registration_id: str | None = None


class AttendanceUpdate(ApiModel):
    has_attended: bool


class AttendanceResponse(ApiModel):
    message: str
    already_checked_in: bool = False
    registration: RegistrationResponse


class ExitScanResponse(ApiModel):
    message: str
    out_time: datetime
    registration: RegistrationResponse


class InTimeUpdate(ApiModel):
    in_time: datetime | None


class OutTimeUpdate(ApiModel):
    out_time: datetime | None


class EventSummary(ApiModel):
    id: str
    title: str
    start_date_time: datetime | None = None
    end_date_time: datetime | None = None
    is_live: bool
    is_ended: bool


class VolunteerStats(ApiModel):
    total: int
    checked_in: int
    currently_present: int
    checked_out: int
    not_arrived: int


class OverallStats(ApiModel):
    total_participants: int
    total_present: int
    attendance_rate: float


class RecentActivity(ApiModel):
    window_minutes: int
    check_ins: int
    check_outs: int


class AttendanceStats(ApiModel):
    event: EventSummary
    volunteers: VolunteerStats
    overall: OverallStats
    recent_activity: RecentActivity


class StatsResponse(ApiModel):
    success: bool = True
    data: AttendanceStats
