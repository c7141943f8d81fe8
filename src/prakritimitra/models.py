import uuid as uuid_mod
from datetime import UTC, datetime

from sqlalchemy import Index, TypeDecorator, UniqueConstraint
from sqlalchemy import text as sql_text
from sqlalchemy.types import DateTime
from sqlmodel import Field, SQLModel


class UTCDateTime(TypeDecorator):
    """SQLAlchemy type that ensures datetimes are always UTC-aware.

    SQLite strips timezone info on storage. This type decorator
    re-attaches UTC on load so consumers never see naive datetimes.
    """

    impl = DateTime
    cache_ok = True

    def process_result_value(
        self, value: datetime | None, dialect: object
    ) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _uuid() -> str:
    return str(uuid_mod.uuid4())


class Event(SQLModel, table=True):
    """Event that owns a chat room and an attendance register."""

    id: str = Field(default_factory=_uuid, primary_key=True)
    title: str
    start_at: datetime | None = Field(default=None, sa_type=UTCDateTime())
    end_at: datetime | None = Field(default=None, sa_type=UTCDateTime())
    created_by_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=_utcnow, sa_type=UTCDateTime())


class Message(SQLModel, table=True):
    """Chat message in an event room.

    Sender details are denormalized at send time so history survives
    account deletion (``sender_id`` becomes NULL, ``is_sender_deleted``
    is set and ``sender_name`` is kept as the last known name).
    """

    __table_args__ = (
        # At most one pinned message per event
        Index(
            "uq_message_pinned_per_event",
            "event_id",
            unique=True,
            sqlite_where=sql_text("is_pinned = 1"),
            postgresql_where=sql_text("is_pinned"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    event_id: str = Field(foreign_key="event.id", index=True)
    sender_id: str | None = Field(default=None, index=True)
    sender_name: str = ""
    sender_role: str | None = None
    is_sender_deleted: bool = Field(default=False)
    text: str
    file_url: str | None = None
    file_name: str | None = None
    file_type: str | None = None
    file_size: int | None = None
    reply_to_id: int | None = Field(default=None, foreign_key="message.id")
    is_pinned: bool = Field(default=False)
    edit_count: int = Field(default=0)
    edited_at: datetime | None = Field(default=None, sa_type=UTCDateTime())
    unsent_at: datetime | None = Field(default=None, sa_type=UTCDateTime())
    created_at: datetime = Field(default_factory=_utcnow, sa_type=UTCDateTime())


class Reaction(SQLModel, table=True):
    """One emoji reaction by one user on one message."""

    __table_args__ = (
        UniqueConstraint("message_id", "user_id", "emoji", name="uq_reaction"),
    )

    id: int | None = Field(default=None, primary_key=True)
    message_id: int = Field(foreign_key="message.id", index=True)
    user_id: str = Field(index=True)
    user_name: str = ""
    emoji: str
    created_at: datetime = Field(default_factory=_utcnow, sa_type=UTCDateTime())


class Registration(SQLModel, table=True):
    """A volunteer's registration and attendance record for one event.

    Registrations are never deleted once attendance is recorded; they are
    the historical attendance log.
    """

    __table_args__ = (
        UniqueConstraint("event_id", "volunteer_id", name="uq_registration"),
    )

    id: str = Field(default_factory=_uuid, primary_key=True)
    event_id: str = Field(foreign_key="event.id", index=True)
    volunteer_id: str = Field(index=True)
    volunteer_name: str = ""
    has_attended: bool = Field(default=False)
    in_time: datetime | None = Field(default=None, sa_type=UTCDateTime())
    out_time: datetime | None = Field(default=None, sa_type=UTCDateTime())
    exit_qr_token: str | None = Field(default=None, unique=True)
    created_at: datetime = Field(default_factory=_utcnow, sa_type=UTCDateTime())
