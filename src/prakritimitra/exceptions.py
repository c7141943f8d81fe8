"""RFC 9457 problem details shared by the HTTP API and Socket.IO handlers.

Each problem type is a ``ProblemType`` subclass. Subclasses register
themselves in ``PROBLEM_TYPES`` under a kebab-case id derived from the
class name, which is also the last segment of their ``type`` URI:

- ``PinConflict`` -> ``/v1/problems/pin-conflict``

Raise them with ``PinConflict.exception("...")``.
"""

import re
from typing import Any, ClassVar

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

PROBLEM_BASE_URI = "/v1/problems"


class ProblemDetail(BaseModel):
    """RFC 9457 problem document."""

    type: str = "about:blank"
    title: str
    status: int
    detail: str | None = None
    instance: str | None = None


class ProblemException(Exception):
    """Exception carrying a ``ProblemDetail``."""

    def __init__(self, problem: ProblemDetail) -> None:
        super().__init__(problem.detail or problem.title)
        self.problem = problem

    @property
    def status(self) -> int:
        return self.problem.status


PROBLEM_TYPES: dict[str, type["ProblemType"]] = {}


def _kebab(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "-", name).lower()


class ProblemType:
    """Base class for documented problem types."""

    title: ClassVar[str] = "Error"
    status: ClassVar[int] = 500

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        PROBLEM_TYPES[cls.problem_id()] = cls

    @classmethod
    def problem_id(cls) -> str:
        return _kebab(cls.__name__)

    @classmethod
    def type_uri(cls) -> str:
        return f"{PROBLEM_BASE_URI}/{cls.problem_id()}"

    @classmethod
    def create(
        cls, detail: str | None = None, instance: str | None = None
    ) -> ProblemDetail:
        return ProblemDetail(
            type=cls.type_uri(),
            title=cls.title,
            status=cls.status,
            detail=detail,
            instance=instance,
        )

    @classmethod
    def exception(cls, detail: str | None = None) -> ProblemException:
        return ProblemException(cls.create(detail=detail))


def problem_responses(*problem_types: type[ProblemType]) -> dict[int | str, Any]:
    """Build the ``responses=`` mapping for a route's OpenAPI documentation."""
    responses: dict[int | str, Any] = {}
    for problem_type in problem_types:
        entry = responses.setdefault(
            problem_type.status,
            {"model": ProblemDetail, "description": problem_type.title},
        )
        if problem_type.title not in entry["description"]:
            entry["description"] += f" | {problem_type.title}"
    return responses


async def problem_exception_handler(
    _request: Request, exc: ProblemException
) -> JSONResponse:
    """Render a ProblemException as ``application/problem+json``."""
    return JSONResponse(
        status_code=exc.problem.status,
        content=exc.problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


# =============================================================================
# Generic
# =============================================================================


class UnprocessableContent(ProblemType):
    """The request body or event payload failed validation."""

    title = "Unprocessable Content"
    status = 422


class NotAuthenticated(ProblemType):
    """A valid bearer token is required."""

    title = "Not Authenticated"
    status = 401


class Forbidden(ProblemType):
    """The caller is authenticated but may not perform this action."""

    title = "Forbidden"
    status = 403


class NotOrganizer(ProblemType):
    """Only organizers (or admins) may perform this action.

    Pinning messages, scanning attendance QR codes and reading attendance
    statistics require the organizer capability.
    """

    title = "Organizer Role Required"
    status = 403


class EventNotFound(ProblemType):
    """The referenced event does not exist."""

    title = "Event Not Found"
    status = 404


class NotInRoom(ProblemType):
    """The socket has not joined the event room it is addressing."""

    title = "Not In Room"
    status = 400


# =============================================================================
# Chat
# =============================================================================


class MessageNotFound(ProblemType):
    """The message does not exist in this event, or was unsent."""

    title = "Message Not Found"
    status = 404


class NotMessageOwner(ProblemType):
    """Only the sender of a message may edit or unsend it."""

    title = "Not Message Owner"
    status = 403


class EditWindowExpired(ProblemType):
    """Messages may only be edited or unsent within 5 minutes of sending."""

    title = "Edit Window Expired"
    status = 403


class MessageAlreadyEdited(ProblemType):
    """A message may be edited exactly once."""

    title = "Message Already Edited"
    status = 409


class PinConflict(ProblemType):
    """Another message in this event is already pinned.

    Unpin it first. At most one message per event can be pinned.
    """

    title = "Another Message Is Pinned"
    status = 409


class InvalidReply(ProblemType):
    """The replied-to message does not belong to this event."""

    title = "Invalid Reply Target"
    status = 422


class FileTooLarge(ProblemType):
    """The uploaded file exceeds the 10 MB limit."""

    title = "File Too Large"
    status = 413


class UnsupportedFileType(ProblemType):
    """The uploaded file type is not accepted for chat attachments."""

    title = "Unsupported File Type"
    status = 400


# =============================================================================
# Attendance
# =============================================================================


class RegistrationNotFound(ProblemType):
    """The registration does not exist."""

    title = "Registration Not Found"
    status = 404


class AlreadyRegistered(ProblemType):
    """The volunteer is already registered for this event."""

    title = "Already Registered"
    status = 409


class AttendanceLocked(ProblemType):
    """Attendance cannot be unmarked once a check-in time is recorded."""

    title = "Attendance Locked"
    status = 409


class ExitTokenInvalid(ProblemType):
    """The exit QR token is unknown or has already been used."""

    title = "Exit Token Invalid"
    status = 404


class NotCheckedIn(ProblemType):
    """An exit QR code is only available after check-in."""

    title = "Not Checked In"
    status = 409
