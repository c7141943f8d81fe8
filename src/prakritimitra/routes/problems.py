"""Catalogue of the error documents returned by the chat and attendance API.

Clients branch on the last segment of a problem's ``type`` URI (for example
``pin-conflict`` or ``exit-token-invalid``). These endpoints let them look
up what each one means. The same documents are sent as Socket.IO acks and
``<event>Error`` payloads.
"""

import inspect

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from prakritimitra.exceptions import PROBLEM_TYPES, ProblemDetail, ProblemException
from prakritimitra.schemas import ApiModel

router = APIRouter(prefix="/v1/problems", tags=["problems"])


class ProblemTypeInfo(ApiModel):
    id: str
    type: str
    title: str
    status: int


@router.get("")
def list_problem_types() -> list[ProblemTypeInfo]:
    """All problem types, grouped by HTTP status."""
    infos = [
        ProblemTypeInfo(
            id=problem_id,
            type=problem_type.type_uri(),
            title=problem_type.title,
            status=problem_type.status,
        )
        for problem_id, problem_type in PROBLEM_TYPES.items()
    ]
    return sorted(infos, key=lambda info: (info.status, info.id))


@router.get("/{problem_id}", response_class=PlainTextResponse)
def describe_problem_type(problem_id: str) -> str:
    """Markdown description of one problem type."""
    problem_type = PROBLEM_TYPES.get(problem_id)
    if problem_type is None:
        raise ProblemException(
            ProblemDetail(
                title="Not Found",
                status=404,
                detail=f"No problem type is registered as '{problem_id}'",
            )
        )

    description = inspect.cleandoc(problem_type.__doc__ or "")
    lines = [
        f"# {problem_type.__name__}",
        "",
        f"Type: {problem_type.type_uri()}",
        f"Status: {problem_type.status}",
        f"Title: {problem_type.title}",
    ]
    if description:
        lines += ["", description]
    return "\n".join(lines) + "\n"
