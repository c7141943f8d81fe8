"""Registration and attendance REST API endpoints.

Organizers scan entry and exit QR codes; every attendance change is
broadcast as ``attendanceUpdated`` to ``attendance:{event_id}``.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from prakritimitra.auth import Principal
from prakritimitra.dependencies import (
    BrokerDep,
    CurrentUserDep,
    OrganizerDep,
    SessionDep,
)
from prakritimitra.exceptions import (
    AlreadyRegistered,
    AttendanceLocked,
    EventNotFound,
    ExitTokenInvalid,
    Forbidden,
    NotAuthenticated,
    NotCheckedIn,
    NotOrganizer,
    RegistrationNotFound,
    problem_responses,
)
from prakritimitra.models import Registration
from prakritimitra.schemas import (
    AttendanceResponse,
    AttendanceUpdate,
    ExitScanResponse,
    InTimeUpdate,
    OutTimeUpdate,
    RegistrationCheckResponse,
    RegistrationCreate,
    RegistrationResponse,
    StatsResponse,
)
from prakritimitra.services import qr
from prakritimitra.services.attendance_service import (
    AttendanceAction,
    AttendanceService,
    attendance_update,
    registration_to_response,
)
from prakritimitra.services.room_broker import RoomBroker, attendance_channel

router = APIRouter(prefix="/api/registrations", tags=["registrations"])


def get_attendance_service(session: SessionDep) -> AttendanceService:
    return AttendanceService(session)


AttendanceServiceDep = Annotated[AttendanceService, Depends(get_attendance_service)]


async def _notify(
    broker: RoomBroker, reg: Registration, action: AttendanceAction
) -> None:
    await broker.broadcast(
        attendance_channel(reg.event_id), attendance_update(reg, action)
    )


def _check_owner_or_organizer(reg: Registration, user: Principal) -> None:
    if reg.volunteer_id != user.id and not user.is_organizer:
        raise Forbidden.exception("Not your registration")


# =============================================================================
# Registration
# =============================================================================


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    responses=problem_responses(NotAuthenticated, EventNotFound, AlreadyRegistered),
)
async def register(
    service: AttendanceServiceDep,
    current_user: CurrentUserDep,
    request: RegistrationCreate,
) -> RegistrationResponse:
    """Register the current user as a volunteer for an event."""
    reg = await service.register(request.event_id, current_user)
    return registration_to_response(reg)


@router.get(
    "/{event_id}/check",
    responses=problem_responses(NotAuthenticated),
)
async def check_registration(
    service: AttendanceServiceDep,
    current_user: CurrentUserDep,
    event_id: str,
) -> RegistrationCheckResponse:
    """Whether the current user is registered for an event."""
    reg = await service.find(event_id, current_user.id)
    return RegistrationCheckResponse(
        registered=reg is not None,
        registration_id=reg.id if reg is not None else None,
    )


@router.get(
    "/event/{event_id}/volunteers",
    responses=problem_responses(NotAuthenticated, NotOrganizer, EventNotFound),
)
async def list_volunteers(
    service: AttendanceServiceDep,
    _organizer: OrganizerDep,
    event_id: str,
) -> list[RegistrationResponse]:
    """All volunteer registrations of an event with attendance state."""
    return [registration_to_response(r) for r in await service.list_for_event(event_id)]


@router.get(
    "/event/{event_id}/stats",
    responses=problem_responses(NotAuthenticated, NotOrganizer, EventNotFound),
)
async def attendance_stats(
    service: AttendanceServiceDep,
    _organizer: OrganizerDep,
    event_id: str,
) -> StatsResponse:
    """Live attendance counters for the organizer dashboard."""
    return StatsResponse(data=await service.stats(event_id))


# =============================================================================
# Entry / exit
# =============================================================================


@router.patch(
    "/{registration_id}/attendance",
    responses=problem_responses(
        NotAuthenticated, NotOrganizer, RegistrationNotFound, AttendanceLocked
    ),
)
async def update_attendance(
    service: AttendanceServiceDep,
    broker: BrokerDep,
    _organizer: OrganizerDep,
    registration_id: str,
    request: AttendanceUpdate,
) -> AttendanceResponse:
    """Mark attendance (entry QR scan or checkbox).

    Marking present records ``in_time`` and issues the exit token. Repeating
    it is a no-op reported with ``alreadyCheckedIn``.
    """
    reg, already = await service.set_attendance(registration_id, request.has_attended)
    if already:
        message = "Volunteer already checked in."
    elif request.has_attended:
        message = "Attendance marked."
    else:
        message = "Attendance unmarked."
    if not already:
        action: AttendanceAction = "check_in" if request.has_attended else "attendance"
        await _notify(broker, reg, action)
    return AttendanceResponse(
        message=message,
        already_checked_in=already,
        registration=registration_to_response(reg),
    )


@router.post(
    "/exit/{exit_qr_token}",
    responses=problem_responses(NotAuthenticated, NotOrganizer, ExitTokenInvalid),
)
async def exit_scan(
    service: AttendanceServiceDep,
    broker: BrokerDep,
    _organizer: OrganizerDep,
    exit_qr_token: str,
) -> ExitScanResponse:
    """Consume an exit QR token and record ``out_time``."""
    reg = await service.check_out(exit_qr_token)
    await _notify(broker, reg, "check_out")
    return ExitScanResponse(
        message="Exit recorded.",
        out_time=reg.out_time,  # type: ignore[arg-type]
        registration=registration_to_response(reg),
    )


@router.patch(
    "/{registration_id}/in-time",
    responses=problem_responses(NotAuthenticated, NotOrganizer, RegistrationNotFound),
)
async def update_in_time(
    service: AttendanceServiceDep,
    broker: BrokerDep,
    _organizer: OrganizerDep,
    registration_id: str,
    request: InTimeUpdate,
) -> RegistrationResponse:
    """Manually correct ``in_time``."""
    reg = await service.set_in_time(registration_id, request.in_time)
    await _notify(broker, reg, "in_time")
    return registration_to_response(reg)


@router.patch(
    "/{registration_id}/out-time",
    responses=problem_responses(NotAuthenticated, NotOrganizer, RegistrationNotFound),
)
async def update_out_time(
    service: AttendanceServiceDep,
    broker: BrokerDep,
    _organizer: OrganizerDep,
    registration_id: str,
    request: OutTimeUpdate,
) -> RegistrationResponse:
    """Manually correct ``out_time``."""
    reg = await service.set_out_time(registration_id, request.out_time)
    await _notify(broker, reg, "out_time")
    return registration_to_response(reg)


# =============================================================================
# QR images
# =============================================================================


@router.get(
    "/{registration_id}/entry-qr",
    response_class=Response,
    responses={
        200: {"content": {"image/png": {}}},
        **problem_responses(NotAuthenticated, Forbidden, RegistrationNotFound),
    },
)
async def entry_qr(
    service: AttendanceServiceDep,
    current_user: CurrentUserDep,
    registration_id: str,
) -> Response:
    """PNG entry QR code for a registration."""
    reg = await service.get(registration_id)
    _check_owner_or_organizer(reg, current_user)
    png = qr.render_png(qr.entry_payload(reg.id))
    return Response(content=png, media_type="image/png")


@router.get(
    "/{registration_id}/exit-qr",
    response_class=Response,
    responses={
        200: {"content": {"image/png": {}}},
        **problem_responses(
            NotAuthenticated, Forbidden, RegistrationNotFound, NotCheckedIn
        ),
    },
)
async def exit_qr(
    service: AttendanceServiceDep,
    current_user: CurrentUserDep,
    registration_id: str,
) -> Response:
    """PNG exit QR code, available between check-in and check-out."""
    reg = await service.get(registration_id)
    _check_owner_or_organizer(reg, current_user)
    token = await service.exit_token(registration_id)
    png = qr.render_png(qr.exit_payload(token))
    return Response(content=png, media_type="image/png")
