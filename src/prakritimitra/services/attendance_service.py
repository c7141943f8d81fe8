"""Registration and attendance store.

Check-in and check-out are single conditional UPDATEs so that repeated or
concurrent scans of the same QR code are resolved by the database:

- entry only sets ``in_time`` while it is NULL (idempotent)
- exit only consumes an ``exit_qr_token`` once (single use)
"""

import logging
import secrets
from datetime import UTC, datetime, timedelta
from typing import Literal

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from prakritimitra.auth import Principal
from prakritimitra.dependencies import verify_event
from prakritimitra.exceptions import (
    AlreadyRegistered,
    AttendanceLocked,
    ExitTokenInvalid,
    NotCheckedIn,
    RegistrationNotFound,
)
from prakritimitra.models import Event, Registration
from prakritimitra.schemas import (
    AttendanceStats,
    EventSummary,
    OverallStats,
    RecentActivity,
    RegistrationResponse,
    VolunteerStats,
)
from prakritimitra.socket_events import AttendanceUpdated

log = logging.getLogger(__name__)

RECENT_ACTIVITY_WINDOW = timedelta(minutes=10)

AttendanceAction = Literal["check_in", "check_out", "attendance", "in_time", "out_time"]


def new_exit_token() -> str:
    return secrets.token_urlsafe(24)


def registration_to_response(reg: Registration) -> RegistrationResponse:
    return RegistrationResponse.model_validate(reg, from_attributes=True)


def attendance_update(reg: Registration, action: AttendanceAction) -> AttendanceUpdated:
    return AttendanceUpdated(
        event_id=reg.event_id,
        registration_id=reg.id,
        action=action,
        has_attended=reg.has_attended,
        in_time=reg.in_time,
        out_time=reg.out_time,
    )


def _since(value: datetime | None, cutoff: datetime) -> bool:
    return value is not None and value >= cutoff


def compute_stats(
    event: Event, registrations: list[Registration], now: datetime
) -> AttendanceStats:
    """Aggregate attendance counters for the live dashboard."""
    total = len(registrations)
    checked_in = sum(1 for r in registrations if r.in_time is not None)
    checked_out = sum(1 for r in registrations if r.out_time is not None)
    currently_present = sum(
        1 for r in registrations if r.in_time is not None and r.out_time is None
    )
    total_present = sum(1 for r in registrations if r.has_attended)
    rate = round(total_present / total * 100, 1) if total else 0.0

    cutoff = now - RECENT_ACTIVITY_WINDOW
    is_ended = event.end_at is not None and event.end_at < now
    is_live = (
        event.start_at is not None
        and event.start_at <= now
        and not is_ended
    )

    return AttendanceStats(
        event=EventSummary(
            id=event.id,
            title=event.title,
            start_date_time=event.start_at,
            end_date_time=event.end_at,
            is_live=is_live,
            is_ended=is_ended,
        ),
        volunteers=VolunteerStats(
            total=total,
            checked_in=checked_in,
            currently_present=currently_present,
            checked_out=checked_out,
            not_arrived=total - checked_in,
        ),
        overall=OverallStats(
            total_participants=total,
            total_present=total_present,
            attendance_rate=rate,
        ),
        recent_activity=RecentActivity(
            window_minutes=int(RECENT_ACTIVITY_WINDOW.total_seconds() // 60),
            check_ins=sum(1 for r in registrations if _since(r.in_time, cutoff)),
            check_outs=sum(1 for r in registrations if _since(r.out_time, cutoff)),
        ),
    )


class AttendanceService:
    """Registration store for one database session."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def register(self, event_id: str, volunteer: Principal) -> Registration:
        await verify_event(self.session, event_id)
        if await self.find(event_id, volunteer.id) is not None:
            raise AlreadyRegistered.exception(
                "You have already registered for this event."
            )
        reg = Registration(
            event_id=event_id,
            volunteer_id=volunteer.id,
            volunteer_name=volunteer.name,
        )
        self.session.add(reg)
        try:
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise AlreadyRegistered.exception(
                "You have already registered for this event."
            ) from e
        await self.session.refresh(reg)
        log.info("Volunteer %s registered for event %s", volunteer.id, event_id)
        return reg

    async def find(self, event_id: str, volunteer_id: str) -> Registration | None:
        result = await self.session.execute(
            select(Registration).where(
                Registration.event_id == event_id,
                Registration.volunteer_id == volunteer_id,
            )
        )
        return result.scalars().first()

    async def get(self, registration_id: str) -> Registration:
        reg = await self.session.get(Registration, registration_id)
        if reg is None:
            raise RegistrationNotFound.exception("Registration not found.")
        return reg

    async def list_for_event(self, event_id: str) -> list[Registration]:
        await verify_event(self.session, event_id)
        result = await self.session.execute(
            select(Registration)
            .where(Registration.event_id == event_id)
            .order_by(col(Registration.created_at), col(Registration.id))
        )
        return list(result.scalars().all())

    # =========================================================================
    # Check-in / check-out
    # =========================================================================

    async def check_in(
        self, registration_id: str, now: datetime | None = None
    ) -> tuple[Registration, bool]:
        """Record entry. Returns ``(registration, already_checked_in)``.

        A repeated entry leaves ``in_time`` and the exit token untouched.
        """
        now = now or datetime.now(UTC)
        reg = await self.get(registration_id)
        result = await self.session.execute(
            update(Registration)
            .where(
                col(Registration.id) == registration_id,
                col(Registration.in_time).is_(None),
            )
            .values(in_time=now, has_attended=True, exit_qr_token=new_exit_token())
        )
        await self.session.commit()
        await self.session.refresh(reg)
        already = result.rowcount == 0  # type: ignore[attr-defined]
        if already:
            log.info("Registration %s already checked in", registration_id)
        else:
            log.info("Registration %s checked in", registration_id)
        return reg, already

    async def set_attendance(
        self, registration_id: str, has_attended: bool, now: datetime | None = None
    ) -> tuple[Registration, bool]:
        """Apply the attendance flag.

        Marking present performs a check-in. Unmarking is refused once an
        ``in_time`` exists.
        """
        if has_attended:
            return await self.check_in(registration_id, now)

        reg = await self.get(registration_id)
        if reg.in_time is not None:
            raise AttendanceLocked.exception(
                "Attendance cannot be unmarked after check-in"
            )
        reg.has_attended = False
        await self.session.commit()
        await self.session.refresh(reg)
        return reg, False

    async def check_out(self, token: str, now: datetime | None = None) -> Registration:
        """Consume an exit token and record ``out_time``."""
        now = now or datetime.now(UTC)
        result = await self.session.execute(
            select(Registration).where(Registration.exit_qr_token == token)
        )
        reg = result.scalars().first()
        if reg is None:
            raise ExitTokenInvalid.exception("Invalid or already used exit QR code")

        result = await self.session.execute(
            update(Registration)
            .where(
                col(Registration.id) == reg.id,
                col(Registration.exit_qr_token) == token,
                col(Registration.out_time).is_(None),
            )
            .values(out_time=now, exit_qr_token=None)
        )
        if result.rowcount == 0:  # type: ignore[attr-defined]
            await self.session.rollback()
            raise ExitTokenInvalid.exception("Invalid or already used exit QR code")
        await self.session.commit()
        await self.session.refresh(reg)
        log.info("Registration %s checked out", reg.id)
        return reg

    async def exit_token(self, registration_id: str) -> str:
        """Exit token for a checked-in registration, issuing one if missing."""
        reg = await self.get(registration_id)
        if reg.in_time is None or reg.out_time is not None:
            raise NotCheckedIn.exception(
                "Exit QR code is only available between check-in and check-out"
            )
        if reg.exit_qr_token is None:
            reg.exit_qr_token = new_exit_token()
            await self.session.commit()
            await self.session.refresh(reg)
        return reg.exit_qr_token  # type: ignore[return-value]

    # =========================================================================
    # Manual corrections
    # =========================================================================

    async def set_in_time(
        self, registration_id: str, value: datetime | None
    ) -> Registration:
        reg = await self.get(registration_id)
        reg.in_time = value
        await self.session.commit()
        await self.session.refresh(reg)
        return reg

    async def set_out_time(
        self, registration_id: str, value: datetime | None
    ) -> Registration:
        reg = await self.get(registration_id)
        reg.out_time = value
        await self.session.commit()
        await self.session.refresh(reg)
        return reg

    async def stats(
        self, event_id: str, now: datetime | None = None
    ) -> AttendanceStats:
        event = await verify_event(self.session, event_id)
        registrations = await self.list_for_event(event_id)
        return compute_stats(event, registrations, now or datetime.now(UTC))
