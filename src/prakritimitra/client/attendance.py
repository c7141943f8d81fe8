"""Organizer-side attendance controller.

Scanned QR codes are JSON objects carrying exactly one of:

- ``registrationId``: entry, marks attendance and sets ``inTime``
- ``exitQrToken``: exit, consumes the token and sets ``outTime``

Local timestamps are always taken from the server response.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal
from urllib.parse import quote

import httpx

from prakritimitra.client.connection import ApiError, ConnectionManager
from prakritimitra.schemas import (
    AttendanceResponse,
    ExitScanResponse,
    RegistrationResponse,
)
from prakritimitra.socket_events import AttendanceUpdated

log = logging.getLogger(__name__)

SCAN_FAILURE_MESSAGE = "Invalid QR code or failed to mark attendance."

# Registration ids are UUIDs, exit tokens are urlsafe base64
QR_VALUE_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,128}")


class InvalidQrCode(ValueError):
    """The scanned text is not a recognised attendance QR payload."""


class AttendanceLockedLocally(Exception):
    """Attendance cannot be unmarked once an in-time is recorded."""


@dataclass(frozen=True)
class EntryPayload:
    registration_id: str


@dataclass(frozen=True)
class ExitPayload:
    exit_qr_token: str


def parse_qr_payload(text: str) -> EntryPayload | ExitPayload:
    """Classify a decoded QR code as entry or exit.

    Raises
    ------
    InvalidQrCode
        For non-JSON text, a non-object, or anything other than exactly one
        of ``registrationId`` / ``exitQrToken``, or a value that is not an
        id or token string.
    """
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise InvalidQrCode("QR code is not JSON") from e
    if not isinstance(data, dict):
        raise InvalidQrCode("QR code is not a JSON object")

    registration_id = data.get("registrationId")
    token = data.get("exitQrToken")
    if (registration_id is None) == (token is None):
        raise InvalidQrCode(
            "QR code must carry exactly one of registrationId or exitQrToken"
        )
    value = registration_id if registration_id is not None else token
    if not isinstance(value, str) or not QR_VALUE_PATTERN.fullmatch(value):
        raise InvalidQrCode("QR code value is not a valid id or token")
    if registration_id is not None:
        return EntryPayload(registration_id=value)
    return ExitPayload(exit_qr_token=value)


@dataclass
class ScanResult:
    ok: bool
    message: str
    kind: Literal["entry", "exit"] | None = None
    registration: RegistrationResponse | None = None
    already_checked_in: bool = False


class AttendanceController:
    """Volunteer list and QR scanning for one event."""

    def __init__(self, connection: ConnectionManager, event_id: str) -> None:
        self.connection = connection
        self.event_id = event_id
        self.registrations: dict[str, RegistrationResponse] = {}
        self.scanner_open = False
        self.last_message: str | None = None

    def listen(self) -> None:
        """Apply ``attendanceUpdated`` broadcasts to the local list."""
        self.connection.on("attendanceUpdated", self.apply_update)

    async def load(self) -> list[RegistrationResponse]:
        resp = await self.connection.request(
            "GET", f"/api/registrations/event/{self.event_id}/volunteers"
        )
        regs = [RegistrationResponse.model_validate(r) for r in resp.json()]
        self.registrations = {r.id: r for r in regs}
        return regs

    def open_scanner(self) -> None:
        self.scanner_open = True
        self.last_message = None

    # =========================================================================
    # Scanning
    # =========================================================================

    async def handle_scan(self, text: str) -> ScanResult:
        """Apply one scanned code. The scanner is closed whatever the outcome."""
        try:
            payload = parse_qr_payload(text)
            if isinstance(payload, EntryPayload):
                result = await self._entry(payload)
            else:
                result = await self._exit(payload)
        except (ValueError, ApiError, httpx.TransportError) as e:
            # ValueError covers bad QR text and malformed response bodies
            log.info("Attendance scan failed: %s", e)
            result = ScanResult(ok=False, message=SCAN_FAILURE_MESSAGE)
        finally:
            self.scanner_open = False
        self.last_message = result.message
        return result

    async def _entry(self, payload: EntryPayload) -> ScanResult:
        registration_id = quote(payload.registration_id, safe="")
        resp = await self.connection.request(
            "PATCH",
            f"/api/registrations/{registration_id}/attendance",
            json={"hasAttended": True},
        )
        body = AttendanceResponse.model_validate(resp.json())
        self._store(body.registration)
        return ScanResult(
            ok=True,
            message=body.message,
            kind="entry",
            registration=body.registration,
            already_checked_in=body.already_checked_in,
        )

    async def _exit(self, payload: ExitPayload) -> ScanResult:
        token = quote(payload.exit_qr_token, safe="")
        resp = await self.connection.request(
            "POST", f"/api/registrations/exit/{token}"
        )
        body = ExitScanResponse.model_validate(resp.json())

        # Match by token first, then by the registration the server resolved
        match = next(
            (
                r
                for r in self.registrations.values()
                if r.exit_qr_token == payload.exit_qr_token
            ),
            None,
        )
        if match is None:
            match = self.registrations.get(body.registration.id)
        if match is not None:
            self.registrations[match.id] = match.model_copy(
                update={"out_time": body.out_time, "exit_qr_token": None}
            )
        else:
            self._store(body.registration)
        return ScanResult(
            ok=True,
            message=body.message,
            kind="exit",
            registration=self.registrations.get(body.registration.id),
        )

    # =========================================================================
    # Manual edits
    # =========================================================================

    def can_toggle_attendance(self, registration_id: str) -> bool:
        """The attendance checkbox is disabled once an in-time exists."""
        reg = self.registrations.get(registration_id)
        return reg is not None and reg.in_time is None

    async def set_attendance(
        self, registration_id: str, has_attended: bool
    ) -> RegistrationResponse:
        if not self.can_toggle_attendance(registration_id):
            raise AttendanceLockedLocally(
                "Attendance is locked once a check-in time is recorded"
            )
        resp = await self.connection.request(
            "PATCH",
            f"/api/registrations/{registration_id}/attendance",
            json={"hasAttended": has_attended},
        )
        body = AttendanceResponse.model_validate(resp.json())
        return self._store(body.registration)

    async def edit_in_time(
        self, registration_id: str, value: datetime | None
    ) -> RegistrationResponse:
        return await self._edit_time(registration_id, "in-time", {"inTime": value})

    async def edit_out_time(
        self, registration_id: str, value: datetime | None
    ) -> RegistrationResponse:
        return await self._edit_time(registration_id, "out-time", {"outTime": value})

    async def _edit_time(
        self, registration_id: str, field: str, body: dict[str, Any]
    ) -> RegistrationResponse:
        payload = {k: v.isoformat() if v is not None else None for k, v in body.items()}
        resp = await self.connection.request(
            "PATCH", f"/api/registrations/{registration_id}/{field}", json=payload
        )
        return self._store(RegistrationResponse.model_validate(resp.json()))

    # =========================================================================
    # Live updates
    # =========================================================================

    def apply_update(self, data: dict[str, Any] | AttendanceUpdated) -> None:
        """Merge an ``attendanceUpdated`` broadcast into the local list."""
        update = AttendanceUpdated.model_validate(data)
        if update.event_id != self.event_id:
            return
        reg = self.registrations.get(update.registration_id)
        if reg is None:
            return
        self.registrations[reg.id] = reg.model_copy(
            update={
                "has_attended": update.has_attended,
                "in_time": update.in_time,
                "out_time": update.out_time,
            }
        )

    def _store(self, reg: RegistrationResponse) -> RegistrationResponse:
        self.registrations[reg.id] = reg
        return reg
