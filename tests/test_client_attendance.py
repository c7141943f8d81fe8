"""Tests for QR payload parsing, the attendance controller and stats watcher."""

import asyncio
import json
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest

from prakritimitra.client.attendance import (
    SCAN_FAILURE_MESSAGE,
    AttendanceController,
    AttendanceLockedLocally,
    EntryPayload,
    ExitPayload,
    InvalidQrCode,
    parse_qr_payload,
)
from prakritimitra.client.connection import ConnectionManager
from prakritimitra.client.dashboard import AttendanceStatsWatcher
from prakritimitra.services import qr

EVENT_ID = "e1"
IN_TIME = "2026-03-01T09:00:00Z"
OUT_TIME = "2026-03-01T12:00:00Z"


def registration_json(reg_id: str, **extra: Any) -> dict[str, Any]:
    return {
        "id": reg_id,
        "eventId": EVENT_ID,
        "volunteerId": f"vol-{reg_id}",
        "volunteerName": reg_id.title(),
        "hasAttended": False,
        "inTime": None,
        "outTime": None,
        "exitQrToken": None,
        "createdAt": "2026-02-20T10:00:00Z",
        **extra,
    }


class FakeSocket:
    def __init__(self) -> None:
        self.connected = True
        self.handlers: dict[str, Any] = {}
        self.calls: list[tuple[str, Any]] = []

    def on(self, event: str, handler) -> None:
        self.handlers[event] = handler

    async def call(self, event: str, payload: Any, timeout: float = 10.0) -> Any:
        self.calls.append((event, payload))
        return {"eventId": EVENT_ID, "channel": f"attendance:{EVENT_ID}"}

    async def deliver(self, event: str, data: Any) -> None:
        await self.handlers[event](data)


class FakeAttendanceServer:
    def __init__(self) -> None:
        self.registrations = {
            "a": registration_json("a"),
            "b": registration_json(
                "b", hasAttended=True, inTime=IN_TIME, exitQrToken="tok-b"
            ),
        }
        self.requests: list[httpx.Request] = []
        self.stats_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/volunteers"):
            return httpx.Response(200, json=list(self.registrations.values()))
        if path.endswith("/stats"):
            self.stats_calls += 1
            return httpx.Response(200, json=stats_json(self.stats_calls))
        if path.endswith("/attendance"):
            reg_id = path.split("/")[-2]
            reg = self.registrations.get(reg_id)
            if reg is None:
                return _problem(404, "registration-not-found")
            already = reg["inTime"] is not None
            reg.update(hasAttended=True, inTime=reg["inTime"] or IN_TIME)
            if not already:
                reg["exitQrToken"] = f"tok-{reg_id}"
            message = "Volunteer already checked in." if already else "Attendance marked."
            return httpx.Response(
                200,
                json={
                    "message": message,
                    "alreadyCheckedIn": already,
                    "registration": reg,
                },
            )
        if "/exit/" in path:
            token = path.rsplit("/", 1)[-1]
            for reg in self.registrations.values():
                if reg["exitQrToken"] == token:
                    reg.update(outTime=OUT_TIME, exitQrToken=None)
                    return httpx.Response(
                        200,
                        json={
                            "message": "Exit recorded.",
                            "outTime": OUT_TIME,
                            "registration": reg,
                        },
                    )
            return _problem(404, "exit-token-invalid")
        if path.endswith("/in-time") or path.endswith("/out-time"):
            reg_id = path.split("/")[-2]
            self.registrations[reg_id].update(json.loads(request.content))
            return httpx.Response(200, json=self.registrations[reg_id])
        return _problem(404, "not-found")


def _problem(status: int, problem_id: str) -> httpx.Response:
    return httpx.Response(
        status,
        headers={"content-type": "application/problem+json"},
        json={"type": f"/v1/problems/{problem_id}", "title": "Error", "status": status},
    )


def stats_json(checked_in: int) -> dict[str, Any]:
    return {
        "success": True,
        "data": {
            "event": {
                "id": EVENT_ID,
                "title": "Beach Cleanup",
                "isLive": True,
                "isEnded": False,
            },
            "volunteers": {
                "total": 10,
                "checkedIn": checked_in,
                "currentlyPresent": checked_in,
                "checkedOut": 0,
                "notArrived": 10 - checked_in,
            },
            "overall": {
                "totalParticipants": 10,
                "totalPresent": checked_in,
                "attendanceRate": checked_in * 10.0,
            },
            "recentActivity": {"windowMinutes": 10, "checkIns": 1, "checkOuts": 0},
        },
    }


def _controller(server: FakeAttendanceServer, socket: FakeSocket | None = None):
    connection = ConnectionManager(
        base_url="http://test",
        token="token",
        sio=socket or FakeSocket(),
        transport=httpx.MockTransport(server),
    )
    return AttendanceController(connection, EVENT_ID)


# =============================================================================
# QR payloads
# =============================================================================


def test_parse_entry_payload() -> None:
    assert parse_qr_payload(qr.entry_payload("r1")) == EntryPayload("r1")


def test_parse_exit_payload() -> None:
    assert parse_qr_payload(qr.exit_payload("tok")) == ExitPayload("tok")


@pytest.mark.parametrize(
    "text",
    [
        "not json",
        "[1, 2]",
        "{}",
        '{"registrationId": "r1", "exitQrToken": "tok"}',
        '{"registrationId": ""}',
        '{"exitQrToken": 42}',
    ],
)
def test_parse_invalid_payload(text: str) -> None:
    with pytest.raises(InvalidQrCode):
        parse_qr_payload(text)


def test_render_png() -> None:
    png = qr.render_png(qr.entry_payload("r1"))
    assert png.startswith(b"\x89PNG\r\n\x1a\n")


# =============================================================================
# Scanning
# =============================================================================


@pytest.mark.asyncio
async def test_entry_scan() -> None:
    server = FakeAttendanceServer()
    controller = _controller(server)
    await controller.load()
    controller.open_scanner()

    result = await controller.handle_scan(qr.entry_payload("a"))
    assert result.ok
    assert result.kind == "entry"
    assert result.message == "Attendance marked."
    assert controller.scanner_open is False
    reg = controller.registrations["a"]
    assert reg.has_attended
    assert reg.in_time == datetime(2026, 3, 1, 9, tzinfo=UTC)


@pytest.mark.asyncio
async def test_repeated_entry_scan() -> None:
    server = FakeAttendanceServer()
    controller = _controller(server)
    await controller.load()

    result = await controller.handle_scan(qr.entry_payload("b"))
    assert result.ok
    assert result.already_checked_in
    assert result.message == "Volunteer already checked in."


@pytest.mark.asyncio
async def test_exit_scan_matches_by_token() -> None:
    server = FakeAttendanceServer()
    controller = _controller(server)
    await controller.load()

    result = await controller.handle_scan(qr.exit_payload("tok-b"))
    assert result.ok
    assert result.kind == "exit"
    reg = controller.registrations["b"]
    assert reg.out_time == datetime(2026, 3, 1, 12, tzinfo=UTC)
    assert reg.exit_qr_token is None


@pytest.mark.asyncio
async def test_exit_scan_falls_back_to_registration_id() -> None:
    """A token issued after the list was loaded is matched by registration id."""
    server = FakeAttendanceServer()
    controller = _controller(server)
    await controller.load()
    server.registrations["b"]["exitQrToken"] = "tok-new"

    result = await controller.handle_scan(qr.exit_payload("tok-new"))
    assert result.ok
    assert controller.registrations["b"].out_time is not None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "text",
    [
        "garbage",
        '{"registrationId": "missing"}',
        '{"exitQrToken": "used"}',
    ],
)
async def test_failed_scans_share_one_message(text: str) -> None:
    server = FakeAttendanceServer()
    controller = _controller(server)
    await controller.load()
    controller.open_scanner()

    result = await controller.handle_scan(text)
    assert not result.ok
    assert result.message == SCAN_FAILURE_MESSAGE
    assert controller.scanner_open is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "text",
    [
        '{"registrationId": "../chatbox/messages/7/pin?x="}',
        '{"exitQrToken": "../../events?x="}',
        '{"registrationId": "a/attendance"}',
        '{"exitQrToken": "tok b"}',
    ],
)
async def test_scan_rejects_path_characters(text: str) -> None:
    server = FakeAttendanceServer()
    controller = _controller(server)

    result = await controller.handle_scan(text)
    assert not result.ok
    assert result.message == SCAN_FAILURE_MESSAGE
    assert server.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, content=b"<html>proxy</html>"),
        httpx.Response(200, json={"unexpected": True}),
    ],
)
async def test_malformed_scan_response(response: httpx.Response) -> None:
    connection = ConnectionManager(
        base_url="http://test",
        token="token",
        sio=FakeSocket(),
        transport=httpx.MockTransport(lambda request: response),
    )
    controller = AttendanceController(connection, EVENT_ID)
    controller.open_scanner()

    result = await controller.handle_scan(qr.entry_payload("r1"))
    assert not result.ok
    assert result.message == SCAN_FAILURE_MESSAGE
    assert controller.scanner_open is False


@pytest.mark.asyncio
async def test_network_failure_during_scan() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    connection = ConnectionManager(
        base_url="http://test",
        token="token",
        sio=FakeSocket(),
        transport=httpx.MockTransport(handler),
    )
    controller = AttendanceController(connection, EVENT_ID)
    result = await controller.handle_scan(qr.entry_payload("a"))
    assert result.message == SCAN_FAILURE_MESSAGE


# =============================================================================
# Manual edits and live updates
# =============================================================================


@pytest.mark.asyncio
async def test_attendance_checkbox_locked_after_check_in() -> None:
    server = FakeAttendanceServer()
    controller = _controller(server)
    await controller.load()

    assert controller.can_toggle_attendance("a")
    assert not controller.can_toggle_attendance("b")
    with pytest.raises(AttendanceLockedLocally):
        await controller.set_attendance("b", False)
    assert not any(r.url.path.endswith("/attendance") for r in server.requests)


@pytest.mark.asyncio
async def test_edit_times() -> None:
    server = FakeAttendanceServer()
    controller = _controller(server)
    await controller.load()

    reg = await controller.edit_out_time("b", datetime(2026, 3, 1, 13, tzinfo=UTC))
    assert reg.out_time == datetime(2026, 3, 1, 13, tzinfo=UTC)
    assert reg.in_time == datetime(2026, 3, 1, 9, tzinfo=UTC)
    sent = json.loads(server.requests[-1].content)
    assert sent == {"outTime": "2026-03-01T13:00:00+00:00"}


@pytest.mark.asyncio
async def test_apply_update_broadcast() -> None:
    socket = FakeSocket()
    server = FakeAttendanceServer()
    controller = _controller(server, socket)
    await controller.load()
    controller.listen()

    await socket.deliver(
        "attendanceUpdated",
        {
            "eventId": EVENT_ID,
            "registrationId": "a",
            "action": "check_in",
            "hasAttended": True,
            "inTime": IN_TIME,
            "outTime": None,
        },
    )
    assert controller.registrations["a"].has_attended
    assert controller.registrations["a"].in_time is not None

    # Updates for other events are ignored
    controller.apply_update(
        {
            "eventId": "other",
            "registrationId": "a",
            "action": "attendance",
            "hasAttended": False,
        }
    )
    assert controller.registrations["a"].has_attended


# =============================================================================
# Dashboard
# =============================================================================


@pytest.mark.asyncio
async def test_stats_watcher_refreshes_on_update() -> None:
    socket = FakeSocket()
    server = FakeAttendanceServer()
    connection = ConnectionManager(
        base_url="http://test",
        token="token",
        sio=socket,
        transport=httpx.MockTransport(server),
    )
    seen = []
    watcher = AttendanceStatsWatcher(
        connection, EVENT_ID, poll_interval=3600, on_stats=seen.append
    )

    await watcher.start()
    assert socket.calls[0] == ("joinAttendanceRoom", {"eventId": EVENT_ID})
    assert watcher.stats is not None
    assert watcher.stats.volunteers.checked_in == 1

    await socket.deliver(
        "attendanceUpdated",
        {"eventId": EVENT_ID, "registrationId": "a", "action": "check_in"},
    )
    assert watcher.stats.volunteers.checked_in == 2
    assert len(seen) == 2

    await watcher.stop()
    assert socket.calls[-1] == ("leaveAttendanceRoom", {"eventId": EVENT_ID})
    assert connection.rooms == []


@pytest.mark.asyncio
async def test_stats_watcher_polls() -> None:
    server = FakeAttendanceServer()
    connection = ConnectionManager(
        base_url="http://test",
        token="token",
        sio=FakeSocket(),
        transport=httpx.MockTransport(server),
    )
    watcher = AttendanceStatsWatcher(connection, EVENT_ID, poll_interval=0.01)
    await watcher.start()
    await asyncio.sleep(0.05)
    await watcher.stop()
    assert server.stats_calls >= 2
