"""Live attendance statistics for the organizer dashboard."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import httpx

from prakritimitra.client.connection import ApiError, ConnectionManager
from prakritimitra.schemas import AttendanceStats, StatsResponse

log = logging.getLogger(__name__)

POLL_INTERVAL = 120.0  # seconds


class AttendanceStatsWatcher:
    """Keep ``stats`` current from the attendance room plus a slow poll.

    Every ``attendanceUpdated`` broadcast triggers a refetch. The poll
    covers broadcasts missed while disconnected.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        event_id: str,
        poll_interval: float = POLL_INTERVAL,
        on_stats: Callable[[AttendanceStats], Any] | None = None,
    ) -> None:
        self.connection = connection
        self.event_id = event_id
        self.poll_interval = poll_interval
        self.on_stats = on_stats
        self.stats: AttendanceStats | None = None
        self._poll_task: asyncio.Task | None = None

    async def start(self) -> None:
        self.connection.on("attendanceUpdated", self._on_update)
        await self.connection.join("joinAttendanceRoom", self.event_id)
        await self.refresh()
        self._poll_task = asyncio.create_task(self._poll())

    async def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        self.connection.off("attendanceUpdated", self._on_update)
        await self.connection.leave(
            "joinAttendanceRoom", "leaveAttendanceRoom", self.event_id
        )

    async def refresh(self) -> AttendanceStats:
        resp = await self.connection.request(
            "GET", f"/api/registrations/event/{self.event_id}/stats"
        )
        self.stats = StatsResponse.model_validate(resp.json()).data
        if self.on_stats is not None:
            self.on_stats(self.stats)
        return self.stats

    async def _on_update(self, data: Any) -> None:
        if isinstance(data, dict) and data.get("eventId") != self.event_id:
            return
        try:
            await self.refresh()
        except (ApiError, httpx.TransportError) as e:
            log.warning("Stats refresh after update failed: %s", e)

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.refresh()
            except (ApiError, httpx.TransportError) as e:
                log.warning("Periodic stats refresh failed: %s", e)
