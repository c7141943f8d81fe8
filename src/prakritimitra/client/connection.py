"""Connection management for PrakritiMitra clients.

``ConnectionManager`` owns one Socket.IO client and one httpx client for a
server and is passed to every controller that needs it; nothing in this
package opens a connection of its own.
"""

import inspect
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
import socketio

log = logging.getLogger(__name__)

RECONNECTION_ATTEMPTS = 5
RECONNECTION_DELAY = 1.0  # seconds


class NotConnectedError(RuntimeError):
    """Raised when emitting while the socket is disconnected.

    Nothing is queued; the caller decides whether to retry.
    """


class ApiError(Exception):
    """HTTP error response, carrying the server's RFC 9457 problem if any."""

    def __init__(self, status: int, problem: dict[str, Any] | None = None) -> None:
        self.status = status
        self.problem = problem or {}
        super().__init__(self.detail)

    @property
    def detail(self) -> str:
        return str(
            self.problem.get("detail") or self.problem.get("title") or self.status
        )

    @property
    def problem_id(self) -> str | None:
        """Last segment of the problem ``type`` URI, e.g. ``pin-conflict``."""
        type_uri = self.problem.get("type")
        if not type_uri or type_uri == "about:blank":
            return None
        return type_uri.rstrip("/").rsplit("/", 1)[-1]

    @classmethod
    def from_response(cls, resp: httpx.Response) -> "ApiError":
        problem: dict[str, Any] = {}
        content_type = resp.headers.get("content-type", "")
        if "json" in content_type:
            try:
                body = resp.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                problem = body
        if not problem:
            problem = {
                "title": resp.reason_phrase or "Error",
                "status": resp.status_code,
                "detail": resp.text[:500],
            }
        return cls(resp.status_code, problem)

    @classmethod
    def from_ack(cls, ack: Any) -> "ApiError | None":
        """Problem returned as a Socket.IO acknowledgement, if ``ack`` is one."""
        if isinstance(ack, dict) and isinstance(ack.get("status"), int):
            return cls(ack["status"], ack)
        return None


@dataclass
class ConnectionManager:
    """Socket.IO + REST connection to a PrakritiMitra server.

    Attributes
    ----------
    base_url
        Server base URL, e.g. ``http://localhost:5000``.
    token
        JWT bearer token, sent as Socket.IO ``auth`` and HTTP header.
    sio
        Socket.IO client. Created with the reconnect policy when omitted.
    transport
        Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    base_url: str
    token: str
    sio: Any = None
    transport: httpx.AsyncBaseTransport | None = None
    timeout: float = 30.0
    http: httpx.AsyncClient = field(init=False, repr=False)
    _handlers: dict[str, list[Callable]] = field(
        init=False, repr=False, default_factory=lambda: defaultdict(list)
    )
    _rooms: dict[tuple[str, str], None] = field(
        init=False, repr=False, default_factory=dict
    )

    def __post_init__(self) -> None:
        if self.sio is None:
            self.sio = socketio.AsyncClient(
                reconnection=True,
                reconnection_attempts=RECONNECTION_ATTEMPTS,
                reconnection_delay=RECONNECTION_DELAY,
            )
        self.sio.on("connect", self._on_connect)
        self.http = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.token}"},
            timeout=self.timeout,
            transport=self.transport,
        )

    # =========================================================================
    # Socket lifecycle
    # =========================================================================

    @property
    def connected(self) -> bool:
        return bool(self.sio.connected)

    async def connect(self) -> None:
        """Connect with JWT authentication. No-op when already connected."""
        if self.connected:
            return
        await self.sio.connect(self.base_url, auth={"token": self.token}, wait=True)

    async def disconnect(self) -> None:
        if self.connected:
            await self.sio.disconnect()

    async def close(self) -> None:
        await self.disconnect()
        await self.http.aclose()

    async def _on_connect(self) -> None:
        """Re-join every remembered room after a (re)connect."""
        for join_event, event_id in list(self._rooms):
            log.debug("Re-joining %s for event %s", join_event, event_id)
            await self.sio.emit(join_event, {"eventId": event_id})

    # =========================================================================
    # Events
    # =========================================================================

    def on(self, event: str, handler: Callable) -> None:
        """Subscribe ``handler`` to a server event. Several may share one event."""
        if not self._handlers[event]:

            async def dispatch(data: Any = None) -> None:
                for fn in list(self._handlers[event]):
                    result = fn(data)
                    if inspect.isawaitable(result):
                        await result

            self.sio.on(event, dispatch)
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Callable) -> None:
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    async def emit(self, event: str, payload: Any) -> None:
        """Fire-and-forget emit. Raises NotConnectedError when offline."""
        if not self.connected:
            raise NotConnectedError(f"Cannot emit {event!r}: not connected")
        await self.sio.emit(event, payload)

    async def call(self, event: str, payload: Any, timeout: float = 10.0) -> Any:
        """Emit and wait for the acknowledgement.

        Raises
        ------
        NotConnectedError
            When the socket is offline.
        ApiError
            When the server acknowledged with a problem document.
        """
        if not self.connected:
            raise NotConnectedError(f"Cannot emit {event!r}: not connected")
        ack = await self.sio.call(event, payload, timeout=timeout)
        error = ApiError.from_ack(ack)
        if error is not None:
            raise error
        return ack

    async def join(self, join_event: str, event_id: str) -> Any:
        """Join a room and remember it for re-joins after reconnect."""
        self._rooms[(join_event, event_id)] = None
        return await self.call(join_event, {"eventId": event_id})

    async def leave(self, join_event: str, leave_event: str, event_id: str) -> None:
        """Forget a room and leave it if connected."""
        self._rooms.pop((join_event, event_id), None)
        if self.connected:
            await self.call(leave_event, {"eventId": event_id})

    @property
    def rooms(self) -> list[tuple[str, str]]:
        return list(self._rooms)

    # =========================================================================
    # REST
    # =========================================================================

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Make an HTTP request, raising ApiError on 4xx/5xx.

        Transport failures propagate as ``httpx.TransportError``.
        """
        resp = await self.http.request(method, path, **kwargs)
        if resp.status_code >= 400:
            raise ApiError.from_response(resp)
        return resp
