"""Client-side controller for one event chat room.

The session keeps the local message list, pinned message and typing
indicators in sync with server broadcasts. Actions are validated locally
with the same rules the server applies, but local state only changes in
response to server confirmation (acks and broadcasts).
"""

import asyncio
import enum
import logging
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from prakritimitra.client.connection import (
    ApiError,
    ConnectionManager,
    NotConnectedError,
)
from prakritimitra.client.uploads import TransferProgress, Uploader
from prakritimitra.rules import can_edit_message, can_unsend_message
from prakritimitra.schemas import (
    ActiveSender,
    Attachment,
    MessageResponse,
    sender_label,
)

log = logging.getLogger(__name__)

PAGE_SIZE = 20
TYPING_IDLE_SECONDS = 2.0
TYPING_EXPIRY_SECONDS = 2.0

PIN_CONFLICT_MESSAGE = "Another message is already pinned. Unpin it first."


class ChatState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    JOINED = "joined"
    IDLE = "idle"
    SENDING = "sending"
    LEFT = "left"


class ChatActionRefused(Exception):
    """The action is not allowed; nothing was sent to the server."""


class PinConflictError(Exception):
    """Another message in the event is already pinned."""

    def __init__(self, message: str = PIN_CONFLICT_MESSAGE) -> None:
        super().__init__(message)


def _sender_id(msg: MessageResponse) -> str | None:
    return msg.sender.id if isinstance(msg.sender, ActiveSender) else None


class ChatSession:
    """Chat controller for one event.

    Parameters
    ----------
    connection
        Shared connection; the session never creates its own socket.
    event_id
        Event whose room is joined.
    user_id
        Id of the signed-in user, used for ownership rules.
    is_organizer
        Whether the user may pin messages.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        event_id: str,
        user_id: str,
        is_organizer: bool = False,
        uploader: Uploader | None = None,
        page_size: int = PAGE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.connection = connection
        self.event_id = event_id
        self.user_id = user_id
        self.is_organizer = is_organizer
        self.uploader = uploader or Uploader(connection)
        self.page_size = page_size
        self._clock = clock

        self.state = ChatState.DISCONNECTED
        self.messages: list[MessageResponse] = []
        self.pinned: MessageResponse | None = None
        self.has_more = False
        self._cursor: int | None = None
        self.typing: dict[str, tuple[str, float]] = {}
        self.draft_text = ""
        self.pending_file: Path | None = None
        self.pending_unsend: int | None = None
        self._pending_operation: str | None = None
        self._typing_task: asyncio.Task | None = None
        self._handlers: dict[str, Callable[[Any], None]] = {
            "receiveMessage": self._on_receive_message,
            "messageEdited": self._on_message_replaced,
            "messageReactionUpdate": self._on_message_replaced,
            "messagePinned": self._on_message_pinned,
            "messageUnsent": self._on_message_unsent,
            "userTyping": self._on_user_typing,
            "userStoppedTyping": self._on_user_stopped_typing,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self) -> None:
        """Connect, join the room and load the newest page and pinned message."""
        self.state = ChatState.CONNECTING
        self.messages = []
        for event, handler in self._handlers.items():
            self.connection.on(event, handler)
        try:
            await self.connection.connect()
            await self.connection.join("joinEventRoom", self.event_id)
        except Exception:
            self.state = ChatState.DISCONNECTED
            raise
        self.state = ChatState.JOINED

        page = await self._fetch_page(before=None)
        # Keep broadcasts that arrived while the page was loading
        known = {m.id for m in page}
        live = [m for m in self.messages if m.id not in known]
        self.messages = sorted(page + live, key=lambda m: m.id)
        self._cursor = page[0].id if page else None
        self.has_more = len(page) == self.page_size
        resp = await self.connection.request(
            "GET", f"/api/chatbox/events/{self.event_id}/pinned"
        )
        body = resp.json() if resp.content else None
        self.pinned = MessageResponse.model_validate(body) if body else None
        self.state = ChatState.IDLE

    async def close(self) -> None:
        """Leave the room. The shared connection stays open."""
        if self._typing_task is not None:
            self._typing_task.cancel()
            self._typing_task = None
        for event, handler in self._handlers.items():
            self.connection.off(event, handler)
        await self.connection.leave("joinEventRoom", "leaveEventRoom", self.event_id)
        self.state = ChatState.LEFT

    # =========================================================================
    # History
    # =========================================================================

    async def _fetch_page(self, before: int | None) -> list[MessageResponse]:
        params: dict[str, Any] = {"limit": self.page_size}
        if before is not None:
            params["before"] = before
        resp = await self.connection.request(
            "GET", f"/api/chatbox/events/{self.event_id}/messages", params=params
        )
        return [MessageResponse.model_validate(m) for m in resp.json()]

    async def load_earlier(self) -> int:
        """Prepend the page before the oldest loaded message.

        Paging continues from the oldest fetched message, even if it has
        since been unsent. Returns the number of messages prepended, so the
        caller can keep the scroll position anchored.
        """
        if not self.has_more or self._cursor is None:
            return 0
        page = await self._fetch_page(before=self._cursor)
        if page:
            self._cursor = page[0].id
        known = {m.id for m in self.messages}
        fresh = [m for m in page if m.id not in known]
        self.messages = fresh + self.messages
        self.has_more = len(page) == self.page_size
        return len(fresh)

    def find(self, message_id: int) -> MessageResponse | None:
        for msg in self.messages:
            if msg.id == message_id:
                return msg
        return None

    def sender_name(self, message_id: int) -> str | None:
        """Display name of a message's sender, marking deleted accounts."""
        msg = self.find(message_id)
        return sender_label(msg.sender) if msg is not None else None

    # =========================================================================
    # Composing and sending
    # =========================================================================

    def set_draft(self, text: str) -> None:
        """Set the draft text; clears a selected file."""
        self.draft_text = text
        self.pending_file = None

    def select_file(self, path: Path) -> TransferProgress:
        """Select an attachment; clears the draft text.

        The file is validated locally right away.

        Raises
        ------
        UploadRejected
            When the file is too large or of an unsupported type.
        """
        progress = self.uploader.prepare(path)
        self.pending_file = path
        self.draft_text = ""
        self._pending_operation = progress.operation_id
        return progress

    async def _send(self, payload: dict[str, Any]) -> MessageResponse:
        self.state = ChatState.SENDING
        try:
            ack = await self.connection.call("sendMessage", payload)
        finally:
            self.state = ChatState.IDLE
        return MessageResponse.model_validate(ack)

    async def send_text(
        self, text: str | None = None, reply_to: int | None = None
    ) -> MessageResponse:
        """Send a text message (the draft when ``text`` is omitted)."""
        text = (self.draft_text if text is None else text).strip()
        if not text:
            raise ChatActionRefused("Message is empty")
        if not self.connection.connected:
            raise NotConnectedError("Cannot send: not connected")
        msg = await self._send(
            {"eventId": self.event_id, "text": text, "replyTo": reply_to}
        )
        self.draft_text = ""
        self._stop_typing_timer()
        return msg

    async def send_file(
        self, path: Path | None = None, reply_to: int | None = None
    ) -> MessageResponse | None:
        """Upload the selected file and send it as a message.

        Returns None when the upload was cancelled before completion.
        """
        if path is not None:
            self.select_file(path)
        if self.pending_file is None:
            raise ChatActionRefused("No file selected")
        if not self.connection.connected:
            raise NotConnectedError("Cannot send: not connected")
        attachment = await self.uploader.run(self._pending_operation)
        return await self._send_attachment(attachment, reply_to)

    async def retry_upload(
        self, operation_id: str, reply_to: int | None = None
    ) -> MessageResponse | None:
        """Retry a failed retryable upload with the same file."""
        attachment = await self.uploader.retry(operation_id)
        return await self._send_attachment(attachment, reply_to)

    def cancel_upload(self, operation_id: str) -> None:
        """Discard local upload state."""
        self.uploader.cancel(operation_id)
        if self._pending_operation == operation_id:
            self.pending_file = None

    async def _send_attachment(
        self, attachment: Attachment | None, reply_to: int | None
    ) -> MessageResponse | None:
        if attachment is None:
            return None
        msg = await self._send(
            {
                "eventId": self.event_id,
                "attachment": attachment.model_dump(by_alias=True),
                "replyTo": reply_to,
            }
        )
        self.pending_file = None
        return msg

    async def download_attachment(
        self, message_id: int, dest: Path
    ) -> TransferProgress:
        msg = self.find(message_id)
        if msg is None or msg.attachment is None:
            raise ChatActionRefused("Message has no attachment")
        return await self.uploader.download(msg.attachment.url, dest)

    # =========================================================================
    # Message actions
    # =========================================================================

    def can_edit(self, message_id: int, now: datetime | None = None) -> bool:
        msg = self.find(message_id)
        if msg is None:
            return False
        return can_edit_message(
            _sender_id(msg), msg.created_at, msg.edit_count, self.user_id, now
        )

    def can_unsend(self, message_id: int, now: datetime | None = None) -> bool:
        msg = self.find(message_id)
        if msg is None:
            return False
        return can_unsend_message(_sender_id(msg), msg.created_at, self.user_id, now)

    async def edit(self, message_id: int, new_text: str) -> None:
        """Request an edit; the local copy changes on ``messageEdited``."""
        if not self.can_edit(message_id):
            raise ChatActionRefused("This message can no longer be edited")
        await self.connection.call(
            "editMessage",
            {"eventId": self.event_id, "messageId": message_id, "newText": new_text},
        )

    def request_unsend(self, message_id: int) -> None:
        """First step of unsend: ask for confirmation."""
        if not self.can_unsend(message_id):
            raise ChatActionRefused("This message can no longer be unsent")
        self.pending_unsend = message_id

    def cancel_unsend(self) -> None:
        self.pending_unsend = None

    async def confirm_unsend(self) -> None:
        if self.pending_unsend is None:
            raise ChatActionRefused("No unsend pending")
        message_id, self.pending_unsend = self.pending_unsend, None
        await self.connection.call(
            "unsendMessage", {"eventId": self.event_id, "messageId": message_id}
        )

    def can_pin(self, message_id: int) -> bool:
        """Organizers may pin when nothing else is pinned, or unpin the pin."""
        if not self.is_organizer:
            return False
        return self.pinned is None or self.pinned.id == message_id

    async def toggle_pin(self, message_id: int) -> MessageResponse:
        if not self.is_organizer:
            raise ChatActionRefused("Only organizers can pin messages")
        if not self.can_pin(message_id):
            raise PinConflictError()
        try:
            resp = await self.connection.request(
                "PATCH",
                f"/api/chatbox/messages/{message_id}/pin",
                json={"eventId": self.event_id},
            )
        except ApiError as e:
            if e.status == 409:
                raise PinConflictError() from e
            raise
        msg = MessageResponse.model_validate(resp.json())
        self._on_message_pinned(msg)
        return msg

    async def react(self, message_id: int, emoji: str) -> None:
        """Toggle the user's ``emoji`` reaction on a message."""
        await self.connection.call(
            "reactToMessage",
            {"eventId": self.event_id, "messageId": message_id, "emoji": emoji},
        )

    # =========================================================================
    # Typing
    # =========================================================================

    async def notify_typing(self) -> None:
        """Announce typing; ``stopTyping`` follows after 2 s without input."""
        await self.connection.emit("typing", {"eventId": self.event_id})
        self._stop_typing_timer()
        self._typing_task = asyncio.create_task(self._stop_typing_later())

    async def _stop_typing_later(self) -> None:
        await asyncio.sleep(TYPING_IDLE_SECONDS)
        self._typing_task = None
        try:
            await self.connection.emit("stopTyping", {"eventId": self.event_id})
        except NotConnectedError:
            log.debug("Skipping stopTyping while disconnected")

    def _stop_typing_timer(self) -> None:
        if self._typing_task is not None:
            self._typing_task.cancel()
            self._typing_task = None

    def typing_names(self) -> list[str]:
        """Names of users currently typing, dropping expired entries."""
        now = self._clock()
        self.typing = {
            uid: (name, expires)
            for uid, (name, expires) in self.typing.items()
            if expires > now
        }
        return [name for name, _ in self.typing.values()]

    # =========================================================================
    # Broadcast handlers
    # =========================================================================

    def _for_this_event(self, data: Any) -> bool:
        if isinstance(data, MessageResponse):
            return data.event_id == self.event_id
        return isinstance(data, dict) and data.get("eventId") == self.event_id

    def _on_receive_message(self, data: Any) -> None:
        if not self._for_this_event(data):
            return
        msg = MessageResponse.model_validate(data)
        if self.find(msg.id) is None:
            self.messages.append(msg)
        sender = _sender_id(msg)
        if sender is not None:
            self.typing.pop(sender, None)

    def _on_message_replaced(self, data: Any) -> None:
        if not self._for_this_event(data):
            return
        msg = MessageResponse.model_validate(data)
        self.messages = [msg if m.id == msg.id else m for m in self.messages]
        if self.pinned is not None and self.pinned.id == msg.id:
            self.pinned = msg

    def _on_message_pinned(self, data: Any) -> None:
        if not self._for_this_event(data):
            return
        msg = (
            data
            if isinstance(data, MessageResponse)
            else MessageResponse.model_validate(data)
        )
        self._on_message_replaced(msg)
        if msg.is_pinned:
            self.pinned = msg
        elif self.pinned is not None and self.pinned.id == msg.id:
            self.pinned = None

    def _on_message_unsent(self, data: Any) -> None:
        if not self._for_this_event(data):
            return
        message_id = data.get("messageId")
        self.messages = [m for m in self.messages if m.id != message_id]
        if self.pinned is not None and self.pinned.id == message_id:
            self.pinned = None
        if self.pending_unsend == message_id:
            self.pending_unsend = None

    def _on_user_typing(self, data: Any) -> None:
        if not self._for_this_event(data) or data.get("userId") == self.user_id:
            return
        self.typing[data["userId"]] = (
            data.get("userName") or "Someone",
            self._clock() + TYPING_EXPIRY_SECONDS,
        )

    def _on_user_stopped_typing(self, data: Any) -> None:
        if not self._for_this_event(data):
            return
        self.typing.pop(data.get("userId"), None)
