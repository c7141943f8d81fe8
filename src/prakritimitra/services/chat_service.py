"""Message store operations for event chat rooms.

Every mutation is checked here, whether it arrives over HTTP or Socket.IO.
Callers broadcast the returned models to the event channel.
"""

import logging
from collections import defaultdict
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from prakritimitra.auth import Principal
from prakritimitra.dependencies import verify_event
from prakritimitra.exceptions import (
    EditWindowExpired,
    InvalidReply,
    MessageAlreadyEdited,
    MessageNotFound,
    NotMessageOwner,
    PinConflict,
    UnprocessableContent,
)
from prakritimitra.models import Message, Reaction
from prakritimitra.rules import EDIT_WINDOW, within_window
from prakritimitra.schemas import (
    ActiveSender,
    Attachment,
    DeletedSender,
    MessageResponse,
    ReactionEntry,
    ReactionSummary,
    ReplyPreview,
)
from prakritimitra.socket_events import MessageUnsent

log = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 500


def sender_of(msg: Message) -> ActiveSender | DeletedSender:
    if msg.is_sender_deleted or msg.sender_id is None:
        return DeletedSender(last_known_name=msg.sender_name or "Deleted User")
    return ActiveSender(id=msg.sender_id, name=msg.sender_name, role=msg.sender_role)


def message_to_response(
    msg: Message, reactions: list[Reaction], reply: Message | None = None
) -> MessageResponse:
    """Convert a Message row plus its reactions to the wire model.

    ``reply`` is the replied-to message; it is omitted once unsent.
    """
    summary: dict[str, list[str]] = {}
    for reaction in reactions:
        summary.setdefault(reaction.emoji, []).append(reaction.user_id)

    attachment = None
    if msg.file_url:
        attachment = Attachment(
            url=msg.file_url,
            filename=msg.file_name or msg.file_url.rsplit("/", 1)[-1],
            mime_type=msg.file_type or "application/octet-stream",
            size_bytes=msg.file_size,
        )

    reply_preview = None
    if reply is not None and reply.unsent_at is None:
        reply_preview = ReplyPreview(
            id=reply.id,  # type: ignore[arg-type]
            text=reply.text,
            sender=sender_of(reply),
        )

    return MessageResponse(
        id=msg.id,  # type: ignore[arg-type]
        event_id=msg.event_id,
        sender=sender_of(msg),
        text=msg.text,
        created_at=msg.created_at,
        edited_at=msg.edited_at,
        edit_count=msg.edit_count,
        is_edited=msg.edit_count > 0,
        is_pinned=msg.is_pinned,
        reply_to=reply_preview,
        reactions=[ReactionEntry(user_id=r.user_id, emoji=r.emoji) for r in reactions],
        reaction_summary=[
            ReactionSummary(emoji=emoji, count=len(users), user_ids=users)
            for emoji, users in summary.items()
        ],
        attachment=attachment,
    )


def _clean_text(text: str) -> str:
    text = text.strip()
    if not text:
        raise UnprocessableContent.exception("Message text must not be empty")
    if len(text) > MAX_TEXT_LENGTH:
        raise UnprocessableContent.exception(
            f"Message text exceeds {MAX_TEXT_LENGTH} characters"
        )
    return text


class ChatService:
    """Message store for one database session."""

    def __init__(
        self, session: AsyncSession, edit_window: timedelta = EDIT_WINDOW
    ) -> None:
        self.session = session
        self.edit_window = edit_window

    # =========================================================================
    # Queries
    # =========================================================================

    async def to_responses(self, messages: list[Message]) -> list[MessageResponse]:
        """Batch-load reactions and reply targets for ``messages``."""
        if not messages:
            return []
        ids = [m.id for m in messages]
        result = await self.session.execute(
            select(Reaction)
            .where(col(Reaction.message_id).in_(ids))
            .order_by(col(Reaction.id))
        )
        by_message: dict[int, list[Reaction]] = defaultdict(list)
        for reaction in result.scalars().all():
            by_message[reaction.message_id].append(reaction)

        reply_ids = {m.reply_to_id for m in messages if m.reply_to_id is not None}
        replies: dict[int, Message] = {}
        if reply_ids:
            result = await self.session.execute(
                select(Message).where(col(Message.id).in_(reply_ids))
            )
            replies = {m.id: m for m in result.scalars().all()}  # type: ignore[misc]

        return [
            message_to_response(
                m,
                by_message[m.id],  # type: ignore[index]
                replies.get(m.reply_to_id) if m.reply_to_id is not None else None,
            )
            for m in messages
        ]

    async def to_response(self, msg: Message) -> MessageResponse:
        return (await self.to_responses([msg]))[0]

    async def list_messages(
        self, event_id: str, limit: int, before: int | None = None
    ) -> list[MessageResponse]:
        """One history page, oldest to newest.

        ``before`` is the id of the oldest message the caller already has;
        the page holds the ``limit`` newest messages strictly older than it.
        Unsent messages are never returned.
        """
        await verify_event(self.session, event_id)

        stmt = select(Message).where(
            Message.event_id == event_id, col(Message.unsent_at).is_(None)
        )
        if before is not None:
            anchor = await self.session.get(Message, before)
            if anchor is None or anchor.event_id != event_id:
                raise MessageNotFound.exception(f"Message {before} not found")
            stmt = stmt.where(col(Message.id) < before)

        stmt = stmt.order_by(col(Message.id).desc()).limit(limit)
        result = await self.session.execute(stmt)
        rows = list(reversed(result.scalars().all()))
        return await self.to_responses(rows)

    async def pinned(self, event_id: str) -> MessageResponse | None:
        await verify_event(self.session, event_id)
        result = await self.session.execute(
            select(Message).where(
                Message.event_id == event_id,
                col(Message.is_pinned).is_(True),
                col(Message.unsent_at).is_(None),
            )
        )
        msg = result.scalars().first()
        return await self.to_response(msg) if msg is not None else None

    async def _get_live(self, event_id: str, message_id: int) -> Message:
        msg = await self.session.get(Message, message_id)
        if msg is None or msg.event_id != event_id or msg.unsent_at is not None:
            raise MessageNotFound.exception(f"Message {message_id} not found")
        return msg

    # =========================================================================
    # Mutations
    # =========================================================================

    async def send(
        self,
        event_id: str,
        sender: Principal,
        text: str | None = None,
        attachment: Attachment | None = None,
        reply_to: int | None = None,
    ) -> MessageResponse:
        """Store a new message.

        A message carries text, an attachment, or both. An attachment-only
        message uses the filename as its text.
        """
        await verify_event(self.session, event_id)

        text = (text or "").strip()
        if not text:
            if attachment is None:
                raise UnprocessableContent.exception(
                    "Message must contain text or an attachment"
                )
            text = attachment.filename[:MAX_TEXT_LENGTH]
        text = _clean_text(text)

        if reply_to is not None:
            target = await self.session.get(Message, reply_to)
            if (
                target is None
                or target.event_id != event_id
                or target.unsent_at is not None
            ):
                raise InvalidReply.exception(
                    f"Message {reply_to} is not part of event {event_id}"
                )

        msg = Message(
            event_id=event_id,
            sender_id=sender.id,
            sender_name=sender.name,
            sender_role=sender.role,
            text=text,
            reply_to_id=reply_to,
        )
        if attachment is not None:
            msg.file_url = attachment.url
            msg.file_name = attachment.filename
            msg.file_type = attachment.mime_type
            msg.file_size = attachment.size_bytes
        self.session.add(msg)
        await self.session.commit()
        await self.session.refresh(msg)
        log.debug("Message %s sent to event %s by %s", msg.id, event_id, sender.id)
        return await self.to_response(msg)

    async def edit(
        self,
        event_id: str,
        message_id: int,
        user: Principal,
        new_text: str,
        now: datetime | None = None,
    ) -> MessageResponse:
        """Replace a message's text. Sender only, once, within the edit window."""
        now = now or datetime.now(UTC)
        msg = await self._get_live(event_id, message_id)
        if msg.sender_id is None or msg.sender_id != user.id:
            raise NotMessageOwner.exception("Only the sender can edit this message")
        if msg.edit_count > 0:
            raise MessageAlreadyEdited.exception("Message can only be edited once")
        if not within_window(msg.created_at, now, self.edit_window):
            raise EditWindowExpired.exception(
                "Messages can only be edited within 5 minutes"
            )
        text = _clean_text(new_text)

        # Conditional update so two concurrent edits cannot both succeed
        result = await self.session.execute(
            update(Message)
            .where(col(Message.id) == message_id, col(Message.edit_count) == 0)
            .values(text=text, edit_count=1, edited_at=now)
        )
        if result.rowcount == 0:  # type: ignore[attr-defined]
            await self.session.rollback()
            raise MessageAlreadyEdited.exception("Message can only be edited once")
        await self.session.commit()
        await self.session.refresh(msg)
        return await self.to_response(msg)

    async def unsend(
        self,
        event_id: str,
        message_id: int,
        user: Principal,
        now: datetime | None = None,
    ) -> MessageUnsent:
        """Retract a message. Sender only, within the edit window."""
        now = now or datetime.now(UTC)
        msg = await self._get_live(event_id, message_id)
        if msg.sender_id is None or msg.sender_id != user.id:
            raise NotMessageOwner.exception("Only the sender can unsend this message")
        if not within_window(msg.created_at, now, self.edit_window):
            raise EditWindowExpired.exception(
                "Messages can only be unsent within 5 minutes"
            )
        msg.unsent_at = now
        msg.is_pinned = False
        await self.session.commit()
        log.debug("Message %s unsent by %s", message_id, user.id)
        return MessageUnsent(event_id=event_id, message_id=message_id)

    async def toggle_pin(self, event_id: str, message_id: int) -> MessageResponse:
        """Pin or unpin a message.

        Raises PinConflict when a different message in the event is pinned.
        """
        msg = await self._get_live(event_id, message_id)
        if msg.is_pinned:
            msg.is_pinned = False
            await self.session.commit()
            return await self.to_response(msg)

        result = await self.session.execute(
            select(Message.id).where(
                Message.event_id == event_id,
                col(Message.is_pinned).is_(True),
                col(Message.id) != message_id,
            )
        )
        other = result.scalars().first()
        if other is not None:
            raise PinConflict.exception(
                f"Message {other} is already pinned; unpin it first"
            )

        msg.is_pinned = True
        try:
            await self.session.commit()
        except IntegrityError as e:
            # Lost a race against a concurrent pin
            await self.session.rollback()
            raise PinConflict.exception(
                "Another message was pinned concurrently; unpin it first"
            ) from e
        await self.session.refresh(msg)
        return await self.to_response(msg)

    async def toggle_reaction(
        self, event_id: str, message_id: int, user: Principal, emoji: str
    ) -> MessageResponse:
        """Add the user's ``emoji`` reaction, or remove it if present."""
        msg = await self._get_live(event_id, message_id)
        result = await self.session.execute(
            select(Reaction).where(
                Reaction.message_id == message_id,
                Reaction.user_id == user.id,
                Reaction.emoji == emoji,
            )
        )
        existing = result.scalars().first()
        if existing is not None:
            await self.session.delete(existing)
        else:
            self.session.add(
                Reaction(
                    message_id=message_id,
                    user_id=user.id,
                    user_name=user.name,
                    emoji=emoji,
                )
            )
        try:
            await self.session.commit()
        except IntegrityError:
            # Same reaction added concurrently; the end state is "present"
            await self.session.rollback()
        await self.session.refresh(msg)
        return await self.to_response(msg)

    async def forget_user(self, user_id: str) -> int:
        """Detach a deleted account from its chat history.

        Messages keep the last known name and are shown as from a deleted
        sender; the user's reactions are removed. Returns the number of
        messages affected.
        """
        result = await self.session.execute(
            update(Message)
            .where(col(Message.sender_id) == user_id)
            .values(sender_id=None, is_sender_deleted=True)
        )
        await self.session.execute(
            delete(Reaction).where(col(Reaction.user_id) == user_id)
        )
        await self.session.commit()
        count = result.rowcount  # type: ignore[attr-defined]
        log.info("Detached %d messages from deleted user %s", count, user_id)
        return count
