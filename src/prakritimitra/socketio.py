"""Socket.IO server for event chat rooms and live attendance.

Handlers resolve their resources from ``sio.app.state``, which the lifespan
in ``prakritimitra.database`` populates. A failed handler replies to the
caller only, with ``<eventName>Error`` carrying an RFC 9457 problem, and
returns the same problem as the acknowledgement. The socket stays connected
and keeps its rooms.
"""

import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import socketio
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from prakritimitra.auth import Principal, decode_token, token_from_handshake
from prakritimitra.config import Settings
from prakritimitra.dependencies import verify_event
from prakritimitra.exceptions import (
    NotInRoom,
    NotOrganizer,
    ProblemDetail,
    ProblemException,
    UnprocessableContent,
)
from prakritimitra.schemas import ApiModel
from prakritimitra.services.chat_service import ChatService
from prakritimitra.services.room_broker import (
    RoomBroker,
    attendance_channel,
    event_channel,
)
from prakritimitra.socket_events import (
    EditMessage,
    JoinAttendanceRoom,
    JoinEventRoom,
    LeaveAttendanceRoom,
    LeaveEventRoom,
    MessageEdited,
    MessagePinned,
    MessageReactionUpdate,
    PinMessage,
    ReactToMessage,
    ReceiveMessage,
    RoomAck,
    SendMessage,
    StopTyping,
    Typing,
    UnsendMessage,
    UserStoppedTyping,
    UserTyping,
    error_event_name,
    event_name,
)

log = logging.getLogger(__name__)

# Module-level Socket.IO server
# sio.app is set in database.py lifespan so handlers can reach app.state
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins="*")


@dataclass
class HandlerContext:
    """Per-event resources handed to socket handlers."""

    sid: str
    user: Principal
    broker: RoomBroker
    settings: Settings
    session: AsyncSession

    @property
    def chat(self) -> ChatService:
        return ChatService(
            self.session, timedelta(seconds=self.settings.edit_window_seconds)
        )

    async def require_member(self, channel: str) -> None:
        if not await self.broker.is_member(self.sid, channel):
            raise NotInRoom.exception(f"Join {channel} first")

    def require_organizer(self) -> None:
        if not self.user.is_organizer:
            raise NotOrganizer.exception("Organizer role required")


Handler = Callable[[HandlerContext, Any], Awaitable[ApiModel | None]]


def _validation_problem(exc: ValidationError) -> ProblemDetail:
    detail = "; ".join(
        f"{'.'.join(str(x) for x in e['loc']) or 'payload'}: {e['msg']}"
        for e in exc.errors()
    )
    return UnprocessableContent.create(detail=detail)


def on_event(model: type[ApiModel]) -> Callable[[Handler], Handler]:
    """Register a handler for the event named after ``model``.

    The raw payload is validated into ``model`` before the handler runs.
    """
    name = event_name(model)

    def decorator(func: Handler) -> Handler:
        @functools.wraps(func)
        async def wrapper(sid: str, data: Any = None) -> dict[str, Any]:
            state = sio.app.state  # type: ignore[attr-defined]
            broker: RoomBroker = state.broker
            try:
                payload = model.model_validate(data)
                sio_session = await broker.get_session(sid)
                user = Principal.model_validate(sio_session["user"])
                async with state.session_maker() as session:
                    ctx = HandlerContext(sid, user, broker, state.settings, session)
                    result = await func(ctx, payload)
            except ValidationError as e:
                problem = _validation_problem(e)
            except ProblemException as e:
                problem = e.problem
            else:
                if result is None:
                    return {"status": "ok"}
                return result.model_dump(mode="json", by_alias=True)

            log.info("%s from %s rejected: %s", name, sid, problem.detail)
            response = problem.model_dump(exclude_none=True)
            await broker.send_to(sid, error_event_name(name), response)
            return response

        sio.on(name, wrapper)
        return wrapper  # type: ignore[return-value]

    return decorator


# =============================================================================
# Connection Lifecycle Handlers
# =============================================================================


@sio.on("connect")
async def on_connect(sid: str, environ: dict, auth: dict | None = None) -> bool:
    """Authenticate the handshake with the bearer token."""
    state = sio.app.state  # type: ignore[attr-defined]
    try:
        user = decode_token(token_from_handshake(auth, environ), state.settings)
    except ProblemException as e:
        detail = e.problem.detail or "Authentication failed"
        raise ConnectionRefusedError(detail) from None

    await state.broker.save_session(sid, {"user": user.model_dump()})
    log.debug("sid %s connected as %s", sid, user.id)
    return True


@sio.on("disconnect")
async def on_disconnect(sid: str, reason: Any = None) -> None:
    """Drop room membership and typing indicators of a closed socket."""
    broker: RoomBroker = sio.app.state.broker  # type: ignore[attr-defined]
    channels = await broker.leave_all(sid)
    await broker.clear_typing_for_sid(sid, channels)
    log.debug("sid %s disconnected (%s), left %d rooms", sid, reason, len(channels))


# =============================================================================
# Room Membership
# =============================================================================


@on_event(JoinEventRoom)
async def join_event_room(ctx: HandlerContext, data: JoinEventRoom) -> RoomAck:
    """Join an event's chat room. Joining again is a no-op."""
    await verify_event(ctx.session, data.event_id)
    channel = event_channel(data.event_id)
    changed = await ctx.broker.join(ctx.sid, channel)
    return RoomAck(event_id=data.event_id, channel=channel, changed=changed)


@on_event(LeaveEventRoom)
async def leave_event_room(ctx: HandlerContext, data: LeaveEventRoom) -> RoomAck:
    channel = event_channel(data.event_id)
    changed = await ctx.broker.leave(ctx.sid, channel)
    if await ctx.broker.clear_typing(data.event_id, ctx.user.id):
        await ctx.broker.broadcast(
            channel, UserStoppedTyping(event_id=data.event_id, user_id=ctx.user.id)
        )
    return RoomAck(event_id=data.event_id, channel=channel, changed=changed)


@on_event(JoinAttendanceRoom)
async def join_attendance_room(
    ctx: HandlerContext, data: JoinAttendanceRoom
) -> RoomAck:
    """Subscribe an organizer to live attendance updates."""
    ctx.require_organizer()
    await verify_event(ctx.session, data.event_id)
    channel = attendance_channel(data.event_id)
    changed = await ctx.broker.join(ctx.sid, channel)
    return RoomAck(event_id=data.event_id, channel=channel, changed=changed)


@on_event(LeaveAttendanceRoom)
async def leave_attendance_room(
    ctx: HandlerContext, data: LeaveAttendanceRoom
) -> RoomAck:
    channel = attendance_channel(data.event_id)
    changed = await ctx.broker.leave(ctx.sid, channel)
    return RoomAck(event_id=data.event_id, channel=channel, changed=changed)


# =============================================================================
# Messages
# =============================================================================


@on_event(SendMessage)
async def send_message(ctx: HandlerContext, data: SendMessage) -> ReceiveMessage:
    channel = event_channel(data.event_id)
    await ctx.require_member(channel)
    msg = await ctx.chat.send(
        data.event_id,
        ctx.user,
        text=data.text,
        attachment=data.attachment,
        reply_to=data.reply_to,
    )
    # Sending ends the sender's typing indicator
    if await ctx.broker.clear_typing(data.event_id, ctx.user.id):
        await ctx.broker.broadcast(
            channel,
            UserStoppedTyping(event_id=data.event_id, user_id=ctx.user.id),
            skip_sid=ctx.sid,
        )
    event = ReceiveMessage(**msg.model_dump())
    await ctx.broker.broadcast(channel, event)
    return event


@on_event(EditMessage)
async def edit_message(ctx: HandlerContext, data: EditMessage) -> MessageEdited:
    channel = event_channel(data.event_id)
    await ctx.require_member(channel)
    msg = await ctx.chat.edit(data.event_id, data.message_id, ctx.user, data.new_text)
    event = MessageEdited(**msg.model_dump())
    await ctx.broker.broadcast(channel, event)
    return event


@on_event(UnsendMessage)
async def unsend_message(ctx: HandlerContext, data: UnsendMessage) -> ApiModel:
    channel = event_channel(data.event_id)
    await ctx.require_member(channel)
    event = await ctx.chat.unsend(data.event_id, data.message_id, ctx.user)
    await ctx.broker.broadcast(channel, event)
    return event


@on_event(PinMessage)
async def pin_message(ctx: HandlerContext, data: PinMessage) -> MessagePinned:
    """Toggle the pin, with the same checks as the HTTP endpoint."""
    ctx.require_organizer()
    channel = event_channel(data.event_id)
    msg = await ctx.chat.toggle_pin(data.event_id, data.message_id)
    event = MessagePinned(**msg.model_dump())
    await ctx.broker.broadcast(channel, event)
    return event


@on_event(ReactToMessage)
async def react_to_message(
    ctx: HandlerContext, data: ReactToMessage
) -> MessageReactionUpdate:
    channel = event_channel(data.event_id)
    await ctx.require_member(channel)
    msg = await ctx.chat.toggle_reaction(
        data.event_id, data.message_id, ctx.user, data.emoji
    )
    event = MessageReactionUpdate(**msg.model_dump())
    await ctx.broker.broadcast(channel, event)
    return event


# =============================================================================
# Typing
# =============================================================================


@on_event(Typing)
async def typing(ctx: HandlerContext, data: Typing) -> None:
    channel = event_channel(data.event_id)
    await ctx.require_member(channel)
    await ctx.broker.set_typing(data.event_id, ctx.user.id, ctx.user.name, ctx.sid)
    await ctx.broker.broadcast(
        channel,
        UserTyping(
            event_id=data.event_id, user_id=ctx.user.id, user_name=ctx.user.name
        ),
        skip_sid=ctx.sid,
    )


@on_event(StopTyping)
async def stop_typing(ctx: HandlerContext, data: StopTyping) -> None:
    channel = event_channel(data.event_id)
    await ctx.broker.clear_typing(data.event_id, ctx.user.id)
    await ctx.broker.broadcast(
        channel,
        UserStoppedTyping(event_id=data.event_id, user_id=ctx.user.id),
        skip_sid=ctx.sid,
    )
