"""Realtime room broker.

Tracks which Socket.IO sessions are joined to which channel and fans events
out to them. Membership lives in Redis sets so it is visible to every server
process sharing the same ``AsyncRedisManager``; the Socket.IO server keeps its
own room registry for delivery.

Channels:
- ``event:{event_id}``: chat room of an event
- ``attendance:{event_id}``: live attendance updates for organizers
"""

import json
import logging
import time
from typing import Any

import socketio
from redis.asyncio import Redis as AsyncRedis

from prakritimitra.redis import RedisKey
from prakritimitra.schemas import ApiModel
from prakritimitra.socket_events import UserStoppedTyping, event_name

log = logging.getLogger(__name__)

EVENT_CHANNEL_PREFIX = "event:"
ATTENDANCE_CHANNEL_PREFIX = "attendance:"


def event_channel(event_id: str) -> str:
    """Socket.IO channel of an event's chat room."""
    return f"{EVENT_CHANNEL_PREFIX}{event_id}"


def attendance_channel(event_id: str) -> str:
    """Socket.IO channel of an event's live attendance updates."""
    return f"{ATTENDANCE_CHANNEL_PREFIX}{event_id}"


class RoomBroker:
    """Room membership and fan-out on top of a Socket.IO server."""

    def __init__(self, server: socketio.AsyncServer, redis: AsyncRedis) -> None:
        self.server = server
        self.redis = redis

    # =========================================================================
    # Membership
    # =========================================================================

    async def join(self, sid: str, channel: str) -> bool:
        """Join ``sid`` to ``channel``.

        Returns False if it was already a member; joining twice has no
        further effect and no history is replayed.
        """
        await self.server.enter_room(sid, channel)
        added = await self.redis.sadd(RedisKey.room_members(channel), sid)
        await self.redis.sadd(RedisKey.sid_rooms(sid), channel)
        if added:
            log.debug("sid %s joined %s", sid, channel)
        return bool(added)

    async def leave(self, sid: str, channel: str) -> bool:
        """Remove ``sid`` from ``channel``. Safe if it never joined."""
        await self.server.leave_room(sid, channel)
        removed = await self.redis.srem(RedisKey.room_members(channel), sid)
        await self.redis.srem(RedisKey.sid_rooms(sid), channel)
        if removed:
            log.debug("sid %s left %s", sid, channel)
        return bool(removed)

    async def leave_all(self, sid: str) -> list[str]:
        """Remove ``sid`` from every channel it joined. Returns those channels."""
        channels = sorted(await self.rooms_of(sid))
        for channel in channels:
            await self.redis.srem(RedisKey.room_members(channel), sid)
        await self.redis.delete(RedisKey.sid_rooms(sid))
        return channels

    async def is_member(self, sid: str, channel: str) -> bool:
        return bool(
            await self.redis.sismember(RedisKey.room_members(channel), sid)
        )

    async def members(self, channel: str) -> set[str]:
        return set(await self.redis.smembers(RedisKey.room_members(channel)))

    async def rooms_of(self, sid: str) -> set[str]:
        return set(await self.redis.smembers(RedisKey.sid_rooms(sid)))

    # =========================================================================
    # Delivery
    # =========================================================================

    async def broadcast(
        self, channel: str, event: ApiModel, skip_sid: str | None = None
    ) -> None:
        """Emit ``event`` to every member of ``channel`` except ``skip_sid``."""
        await self.server.emit(
            event_name(event),
            event.model_dump(mode="json", by_alias=True),
            room=channel,
            skip_sid=skip_sid,
        )

    async def send_to(self, sid: str, name: str, payload: dict[str, Any]) -> None:
        """Emit directly to one session."""
        await self.server.emit(name, payload, to=sid)

    # =========================================================================
    # Sessions
    # =========================================================================

    async def get_session(self, sid: str) -> dict[str, Any]:
        return await self.server.get_session(sid)

    async def save_session(self, sid: str, data: dict[str, Any]) -> None:
        await self.server.save_session(sid, data)

    # =========================================================================
    # Typing
    # =========================================================================

    async def set_typing(
        self, event_id: str, user_id: str, user_name: str, sid: str
    ) -> None:
        entry = json.dumps({"sid": sid, "name": user_name, "ts": time.time()})
        await self.redis.hset(RedisKey.typing(event_id), user_id, entry)

    async def clear_typing(self, event_id: str, user_id: str) -> bool:
        removed = await self.redis.hdel(RedisKey.typing(event_id), user_id)
        return bool(removed)

    async def typists(self, event_id: str) -> dict[str, dict[str, Any]]:
        raw = await self.redis.hgetall(RedisKey.typing(event_id))
        return {user_id: json.loads(value) for user_id, value in raw.items()}

    async def clear_typing_for_sid(self, sid: str, channels: list[str]) -> None:
        """Drop typing entries owned by ``sid`` and tell the rooms."""
        for channel in channels:
            if not channel.startswith(EVENT_CHANNEL_PREFIX):
                continue
            event_id = channel.removeprefix(EVENT_CHANNEL_PREFIX)
            for user_id, entry in (await self.typists(event_id)).items():
                if entry.get("sid") != sid:
                    continue
                await self.clear_typing(event_id, user_id)
                await self.broadcast(
                    channel,
                    UserStoppedTyping(event_id=event_id, user_id=user_id),
                    skip_sid=sid,
                )
