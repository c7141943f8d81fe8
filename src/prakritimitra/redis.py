"""Redis key patterns for room membership and typing state.

Messages, registrations and attendance are stored in SQL. Redis is used only
for:
- Socket.IO room membership (which sids are in which channel)
- Ephemeral typing indicators
- Socket.IO pub/sub adapter
"""


class RedisKey:
    """Redis key patterns - avoids magic strings."""

    # =========================================================================
    # Membership Keys
    # =========================================================================

    @staticmethod
    def room_members(channel: str) -> str:
        """Set of sids currently joined to a channel.

        ``channel`` is the Socket.IO room name, e.g. ``event:{event_id}``
        or ``attendance:{event_id}``.
        """
        return f"members:{channel}"

    @staticmethod
    def sid_rooms(sid: str) -> str:
        """Set of channels a sid has joined, used for cleanup on disconnect."""
        return f"sid:{sid}:channels"

    # =========================================================================
    # Typing Keys
    # =========================================================================

    @staticmethod
    def typing(event_id: str) -> str:
        """Hash: user id -> JSON ``{sid, name, ts}`` for current typists."""
        return f"typing:event:{event_id}"
