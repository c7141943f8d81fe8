"""Message permission rules shared by the server and the client.

The client uses these to decide which actions to offer; the server applies
the same checks authoritatively before mutating anything.
"""

from datetime import UTC, datetime, timedelta

EDIT_WINDOW = timedelta(minutes=5)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def within_window(
    created_at: datetime, now: datetime | None = None, window: timedelta = EDIT_WINDOW
) -> bool:
    """Whether ``now`` is still within ``window`` of ``created_at``."""
    now = _aware(now or datetime.now(UTC))
    return now - _aware(created_at) <= window


def can_unsend_message(
    owner_id: str | None,
    created_at: datetime,
    user_id: str,
    now: datetime | None = None,
    window: timedelta = EDIT_WINDOW,
) -> bool:
    """The sender may retract a message within the edit window."""
    if owner_id is None or owner_id != user_id:
        return False
    return within_window(created_at, now, window)


def can_edit_message(
    owner_id: str | None,
    created_at: datetime,
    edit_count: int,
    user_id: str,
    now: datetime | None = None,
    window: timedelta = EDIT_WINDOW,
) -> bool:
    """The sender may edit a message once, within the edit window."""
    if edit_count > 0:
        return False
    return can_unsend_message(owner_id, created_at, user_id, now, window)
