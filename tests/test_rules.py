"""Tests for the shared edit/unsend permission rules."""

from datetime import UTC, datetime, timedelta

import pytest

from prakritimitra.rules import (
    EDIT_WINDOW,
    can_edit_message,
    can_unsend_message,
    within_window,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    ("age", "expected"),
    [
        (timedelta(0), True),
        (timedelta(minutes=4, seconds=59), True),
        (EDIT_WINDOW, True),
        (EDIT_WINDOW + timedelta(seconds=1), False),
    ],
)
def test_within_window(age: timedelta, expected: bool) -> None:
    assert within_window(NOW - age, NOW) is expected


def test_naive_created_at_treated_as_utc() -> None:
    created = (NOW - timedelta(minutes=1)).replace(tzinfo=None)
    assert within_window(created, NOW)


def test_can_unsend_only_owner() -> None:
    created = NOW - timedelta(minutes=1)
    assert can_unsend_message("u1", created, "u1", NOW)
    assert not can_unsend_message("u1", created, "u2", NOW)
    assert not can_unsend_message(None, created, "u1", NOW)


def test_can_edit_only_once() -> None:
    created = NOW - timedelta(minutes=1)
    assert can_edit_message("u1", created, 0, "u1", NOW)
    assert not can_edit_message("u1", created, 1, "u1", NOW)


def test_can_edit_after_window() -> None:
    created = NOW - timedelta(minutes=6)
    assert not can_edit_message("u1", created, 0, "u1", NOW)
    assert not can_unsend_message("u1", created, "u1", NOW)
