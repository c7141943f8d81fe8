"""Tests for chat REST endpoints: history paging, pinning and uploads."""

from datetime import UTC, datetime

import pytest
from conftest import (
    ORGANIZER,
    VOLUNTEER,
    add_messages,
    auth_header,
    create_event,
    emitted,
)
from httpx import AsyncClient

from prakritimitra.exceptions import (
    EventNotFound,
    FileTooLarge,
    MessageNotFound,
    NotAuthenticated,
    NotOrganizer,
    PinConflict,
    ProblemDetail,
    UnsupportedFileType,
)
from prakritimitra.schemas import MessageResponse

# =============================================================================
# History
# =============================================================================


@pytest.mark.asyncio
async def test_list_messages_requires_auth(client: AsyncClient, session) -> None:
    event = await create_event(session)
    response = await client.get(f"/api/chatbox/events/{event.id}/messages")
    assert response.status_code == 401
    problem = ProblemDetail.model_validate(response.json())
    assert problem.type == NotAuthenticated.type_uri()


@pytest.mark.asyncio
async def test_list_messages_unknown_event(
    client: AsyncClient, settings
) -> None:
    response = await client.get(
        "/api/chatbox/events/missing/messages",
        headers=auth_header(settings, VOLUNTEER),
    )
    assert response.status_code == 404
    assert response.json()["type"] == EventNotFound.type_uri()


@pytest.mark.asyncio
async def test_list_messages_empty(client: AsyncClient, session, settings) -> None:
    event = await create_event(session)
    response = await client.get(
        f"/api/chatbox/events/{event.id}/messages",
        headers=auth_header(settings, VOLUNTEER),
    )
    assert response.status_code == 200
    assert response.json() == []


@pytest.mark.asyncio
async def test_list_messages_pages_oldest_to_newest(
    client: AsyncClient, session, settings
) -> None:
    """Exactly 40 messages: two full pages, then an empty third page."""
    event = await create_event(session)
    messages = await add_messages(session, event.id, 40)
    headers = auth_header(settings, VOLUNTEER)
    url = f"/api/chatbox/events/{event.id}/messages"

    first = (await client.get(url, headers=headers)).json()
    assert [m["id"] for m in first] == [m.id for m in messages[20:]]

    second = (
        await client.get(url, params={"before": first[0]["id"]}, headers=headers)
    ).json()
    assert [m["id"] for m in second] == [m.id for m in messages[:20]]

    third = (
        await client.get(url, params={"before": second[0]["id"]}, headers=headers)
    ).json()
    assert third == []


@pytest.mark.asyncio
async def test_list_messages_custom_limit(
    client: AsyncClient, session, settings
) -> None:
    event = await create_event(session)
    messages = await add_messages(session, event.id, 5)
    response = await client.get(
        f"/api/chatbox/events/{event.id}/messages",
        params={"limit": 2},
        headers=auth_header(settings, VOLUNTEER),
    )
    assert [m["id"] for m in response.json()] == [messages[3].id, messages[4].id]


@pytest.mark.asyncio
async def test_list_messages_limit_out_of_range(
    client: AsyncClient, session, settings
) -> None:
    event = await create_event(session)
    response = await client.get(
        f"/api/chatbox/events/{event.id}/messages",
        params={"limit": 0},
        headers=auth_header(settings, VOLUNTEER),
    )
    assert response.status_code == 422
    assert response.headers["content-type"] == "application/problem+json"


@pytest.mark.asyncio
async def test_list_messages_unknown_before(
    client: AsyncClient, session, settings
) -> None:
    event = await create_event(session)
    await add_messages(session, event.id, 3)
    response = await client.get(
        f"/api/chatbox/events/{event.id}/messages",
        params={"before": 9999},
        headers=auth_header(settings, VOLUNTEER),
    )
    assert response.status_code == 404
    assert response.json()["type"] == MessageNotFound.type_uri()


@pytest.mark.asyncio
async def test_list_messages_skips_unsent(
    client: AsyncClient, session, settings
) -> None:
    event = await create_event(session)
    messages = await add_messages(session, event.id, 3)
    messages[1].unsent_at = datetime.now(UTC)
    await session.commit()

    response = await client.get(
        f"/api/chatbox/events/{event.id}/messages",
        headers=auth_header(settings, VOLUNTEER),
    )
    assert [m["id"] for m in response.json()] == [messages[0].id, messages[2].id]


@pytest.mark.asyncio
async def test_message_wire_format_is_camel_case(
    client: AsyncClient, session, settings
) -> None:
    event = await create_event(session)
    await add_messages(session, event.id, 1)
    response = await client.get(
        f"/api/chatbox/events/{event.id}/messages",
        headers=auth_header(settings, VOLUNTEER),
    )
    data = response.json()[0]
    assert data["eventId"] == event.id
    assert data["isPinned"] is False
    assert data["sender"] == {
        "kind": "active",
        "id": VOLUNTEER.id,
        "name": VOLUNTEER.name,
        "role": "volunteer",
    }
    MessageResponse.model_validate(data)


# =============================================================================
# Pinning
# =============================================================================


@pytest.mark.asyncio
async def test_pinned_message_none(client: AsyncClient, session, settings) -> None:
    event = await create_event(session)
    response = await client.get(
        f"/api/chatbox/events/{event.id}/pinned",
        headers=auth_header(settings, VOLUNTEER),
    )
    assert response.status_code == 200
    assert response.json() is None


@pytest.mark.asyncio
async def test_pin_requires_organizer(client: AsyncClient, session, settings) -> None:
    event = await create_event(session)
    (msg,) = await add_messages(session, event.id, 1)
    response = await client.patch(
        f"/api/chatbox/messages/{msg.id}/pin",
        json={"eventId": event.id},
        headers=auth_header(settings, VOLUNTEER),
    )
    assert response.status_code == 403
    assert response.json()["type"] == NotOrganizer.type_uri()


@pytest.mark.asyncio
async def test_pin_toggle_and_broadcast(
    client: AsyncClient, session, settings, mock_sio
) -> None:
    event = await create_event(session)
    (msg,) = await add_messages(session, event.id, 1)
    headers = auth_header(settings, ORGANIZER)

    response = await client.patch(
        f"/api/chatbox/messages/{msg.id}/pin",
        json={"eventId": event.id},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["isPinned"] is True

    pinned = await client.get(
        f"/api/chatbox/events/{event.id}/pinned", headers=headers
    )
    assert pinned.json()["id"] == msg.id

    broadcasts = emitted(mock_sio, "messagePinned")
    assert len(broadcasts) == 1
    payload, kwargs = broadcasts[0]
    assert payload["id"] == msg.id
    assert kwargs["room"] == f"event:{event.id}"

    # Second toggle unpins
    response = await client.patch(
        f"/api/chatbox/messages/{msg.id}/pin",
        json={"eventId": event.id},
        headers=headers,
    )
    assert response.json()["isPinned"] is False


@pytest.mark.asyncio
async def test_pin_conflict(client: AsyncClient, session, settings) -> None:
    event = await create_event(session)
    first, second = await add_messages(session, event.id, 2)
    headers = auth_header(settings, ORGANIZER)

    await client.patch(
        f"/api/chatbox/messages/{first.id}/pin",
        json={"eventId": event.id},
        headers=headers,
    )
    response = await client.patch(
        f"/api/chatbox/messages/{second.id}/pin",
        json={"eventId": event.id},
        headers=headers,
    )
    assert response.status_code == 409
    assert response.json()["type"] == PinConflict.type_uri()

    pinned = await client.get(
        f"/api/chatbox/events/{event.id}/pinned", headers=headers
    )
    assert pinned.json()["id"] == first.id


@pytest.mark.asyncio
async def test_pin_message_of_other_event(
    client: AsyncClient, session, settings
) -> None:
    event = await create_event(session)
    other = await create_event(session, title="Tree Planting")
    (msg,) = await add_messages(session, other.id, 1)
    response = await client.patch(
        f"/api/chatbox/messages/{msg.id}/pin",
        json={"eventId": event.id},
        headers=auth_header(settings, ORGANIZER),
    )
    assert response.status_code == 404


# =============================================================================
# Uploads
# =============================================================================


@pytest.mark.asyncio
async def test_upload_stores_file(client: AsyncClient, settings) -> None:
    content = b"\x89PNG\r\n\x1a\n" + b"0" * 100
    response = await client.post(
        "/api/chatbox/upload",
        files={"file": ("photo.png", content, "image/png")},
        headers=auth_header(settings, VOLUNTEER),
    )
    assert response.status_code == 201
    data = response.json()
    assert data["fileType"] == "image/png"
    assert data["fileSize"] == len(content)
    assert data["fileUrl"]["filename"] == "photo.png"
    assert data["fileUrl"]["url"].startswith("/uploads/")

    stored = settings.media_path / data["fileUrl"]["url"].rsplit("/", 1)[-1]
    assert stored.read_bytes() == content


@pytest.mark.asyncio
async def test_upload_too_large(client: AsyncClient, settings) -> None:
    content = b"0" * (settings.max_upload_bytes + 1)
    response = await client.post(
        "/api/chatbox/upload",
        files={"file": ("big.pdf", content, "application/pdf")},
        headers=auth_header(settings, VOLUNTEER),
    )
    assert response.status_code == 413
    problem = response.json()
    assert problem["type"] == FileTooLarge.type_uri()
    assert "10MB" in problem["detail"]


@pytest.mark.asyncio
async def test_upload_unsupported_type(client: AsyncClient, settings) -> None:
    response = await client.post(
        "/api/chatbox/upload",
        files={"file": ("run.exe", b"MZ", "application/x-msdownload")},
        headers=auth_header(settings, VOLUNTEER),
    )
    assert response.status_code == 400
    assert response.json()["type"] == UnsupportedFileType.type_uri()


@pytest.mark.asyncio
async def test_upload_requires_auth(client: AsyncClient) -> None:
    response = await client.post(
        "/api/chatbox/upload",
        files={"file": ("photo.png", b"x", "image/png")},
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_invalid_token_rejected(client: AsyncClient, session) -> None:
    event = await create_event(session)
    response = await client.get(
        f"/api/chatbox/events/{event.id}/messages",
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert response.status_code == 401
    assert response.json()["type"] == NotAuthenticated.type_uri()
