from unittest.mock import AsyncMock

import pytest
import sqlalchemy as sa

from foldly.db.models.folder import Folder
from foldly.db.models.link import Link
from foldly.exceptions import ConflictError, InvalidInputError, RateLimitedError
from foldly.services.link_service import LinkService, LinkInput
from foldly.services.rate_limit_service import RateLimiter
from foldly.services.realtime_service import workspace_channel, LINK_CREATED_EVENT, LINK_DELETED_EVENT
from foldly.utils.security import verify_password
from foldly.utils.types import LinkType


@pytest.fixture
def links(db, bus, rate_limiter):
    return LinkService(db, bus, rate_limiter)


async def count_links(db) -> int:
    return await db.scalar(sa.select(sa.func.count()).select_from(Link))


async def test_create_lowercases_slug(links, owner, workspace):
    link = await links.create_link(owner.id, LinkInput(slug="Test-Slug-123", title="Test"))

    assert link.slug == "test-slug-123"
    assert link.workspace_id == workspace.id
    assert link.link_type == LinkType.CUSTOM


async def test_duplicate_slug_in_workspace_is_rejected(db, links, owner):
    await links.create_link(owner.id, LinkInput(slug="inbox", title="Inbox"))

    with pytest.raises(ConflictError) as exc:
        await links.create_link(owner.id, LinkInput(slug="INBOX", title="Again"))

    assert exc.value.message == "This slug is already in use"
    assert await count_links(db) == 1


async def test_concurrent_duplicate_slug_is_caught_by_the_database(db, links, owner, monkeypatch):
    await links.create_link(owner.id, LinkInput(slug="inbox", title="Inbox"))
    monkeypatch.setattr(links, "_slug_taken", AsyncMock(return_value=False))

    with pytest.raises(ConflictError, match="already in use"):
        await links.create_link(owner.id, LinkInput(slug="inbox", title="Again"))

    assert await count_links(db) == 1


async def test_same_slug_with_topic_is_allowed(links, owner):
    await links.create_link(owner.id, LinkInput(slug="inbox", title="Inbox"))
    topical = await links.create_link(owner.id, LinkInput(slug="inbox", topic="Taxes", title="Taxes"))

    assert topical.topic == "taxes"


async def test_slug_characters_are_validated(links, owner):
    with pytest.raises(InvalidInputError):
        await links.create_link(owner.id, LinkInput(slug="no spaces!", title="Bad"))

    with pytest.raises(InvalidInputError):
        await links.create_link(owner.id, LinkInput(slug="", title="Empty"))


async def test_password_is_hashed(links, owner):
    link = await links.create_link(owner.id, LinkInput(slug="private", title="Private", password="hunter2"))

    assert link.require_password is True
    assert link.password_hash != "hunter2"
    assert verify_password("hunter2", link.password_hash)
    assert await links.verify_password(link.id, "hunter2") is True
    assert await links.verify_password(link.id, "wrong") is False


async def test_rate_limited_creation_touches_nothing(db, bus, owner):
    links = LinkService(db, bus, RateLimiter(limit=2, window_seconds=60, block_seconds=30))
    await links.create_link(owner.id, LinkInput(slug="one", title="One"))
    await links.create_link(owner.id, LinkInput(slug="two", title="Two"))

    with pytest.raises(RateLimitedError) as exc:
        await links.create_link(owner.id, LinkInput(slug="three", title="Three"))

    body = exc.value.to_dict()
    assert body["success"] is False
    assert body["blocked"] is True
    assert body["resetAt"] > 0
    assert await count_links(db) == 2


async def test_rate_limited_route_response(app, client, auth_headers):
    app.state.rate_limiter = RateLimiter(limit=1, window_seconds=60, block_seconds=30)

    first = await client.post("/links", json={"slug": "first", "title": "First"}, headers=auth_headers)
    second = await client.post("/links", json={"slug": "second", "title": "Second"}, headers=auth_headers)

    assert first.status_code == 201
    assert second.status_code == 429
    body = second.json()
    assert body["success"] is False
    assert body["blocked"] is True
    assert isinstance(body["resetAt"], int)


async def test_create_route_duplicate(client, auth_headers):
    await client.post("/links", json={"slug": "dupe", "title": "Dupe"}, headers=auth_headers)
    response = await client.post("/links", json={"slug": "Dupe", "title": "Dupe"}, headers=auth_headers)

    assert response.status_code == 409
    assert response.json()["error"] == "This slug is already in use"


async def test_routes_require_auth(client):
    response = await client.get("/links")

    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHORIZED"


async def test_update_link(links, owner):
    link = await links.create_link(owner.id, LinkInput(slug="inbox", title="Inbox"))

    updated = await links.update_link(link.id, owner.id, LinkInput(title="Renamed", slug="New-Inbox", max_files=5))

    assert updated.title == "Renamed"
    assert updated.slug == "new-inbox"
    assert updated.max_files == 5


async def test_update_link_rejects_taken_slug(links, owner):
    await links.create_link(owner.id, LinkInput(slug="taken", title="Taken"))
    link = await links.create_link(owner.id, LinkInput(slug="mine", title="Mine"))

    with pytest.raises(ConflictError):
        await links.update_link(link.id, owner.id, LinkInput(slug="taken"))


async def test_generate_link_for_folder(db, bus, links, owner, workspace, make_folder):
    folder = await make_folder("Contracts")
    events = []
    bus.subscribe([workspace_channel(workspace.id)], events.append)

    link = await links.generate_link_for_folder(folder.id, owner.id)

    await db.refresh(folder)
    assert link.link_type == LinkType.GENERATED
    assert link.title == "Contracts"
    assert folder.link_id == link.id
    assert [e.event for e in events] == [LINK_CREATED_EVENT]
    assert events[0].payload["folderId"] == str(folder.id)

    with pytest.raises(ConflictError):
        await links.generate_link_for_folder(folder.id, owner.id)


async def test_delete_link_retires_it_and_frees_folder(db, bus, links, owner, workspace, make_folder):
    folder = await make_folder("Contracts")
    link = await links.generate_link_for_folder(folder.id, owner.id)
    events = []
    bus.subscribe([workspace_channel(workspace.id)], events.append)

    await links.delete_link(link.id, owner.id)

    folder_link = await db.scalar(sa.select(Folder.link_id).where(Folder.id == folder.id))
    retired = await db.scalar(sa.select(Link.is_active).where(Link.id == link.id))
    assert folder_link is None
    assert retired is False
    assert LINK_DELETED_EVENT in [e.event for e in events]


async def test_list_links_hides_password_hash(links, owner):
    await links.create_link(owner.id, LinkInput(slug="private", title="Private", password="pw"))

    listed = await links.list_links(owner.id)

    assert len(listed) == 1
    assert listed[0]["slug"] == "private"
    assert "passwordHash" not in listed[0]
    assert listed[0]["requirePassword"] is True
