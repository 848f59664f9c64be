import datetime as dt

import pytest

from foldly.exceptions import LinkAccessError
from foldly.services.link_service import LinkService
from foldly.utils.dates import utcnow
from foldly.utils.security import hash_password


@pytest.fixture
def links(db):
    return LinkService(db)


async def test_single_segment_is_invalid_format(links):
    with pytest.raises(LinkAccessError) as exc:
        await links.validate_link_access(["user"])

    assert exc.value.code == "INVALID_FORMAT"
    assert exc.value.message == "Invalid link format"


async def test_unknown_slug_is_not_found(links):
    with pytest.raises(LinkAccessError) as exc:
        await links.validate_link_access(["user", "missing-slug"])

    assert exc.value.code == "NOT_FOUND"
    assert exc.value.message == "Link not found"


async def test_active_link_resolves_with_constraints(links, make_link):
    link = await make_link(
        "inbox",
        custom_message="Drop your files here",
        require_email=True,
        require_message=False,
        max_files=10,
        total_files=3,
    )

    access = await links.validate_link_access(["owner", "inbox"])

    assert access.link_id == str(link.id)
    assert access.slug == "inbox"
    assert access.topic is None
    assert access.link_name == "Inbox"
    assert access.is_public is True
    assert access.owner_username == "owner"
    assert access.requires_password is False
    assert access.requires_email is True
    assert access.requires_name is True
    assert access.requires_message is False
    assert access.custom_message == "Drop your files here"
    assert access.max_files == 10
    assert access.remaining_uploads == 7


async def test_slug_lookup_is_case_insensitive(links, make_link):
    await make_link("inbox")

    access = await links.validate_link_access(["owner", "InBox"])

    assert access.slug == "inbox"


async def test_password_is_not_checked_on_access(links, make_link):
    await make_link("private", require_password=True, password_hash=hash_password("secret"))

    access = await links.validate_link_access(["owner", "private"])

    assert access.requires_password is True


async def test_inactive_link(links, make_link):
    await make_link("closed", is_active=False)

    with pytest.raises(LinkAccessError) as exc:
        await links.validate_link_access(["owner", "closed"])

    assert exc.value.code == "INACTIVE"
    assert exc.value.message == "This link is currently inactive"


async def test_expired_link(links, make_link):
    await make_link("old", expires_at=utcnow() - dt.timedelta(days=1))

    with pytest.raises(LinkAccessError) as exc:
        await links.validate_link_access(["owner", "old"])

    assert exc.value.code == "EXPIRED"


async def test_future_expiry_is_accepted(links, make_link):
    await make_link("soon", expires_at=utcnow() + dt.timedelta(days=1))

    access = await links.validate_link_access(["owner", "soon"])

    assert access.slug == "soon"


async def test_topic_selects_topic_link(links, make_link):
    base = await make_link("inbox")
    topical = await make_link("inbox", topic="reports", title="Reports")

    assert (await links.validate_link_access(["owner", "inbox"])).link_id == str(base.id)
    assert (await links.validate_link_access(["owner", "inbox", "reports"])).link_id == str(topical.id)

    with pytest.raises(LinkAccessError):
        await links.validate_link_access(["owner", "inbox", "invoices"])


async def test_owner_without_username_defaults_to_user(links, make_link, make_user):
    anonymous, ws = await make_user("user_anon", None)
    await make_link("anon-inbox", user=anonymous, ws=ws)

    access = await links.validate_link_access(["whoever", "anon-inbox"])

    assert access.owner_username == "User"


async def test_username_breaks_ties_between_workspaces(links, make_link, make_user):
    other, other_ws = await make_user("user_other", "other")
    await make_link("shared")
    theirs = await make_link("shared", user=other, ws=other_ws)

    access = await links.validate_link_access(["other", "shared"])

    assert access.link_id == str(theirs.id)
    assert access.owner_username == "other"


async def test_access_route_renders_errors(client):
    response = await client.get("/links/access/owner")
    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Invalid link format", "code": "INVALID_FORMAT"}

    response = await client.get("/links/access/owner/missing-slug")
    assert response.status_code == 404
    assert response.json()["error"] == "Link not found"


async def test_access_route_success(client, make_link):
    link = await make_link("inbox")

    response = await client.get("/links/access/owner/inbox")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["link_id"] == str(link.id)


async def test_verify_password_route(client, make_link):
    link = await make_link("private", require_password=True, password_hash=hash_password("secret"))

    ok = await client.post(f"/links/{link.id}/verify-password", json={"password": "secret"})
    bad = await client.post(f"/links/{link.id}/verify-password", json={"password": "nope"})

    assert ok.json() == {"success": True, "isValid": True}
    assert bad.json() == {"success": True, "isValid": False}
