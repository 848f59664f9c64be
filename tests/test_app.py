from httpx import AsyncClient, ASGITransport

from foldly.exceptions import RateLimitedError, LinkAccessError, NotFoundError


async def test_validation_errors_use_error_shape(client, auth_headers):
    response = await client.post("/links", json={"title": "No slug"}, headers=auth_headers)

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "INVALID_INPUT"
    assert "slug" in body["error"]


async def test_unknown_route_uses_error_shape(client):
    response = await client.get("/nope")

    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "Not Found", "code": "NOT_FOUND"}


async def test_bad_token_is_unauthorized(client):
    response = await client.get("/workspace/tree", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401
    assert response.json()["error"] == "Invalid token."


def test_error_payloads():
    assert NotFoundError("gone").to_dict() == {"success": False, "error": "gone", "code": "NOT_FOUND"}
    assert RateLimitedError("slow down", 12.5).to_dict()["resetAt"] == 12_500
    assert LinkAccessError("This link has expired", "EXPIRED").status_code == 410


async def test_unhandled_error_is_internal_error(app):
    async def explode():
        raise RuntimeError("boom")

    app.add_api_route("/explode", explode)
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/explode")

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "An unexpected error occurred.", "code": "INTERNAL_ERROR"}
