"""Tests for channels/http_api.py — introspection endpoints, auth, rate limiting."""

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from channels.http_api import HTTPApi, _RateLimiter, build_chats, build_stats, mask_phone_number
from conftest import make_message

TOKEN = "test-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


def _messages():
    return [
        make_message(id="1-a", sender_id="+15552223333"),
        make_message(id="2-a", sender_id="+15552223333", text="again"),
        make_message(id="3-b", sender_id="+15554445555", is_group=True, group_id="g1"),
        make_message(id="4-c", sender_id="+15556667777", is_group=True, group_id="g1"),
    ]


def _api(auth_token=TOKEN, **kwargs):
    async def get_status():
        return {"connected": True, "account": mask_phone_number("+15550001111")}

    kwargs.setdefault("get_status", get_status)
    kwargs.setdefault("get_messages", _messages)
    return HTTPApi("127.0.0.1", 0, auth_token, **kwargs)


@pytest_asyncio.fixture
async def client():
    api = _api()
    async with TestClient(TestServer(api.build_app())) as c:
        yield c


class TestMaskPhoneNumber:
    def test_long_number(self):
        assert mask_phone_number("+15551234567") == "+15***4567"

    def test_short_international(self):
        assert mask_phone_number("+4912345678") == "+4***5678"

    def test_no_plus(self):
        assert mask_phone_number("5551234567") == "5***4567"

    def test_too_short(self):
        assert mask_phone_number("+1234") == "****"


class TestAggregates:
    def test_chats(self):
        result = build_chats(_messages())
        assert result["total_chats"] == 2
        assert result["chats"] == [
            {"id": "+15552223333", "type": "dm", "message_count": 2},
            {"id": "group:g1", "type": "group", "message_count": 2},
        ]

    def test_stats(self):
        assert build_stats(_messages()) == {
            "total_messages": 4,
            "active_conversations": 2,
            "dm_messages": 2,
            "group_messages": 2,
        }

    def test_empty(self):
        assert build_chats([]) == {"chats": [], "total_chats": 0}
        assert build_stats([])["total_messages"] == 0


class TestEndpoints:
    @pytest.mark.asyncio
    async def test_status_without_auth(self, client):
        resp = await client.get("/api/v1/status")
        assert resp.status == 200
        data = await resp.json()
        assert data == {"connected": True, "account": "+15***1111"}

    @pytest.mark.asyncio
    async def test_chats_requires_auth(self, client):
        resp = await client.get("/api/v1/chats")
        assert resp.status == 401
        assert (await resp.json())["error"] == "unauthorized"

    @pytest.mark.asyncio
    async def test_wrong_token(self, client):
        resp = await client.get("/api/v1/stats", headers={"Authorization": "Bearer nope"})
        assert resp.status == 401

    @pytest.mark.asyncio
    async def test_chats(self, client):
        resp = await client.get("/api/v1/chats", headers=AUTH)
        assert resp.status == 200
        assert (await resp.json())["total_chats"] == 2

    @pytest.mark.asyncio
    async def test_stats(self, client):
        resp = await client.get("/api/v1/stats", headers=AUTH)
        data = await resp.json()
        assert data["group_messages"] == 2

    @pytest.mark.asyncio
    async def test_no_message_content_exposed(self, client):
        for path in ("/api/v1/chats", "/api/v1/stats"):
            resp = await client.get(path, headers=AUTH)
            body = await resp.text()
            assert "Hello" not in body
            assert "again" not in body

    @pytest.mark.asyncio
    async def test_unknown_route(self, client):
        resp = await client.get("/api/v1/nothing", headers=AUTH)
        assert resp.status == 404


class TestNoToken:
    @pytest.mark.asyncio
    async def test_protected_routes_unavailable(self):
        api = _api(auth_token="")
        async with TestClient(TestServer(api.build_app())) as c:
            resp = await c.get("/api/v1/chats")
            assert resp.status == 503
            assert (await resp.json())["error"] == "No auth token configured"
            resp = await c.get("/api/v1/status")
            assert resp.status == 200

    @pytest.mark.asyncio
    async def test_status_without_callback(self):
        api = HTTPApi("127.0.0.1", 0, TOKEN)
        async with TestClient(TestServer(api.build_app())) as c:
            data = await (await c.get("/api/v1/status")).json()
        assert data["connected"] is False


class TestRateLimit:
    def test_limiter_window(self):
        limiter = _RateLimiter(max_requests=2, window_seconds=60)
        assert limiter.check("a")
        assert limiter.check("a")
        assert not limiter.check("a")
        assert limiter.check("b")

    @pytest.mark.asyncio
    async def test_429_after_limit(self):
        api = _api(rate_limit=2)
        async with TestClient(TestServer(api.build_app())) as c:
            assert (await c.get("/api/v1/status")).status == 200
            assert (await c.get("/api/v1/status")).status == 200
            resp = await c.get("/api/v1/status")
            assert resp.status == 429
