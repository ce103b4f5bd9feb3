"""Tests for agent.py — HTTPAgent against a mocked agent API."""

import json
import logging

import httpx
import pytest

from agent import AgentError, AgentIdentity, HTTPAgent

META = {"from": "Alice", "channel": {"type": "signal", "id": "+1555", "name": "Signal DM"}}


def _agent(handler, **kwargs):
    return HTTPAgent("http://agent.test/", transport=httpx.MockTransport(handler), **kwargs)


class TestInject:
    @pytest.mark.asyncio
    async def test_posts_chat_and_returns_reply(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"reply": "Hi there", "session_id": "s1"})

        agent = _agent(handler, token="tok")
        reply = await agent.inject("signal-+1555", "[Alice]: hi", META)
        assert reply == "Hi there"
        assert seen["url"] == "http://agent.test/api/v1/chat"
        assert seen["body"] == {
            "message": "[Alice]: hi",
            "sender": "signal-+1555",
            "context": "Signal DM",
        }
        assert seen["auth"] == "Bearer tok"
        await agent.close()

    @pytest.mark.asyncio
    async def test_no_token_no_auth_header(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"reply": "x"})

        await _agent(handler).inject("k", "t", META)
        assert seen["auth"] is None

    @pytest.mark.asyncio
    async def test_missing_reply_is_empty(self):
        agent = _agent(lambda request: httpx.Response(200, json={"silent": True}))
        assert await agent.inject("k", "t", META) == ""

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        agent = _agent(lambda request: httpx.Response(429, json={"error": "rate limit exceeded"}))
        with pytest.raises(AgentError, match="rate limit exceeded"):
            await agent.inject("k", "t", META)

    @pytest.mark.asyncio
    async def test_non_json_raises(self):
        agent = _agent(lambda request: httpx.Response(502, content=b"Bad Gateway"))
        with pytest.raises(AgentError, match="non-JSON"):
            await agent.inject("k", "t", META)

    @pytest.mark.asyncio
    async def test_connection_failure_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(AgentError, match="request failed"):
            await _agent(handler).inject("k", "t", META)


class TestIdentity:
    @pytest.mark.asyncio
    async def test_from_status(self):
        agent = _agent(lambda request: httpx.Response(200, json={"agent": "Lucy", "emoji": "🦊"}))
        assert await agent.get_identity() == AgentIdentity(name="Lucy", emoji="🦊")

    @pytest.mark.asyncio
    async def test_default_emoji(self):
        agent = _agent(lambda request: httpx.Response(200, json={"agent": "Lucy"}))
        assert (await agent.get_identity()).emoji == "👀"

    @pytest.mark.asyncio
    async def test_unnamed_agent(self):
        agent = _agent(lambda request: httpx.Response(200, json={"status": "ok"}))
        assert await agent.get_identity() is None

    @pytest.mark.asyncio
    async def test_http_error_propagates(self):
        agent = _agent(lambda request: httpx.Response(500, json={}))
        with pytest.raises(httpx.HTTPStatusError):
            await agent.get_identity()


class TestLogMessage:
    def test_writes_transcript_line(self, caplog):
        agent = HTTPAgent("http://agent.test")
        with caplog.at_level(logging.INFO, logger="sigwire.messages"):
            agent.log_message("signal-+1555", "hello", META)
        assert "[signal-+1555] Alice via Signal DM: hello" in caplog.text
