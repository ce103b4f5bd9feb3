"""Read-only HTTP API for gateway introspection.

Endpoints:
    GET /api/v1/status — daemon liveness, account, uptime (no auth)
    GET /api/v1/chats  — conversations seen recently (ids and counts only)
    GET /api/v1/stats  — aggregate message counters

No message content, keys, or safety numbers are exposed.
"""

from __future__ import annotations

import hmac
import logging
import time
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

from . import InboundMessage

log = logging.getLogger(__name__)


def mask_phone_number(phone: str) -> str:
    """Leading digits + last 4, e.g. "+15551234567" -> "+15***4567"."""
    if len(phone) <= 5:
        return "****"
    country_end = (2 if len(phone) > 11 else 1) if phone.startswith("+") else 0
    return f"{phone[:country_end + 1]}***{phone[-4:]}"


def _chat_id(msg: InboundMessage) -> str:
    return str(msg.target)


def build_chats(messages: list[InboundMessage]) -> dict:
    chats: dict[str, dict] = {}
    for msg in messages:
        chat_id = _chat_id(msg)
        entry = chats.get(chat_id)
        if entry:
            entry["message_count"] += 1
        else:
            chats[chat_id] = {
                "id": chat_id,
                "type": "group" if msg.is_group else "dm",
                "message_count": 1,
            }
    return {"chats": list(chats.values()), "total_chats": len(chats)}


def build_stats(messages: list[InboundMessage]) -> dict:
    return {
        "total_messages": len(messages),
        "active_conversations": len({_chat_id(m) for m in messages}),
        "dm_messages": sum(1 for m in messages if not m.is_group),
        "group_messages": sum(1 for m in messages if m.is_group),
    }


class _RateLimiter:
    """Sliding-window request counter per client address."""

    _MAX_CLIENTS = 1000

    def __init__(self, max_requests: int = 60, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window = window_seconds
        self._hits: dict[str, deque[float]] = defaultdict(deque)

    def _forget_idle(self, now: float) -> None:
        idle = [k for k, q in self._hits.items() if not q or now - q[-1] >= self.window]
        for k in idle:
            del self._hits[k]

    def check(self, key: str) -> bool:
        now = time.monotonic()
        if len(self._hits) > self._MAX_CLIENTS:
            self._forget_idle(now)
        window = self._hits[key]
        while window and now - window[0] >= self.window:
            window.popleft()
        if len(window) >= self.max_requests:
            return False
        window.append(now)
        return True


class HTTPApi:
    """Introspection server. Reads gateway state through callbacks only."""

    _AUTH_EXEMPT_PATHS = frozenset({"/api/v1/status"})

    def __init__(
        self,
        host: str,
        port: int,
        auth_token: str,
        get_status: Callable[[], Awaitable[dict]] | None = None,
        get_messages: Callable[[], list[InboundMessage]] | None = None,
        rate_limit: int = 60,
        rate_window: int = 60,
    ):
        self.host = host
        self.port = port
        self.auth_token = auth_token
        self._get_status = get_status
        self._get_messages = get_messages
        self._runner: web.AppRunner | None = None
        self._rate_limiter = _RateLimiter(max_requests=rate_limit, window_seconds=rate_window)

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._auth_middleware, self._rate_middleware])
        app.router.add_get("/api/v1/status", self._handle_status)
        app.router.add_get("/api/v1/chats", self._handle_chats)
        app.router.add_get("/api/v1/stats", self._handle_stats)
        return app

    # ─── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("HTTP API listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            log.info("HTTP API stopped")

    # ─── Middleware ───────────────────────────────────────────────

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        if request.path in self._AUTH_EXEMPT_PATHS:
            return await handler(request)

        # Protected routes stay closed until a token is configured
        if not self.auth_token:
            return web.json_response(
                {"error": "No auth token configured"}, status=503,
            )

        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer ") or not hmac.compare_digest(auth[7:], self.auth_token):
            log.warning("HTTP API: auth failed from %s %s",
                        request.remote, request.path)
            return web.json_response(
                {"error": "unauthorized"}, status=401,
            )
        return await handler(request)

    @web.middleware
    async def _rate_middleware(self, request: web.Request, handler):
        client_ip = request.remote or "unknown"
        if not self._rate_limiter.check(client_ip):
            return web.json_response(
                {"error": "rate limit exceeded"}, status=429,
            )
        return await handler(request)

    # ─── Endpoints ────────────────────────────────────────────────

    def _messages(self) -> list[InboundMessage]:
        return self._get_messages() if self._get_messages else []

    async def _handle_status(self, request: web.Request) -> web.Response:
        """GET /api/v1/status — connection state."""
        if self._get_status:
            status: dict[str, Any] = await self._get_status()
        else:
            status = {"connected": False, "error": "Signal gateway not initialized"}
        return web.json_response(status)

    async def _handle_chats(self, request: web.Request) -> web.Response:
        """GET /api/v1/chats — conversations from the message cache."""
        return web.json_response(build_chats(self._messages()))

    async def _handle_stats(self, request: web.Request) -> web.Response:
        """GET /api/v1/stats — aggregate counts."""
        return web.json_response(build_stats(self._messages()))
