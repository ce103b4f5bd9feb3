"""Conversational agent collaborator.

The gateway never runs a model itself. It hands each accepted message to
an agent and relays the reply. HTTPAgent talks to an agent daemon's HTTP
API (POST /api/v1/chat returns {"reply": ...}).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

msg_log = logging.getLogger("sigwire.messages")


@dataclass
class AgentIdentity:
    name: str = "Agent"
    emoji: str = "👀"


class Agent(Protocol):
    async def get_identity(self) -> AgentIdentity | None: ...
    async def inject(self, session_key: str, text: str, meta: dict[str, Any]) -> str: ...
    def log_message(self, session_key: str, text: str, meta: dict[str, Any]) -> None: ...


class AgentError(Exception):
    """Agent API call failed."""


class HTTPAgent:
    def __init__(
        self,
        url: str,
        token: str = "",
        timeout: float = 600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self._client = httpx.AsyncClient(
                headers=headers,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def get_identity(self) -> AgentIdentity | None:
        client = self._get_client()
        resp = await client.get(f"{self.url}/api/v1/status", timeout=10.0)
        resp.raise_for_status()
        data = resp.json()
        name = data.get("agent")
        if not name:
            return None
        return AgentIdentity(name=name, emoji=data.get("emoji") or AgentIdentity.emoji)

    async def inject(self, session_key: str, text: str, meta: dict[str, Any]) -> str:
        """Send one turn to the agent and wait for its reply text."""
        client = self._get_client()
        channel = meta.get("channel") or {}
        payload = {
            "message": text,
            "sender": session_key,
            "context": channel.get("name", ""),
        }
        try:
            resp = await client.post(f"{self.url}/api/v1/chat", json=payload)
        except httpx.HTTPError as e:
            raise AgentError(f"Agent request failed: {e}") from e

        # Agent APIs return an error description even on 4xx
        try:
            data = resp.json()
        except ValueError as e:
            raise AgentError(f"Agent returned non-JSON response (HTTP {resp.status_code})") from e
        if not resp.is_success:
            raise AgentError(f"Agent error: {data.get('error', f'HTTP {resp.status_code}')}")
        return data.get("reply") or ""

    def log_message(self, session_key: str, text: str, meta: dict[str, Any]) -> None:
        channel = meta.get("channel") or {}
        msg_log.info("[%s] %s via %s: %s", session_key, meta.get("from", "?"),
                     channel.get("name", "?"), text)
