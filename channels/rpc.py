"""signal-cli HTTP control plane: JSON-RPC calls and liveness checks.

POST {base}/api/v1/rpc  — JSON-RPC 2.0 request/response
GET  {base}/api/v1/check — liveness probe (any 2xx is healthy)
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass
from typing import Any

import httpx

from config import ConfigError

from . import EmptyResponseError, ProtocolError, RpcError, TransportError

DEFAULT_TIMEOUT = 10.0
RPC_PATH = "/api/v1/rpc"
CHECK_PATH = "/api/v1/check"
EVENTS_PATH = "/api/v1/events"

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)


def normalize_base_url(url: str) -> str:
    """Accept host:port or a full URL; default to http://, strip trailing slashes."""
    trimmed = (url or "").strip()
    if not trimmed:
        raise ConfigError("Signal base URL is required")
    if not _SCHEME_RE.match(trimmed):
        trimmed = f"http://{trimmed}"
    return trimmed.rstrip("/")


@dataclass
class LivenessResult:
    ok: bool
    status: int | None = None
    error: str | None = None


class SignalRpcClient:
    """Stateless request/response client for the signal-cli HTTP daemon."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = normalize_base_url(base_url)
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def call(self, method: str, params: dict[str, Any] | None = None,
                   timeout: float | None = None) -> Any:
        """Issue one JSON-RPC call. Returns the result (None on 201 No Content)."""
        client = self._get_client()
        body = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or {},
            "id": str(uuid.uuid4()),
        }
        try:
            resp = await client.post(
                f"{self.base_url}{RPC_PATH}",
                json=body,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Signal RPC {method} timed out") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Signal RPC {method} failed: {e}") from e

        # signal-cli acknowledges fire-and-forget calls with an empty 201
        if resp.status_code == 201:
            return None

        text = resp.text
        if not text:
            raise EmptyResponseError(resp.status_code)

        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise ProtocolError(
                f"Signal RPC {method}: non-JSON response (status {resp.status_code})"
            ) from e
        if not isinstance(parsed, dict):
            raise ProtocolError(f"Signal RPC {method}: unexpected response shape")

        error = parsed.get("error")
        if error is not None:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise RpcError(error.get("code", "unknown"),
                           error.get("message", "Signal RPC error"))

        return parsed.get("result")

    async def check(self, timeout: float = DEFAULT_TIMEOUT) -> LivenessResult:
        """Probe daemon liveness. Never raises."""
        try:
            client = self._get_client()
            resp = await client.get(f"{self.base_url}{CHECK_PATH}", timeout=timeout)
        except httpx.TimeoutException:
            return LivenessResult(ok=False, error="timed out")
        except Exception as e:
            return LivenessResult(ok=False, error=str(e) or type(e).__name__)
        if not resp.is_success:
            return LivenessResult(ok=False, status=resp.status_code,
                                  error=f"HTTP {resp.status_code}")
        return LivenessResult(ok=True, status=resp.status_code)
