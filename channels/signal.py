"""Signal channel via the signal-cli HTTP daemon.

Inbound: server-sent event stream (/api/v1/events), normalized into
InboundMessage. Outbound: JSON-RPC send/sendTyping/sendReaction.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

import httpx

from . import (
    Attachment,
    ChannelTarget,
    InboundMessage,
    ProtocolError,
    Quote,
    TransportError,
)
from .daemon import DaemonHandle, DaemonNotReadyError, DaemonOptions, spawn_daemon, wait_until_ready
from .rpc import SignalRpcClient
from .sse import SSEEvent, stream_events

log = logging.getLogger(__name__)

# Reconnect policy: 5s initial -> 30s max, factor 2, 20% jitter
_RECONNECT_INITIAL = 5.0
_RECONNECT_MAX = 30.0
_RECONNECT_FACTOR = 2.0
_RECONNECT_JITTER = 0.2

_PREFLIGHT_TIMEOUT = 2.0


def normalize_event(event: SSEEvent, self_account: str | None) -> InboundMessage | None:
    """Turn a raw stream event into an InboundMessage, or None to skip it."""
    if not event.data:
        return None
    if event.event != "message":
        return None

    try:
        data = json.loads(event.data)
    except json.JSONDecodeError as e:
        log.warning("Dropping undecodable Signal event: %s", e)
        return None
    if not isinstance(data, dict):
        return None

    envelope = data.get("envelope")
    if not isinstance(envelope, dict):
        return None

    source = envelope.get("source")
    if not source:
        return None
    # Our own messages echo back through the stream
    if self_account and source == self_account:
        return None

    sync_message = envelope.get("syncMessage")
    if isinstance(sync_message, dict) and sync_message.get("sentMessage"):
        return None

    timestamp = envelope.get("timestamp") or int(time.time() * 1000)

    text = ""
    attachments: list[Attachment] = []
    quote = None
    group_id = None

    data_message = envelope.get("dataMessage")
    if isinstance(data_message, dict):
        text = data_message.get("message") or ""
        raw_attachments = data_message.get("attachments") or []
        if not isinstance(raw_attachments, list) or not all(
            isinstance(att, dict) for att in raw_attachments
        ):
            log.warning("Dropping malformed Signal envelope: bad attachments field")
            return None
        for att in raw_attachments:
            attachments.append(Attachment(
                id=att.get("id"),
                content_type=att.get("contentType"),
                filename=att.get("filename"),
                size=att.get("size"),
            ))
        raw_quote = data_message.get("quote")
        if isinstance(raw_quote, dict):
            quote = Quote(text=raw_quote.get("text"), author=raw_quote.get("author"))
        group_info = data_message.get("groupInfo")
        if isinstance(group_info, dict):
            group_id = group_info.get("groupId") or None

    return InboundMessage(
        id=f"{timestamp}-{source}",
        sender_id=source,
        timestamp_ms=timestamp,
        text=text,
        is_group=group_id is not None,
        group_id=group_id,
        sender_name=envelope.get("sourceName") or None,
        sender_number=envelope.get("sourceNumber"),
        sender_uuid=envelope.get("sourceUuid"),
        attachments=attachments,
        quote=quote,
    )


class SignalChannel:
    def __init__(
        self,
        rpc: SignalRpcClient,
        account: str | None = None,
        daemon_options: DaemonOptions | None = None,
        auto_start: bool = True,
        startup_timeout: float = 30.0,
        chunk_limit: int = 4000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.rpc = rpc
        self.account = account
        self.daemon_options = daemon_options or DaemonOptions(account=account)
        self.auto_start = auto_start
        self.startup_timeout = startup_timeout
        self.chunk_limit = chunk_limit
        self.daemon: DaemonHandle | None = None
        self.connected = False
        self._transport = transport
        self._stream_client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self.rpc.base_url

    async def connect(self) -> None:
        """Make sure a daemon is answering, starting one if allowed."""
        check = await self.rpc.check(timeout=_PREFLIGHT_TIMEOUT)
        if check.ok:
            log.info("Signal daemon already running at %s", self.base_url)
            return

        if not self.auto_start:
            log.error("Signal daemon not running and auto-start disabled. "
                      "Start signal-cli manually.")
            raise DaemonNotReadyError(_PREFLIGHT_TIMEOUT, check.error)

        log.info("Starting Signal daemon...")
        self.daemon = await spawn_daemon(self.daemon_options, logger=log)
        log.info("Signal daemon started (PID: %s)", self.daemon.pid)
        await wait_until_ready(self.rpc, self.startup_timeout, logger=log)

    async def disconnect(self) -> None:
        self.connected = False
        if self._stream_client is not None:
            await self._stream_client.aclose()
            self._stream_client = None
        if self.daemon is not None:
            log.info("Stopping Signal daemon...")
            await self.daemon.aclose()
            self.daemon = None
        await self.rpc.close()

    def _get_stream_client(self) -> httpx.AsyncClient:
        if self._stream_client is None or self._stream_client.is_closed:
            self._stream_client = httpx.AsyncClient(transport=self._transport)
        return self._stream_client

    async def receive(self) -> AsyncIterator[InboundMessage]:
        """Event stream loop. Reconnects with backoff until cancelled."""
        backoff = _RECONNECT_INITIAL
        while True:
            delivered = 0
            try:
                async with aclosing(self._stream_session()) as stream:
                    async for msg in stream:
                        delivered += 1
                        yield msg
                log.info("Signal SSE stream closed by daemon")
            except asyncio.CancelledError:
                return
            except (TransportError, ProtocolError) as e:
                log.error("Signal SSE error: %s", e)
            except Exception as e:
                log.error("Signal SSE loop failed: %s", e, exc_info=True)
            finally:
                self.connected = False

            if delivered:
                backoff = _RECONNECT_INITIAL
            jitter = backoff * _RECONNECT_JITTER * (random.random() * 2 - 1)  # noqa: S311
            wait = backoff + jitter
            log.info("Retrying SSE connection in %.1fs...", wait)
            try:
                await asyncio.sleep(wait)
            except asyncio.CancelledError:
                return
            backoff = min(backoff * _RECONNECT_FACTOR, _RECONNECT_MAX)

    async def _stream_session(self) -> AsyncIterator[InboundMessage]:
        """Single stream connection. Yields messages until it ends or fails."""
        queue: asyncio.Queue = asyncio.Queue()
        done = object()

        def on_event(ev: SSEEvent) -> None:
            self.connected = True
            msg = normalize_event(ev, self.account)
            if msg is not None:
                queue.put_nowait(msg)

        async def pump() -> None:
            try:
                await stream_events(self._get_stream_client(), self.base_url,
                                    on_event, account=self.account)
            finally:
                queue.put_nowait(done)

        log.info("Starting Signal SSE stream...")
        task = asyncio.create_task(pump())
        try:
            while True:
                item = await queue.get()
                if item is done:
                    break
                yield item
            # Surface the stream's own failure, if any
            await task
        finally:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def send(self, target: str | ChannelTarget, text: str,
                   attachments: list[str] | None = None) -> None:
        """Send text (chunked) and optional attachment references."""
        resolved = ChannelTarget.parse(target)
        chunks = self._chunk_text(text) if text else [""]
        for i, chunk in enumerate(chunks):
            params = self._target_params(resolved)
            params["message"] = chunk
            if attachments and i == 0:
                params["attachments"] = list(attachments)
            await self.rpc.call("send", params)

    async def send_typing(self, target: str | ChannelTarget) -> None:
        try:
            await self.rpc.call("sendTyping", self._target_params(ChannelTarget.parse(target)))
        except Exception as e:
            log.debug("Typing indicator failed (non-critical): %s", e)

    async def send_reaction(self, target: str | ChannelTarget, emoji: str,
                            author: str, timestamp_ms: int) -> None:
        params = self._target_params(ChannelTarget.parse(target))
        params.update({
            "emoji": emoji,
            "targetAuthor": author,
            "targetTimestamp": timestamp_ms,
        })
        await self.rpc.call("sendReaction", params)

    async def list_accounts(self) -> list[dict]:
        result = await self.rpc.call("listAccounts", {}, timeout=5.0)
        return result if isinstance(result, list) else []

    def _target_params(self, target: ChannelTarget) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if self.account:
            params["account"] = self.account
        if target.is_group:
            params["groupId"] = target.id
        else:
            params["recipient"] = [target.id]
        return params

    def _chunk_text(self, text: str) -> list[str]:
        """Split text on newline boundaries within chunk limit."""
        if len(text) <= self.chunk_limit:
            return [text]

        chunks = []
        current = ""
        for line in text.split("\n"):
            if current and len(current) + len(line) + 1 > self.chunk_limit:
                chunks.extend(self._hard_split(current))
                current = line
            else:
                current = current + "\n" + line if current else line

        if current:
            chunks.extend(self._hard_split(current))

        return chunks

    def _hard_split(self, text: str) -> list[str]:
        return [text[i:i + self.chunk_limit] for i in range(0, len(text), self.chunk_limit)]
