"""Server-sent event stream from the signal-cli daemon.

GET {base}/api/v1/events[?account=...] with Accept: text/event-stream.
Framing is parsed incrementally so chunk boundaries never matter.
Retry and backoff live in the caller (SignalChannel.receive).
"""

from __future__ import annotations

import codecs
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx

from . import StreamOpenError, TransportError
from .rpc import EVENTS_PATH, normalize_base_url

log = logging.getLogger(__name__)

# Long-lived stream: no read timeout, bounded connect
_STREAM_TIMEOUT = httpx.Timeout(None, connect=10.0)


@dataclass(frozen=True)
class SSEEvent:
    event: str | None = None
    data: str | None = None
    id: str | None = None


class SSEParser:
    """Incremental line-oriented parser for text/event-stream framing."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._reset()

    def _reset(self) -> None:
        self._event: str | None = None
        self._data: str | None = None
        self._id: str | None = None

    def _flush(self) -> SSEEvent | None:
        if self._event is None and self._data is None and self._id is None:
            return None
        ev = SSEEvent(event=self._event, data=self._data, id=self._id)
        self._reset()
        return ev

    def feed(self, chunk: bytes | str) -> list[SSEEvent]:
        """Consume a chunk, return every event completed by it."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk

        events = []
        while True:
            line_end = self._buffer.find("\n")
            if line_end == -1:
                break
            line = self._buffer[:line_end]
            self._buffer = self._buffer[line_end + 1:]
            if line.endswith("\r"):
                line = line[:-1]
            ev = self._process_line(line)
            if ev is not None:
                events.append(ev)
        return events

    def close(self) -> list[SSEEvent]:
        """End of stream: flush the pending event. An unterminated last line is dropped."""
        events = self.feed(self._decoder.decode(b"", final=True))
        self._buffer = ""
        ev = self._flush()
        if ev is not None:
            events.append(ev)
        return events

    def _process_line(self, line: str) -> SSEEvent | None:
        if line == "":
            return self._flush()
        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        name = name.strip()
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event = value
        elif name == "data":
            self._data = value if self._data is None else f"{self._data}\n{value}"
        elif name == "id":
            self._id = value
        return None


async def stream_events(
    client: httpx.AsyncClient,
    base_url: str,
    on_event: Callable[[SSEEvent], Awaitable[None] | None],
    account: str | None = None,
) -> int:
    """Consume the event stream until it ends. Returns the number of events delivered.

    Raises StreamOpenError if the stream cannot be opened and TransportError
    if the connection drops mid-stream. Cancel the calling task to abort.
    """
    url = f"{normalize_base_url(base_url)}{EVENTS_PATH}"
    params = {"account": account} if account else None
    parser = SSEParser()
    delivered = 0

    async def deliver(events: list[SSEEvent]) -> None:
        nonlocal delivered
        for ev in events:
            result = on_event(ev)
            if inspect.isawaitable(result):
                await result
            delivered += 1

    try:
        async with client.stream(
            "GET", url, params=params,
            headers={"Accept": "text/event-stream"},
            timeout=_STREAM_TIMEOUT,
        ) as resp:
            if not resp.is_success:
                raise StreamOpenError(
                    f"Signal SSE failed ({resp.status_code} {resp.reason_phrase or 'error'})"
                )
            log.debug("Signal SSE connected: %s", url)
            async for chunk in resp.aiter_bytes():
                await deliver(parser.feed(chunk))
    except httpx.TimeoutException as e:
        raise StreamOpenError(f"Signal SSE connect timed out: {e}") from e
    except httpx.HTTPError as e:
        raise TransportError(f"Signal SSE connection lost: {e}") from e

    await deliver(parser.close())
    return delivered
