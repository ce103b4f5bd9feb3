"""Channel types shared by the Signal transport and the router.

Defines the canonical inbound message, outbound targets, and the
transport/protocol error taxonomy raised by the signal-cli clients.
"""

from __future__ import annotations

from dataclasses import dataclass, field

GROUP_PREFIX = "group:"


class TransportError(Exception):
    """Daemon unreachable, request timed out, or connection dropped."""


class StreamOpenError(TransportError):
    """Event stream could not be opened."""


class ProtocolError(Exception):
    """Daemon answered with something we cannot use."""


class RpcError(ProtocolError):
    """JSON-RPC error object returned by the daemon."""

    def __init__(self, code, message: str):
        self.code = code
        self.message = message
        super().__init__(f"Signal RPC {code}: {message}")


class EmptyResponseError(ProtocolError):
    """Daemon returned an empty body where a result was expected."""

    def __init__(self, status: int):
        self.status = status
        super().__init__(f"Signal RPC empty response (status {status})")


@dataclass
class Attachment:
    id: str
    content_type: str | None = None
    filename: str | None = None
    size: int | None = None


@dataclass
class Quote:
    text: str | None = None
    author: str | None = None


@dataclass
class InboundMessage:
    id: str                  # "<timestamp_ms>-<sender_id>"
    sender_id: str           # envelope source: phone number or UUID
    timestamp_ms: int
    text: str = ""
    is_group: bool = False
    group_id: str | None = None
    sender_name: str | None = None
    sender_number: str | None = None
    sender_uuid: str | None = None
    attachments: list[Attachment] = field(default_factory=list)
    quote: Quote | None = None

    def __post_init__(self):
        if self.is_group != bool(self.group_id):
            raise ValueError("group_id must be set if and only if is_group is true")

    @property
    def display_sender(self) -> str:
        return self.sender_name or self.sender_id

    @property
    def target(self) -> ChannelTarget:
        """Where a reply to this message goes."""
        if self.is_group:
            return ChannelTarget.group(self.group_id)
        return ChannelTarget.direct(self.sender_id)


@dataclass(frozen=True)
class ChannelTarget:
    kind: str   # "direct" | "group"
    id: str

    @classmethod
    def direct(cls, sender_id: str) -> ChannelTarget:
        return cls("direct", sender_id)

    @classmethod
    def group(cls, group_id: str) -> ChannelTarget:
        return cls("group", group_id)

    @classmethod
    def parse(cls, value: str | ChannelTarget) -> ChannelTarget:
        """Parse the boundary string form ("group:<id>" or a recipient)."""
        if isinstance(value, ChannelTarget):
            return value
        value = value.strip()
        if value.lower().startswith(GROUP_PREFIX):
            group_id = value[len(GROUP_PREFIX):]
            if not group_id:
                raise ValueError("Empty group id in target")
            return cls.group(group_id)
        if not value:
            raise ValueError("Empty target")
        return cls.direct(value)

    @property
    def is_group(self) -> bool:
        return self.kind == "group"

    @property
    def name(self) -> str:
        return "Signal Group" if self.is_group else "Signal DM"

    def __str__(self) -> str:
        return f"{GROUP_PREFIX}{self.id}" if self.is_group else self.id
