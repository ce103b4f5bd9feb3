"""Inbound message routing: policy gate, commands, parsers, agent fallback.

Every accepted message ends in exactly one place: a registered command,
the first matching message parser, or the agent. Handlers are registered
by plugins through ChannelProvider; the router never constructs them.
"""

from __future__ import annotations

import asyncio
import collections
import importlib.util
import inspect
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent import Agent
from channels import ChannelTarget, InboundMessage
from policy import AllowPolicy

log = logging.getLogger(__name__)

CHANNEL_TYPE = "signal"

_ARG_SPLIT_RE = re.compile(r"\s+")

SendFn = Callable[[ChannelTarget, str], Awaitable[None]]
EmitFn = Callable[[str, dict], Awaitable[None]]


@dataclass
class CommandContext:
    channel: str
    channel_type: str
    sender: str
    args: list[str]
    reply: Callable[[str], Awaitable[None]]
    bot_username: str


@dataclass
class MessageContext:
    channel: str
    channel_type: str
    sender: str
    content: str
    reply: Callable[[str], Awaitable[None]]
    bot_username: str


@dataclass
class Command:
    name: str
    handler: Callable[[CommandContext], Any]
    description: str = ""


@dataclass
class MessageParser:
    id: str
    pattern: re.Pattern | Callable[[str], bool]
    handler: Callable[[MessageContext], Any]

    def matches(self, text: str) -> bool:
        if isinstance(self.pattern, re.Pattern):
            return self.pattern.search(text) is not None
        return bool(self.pattern(text))


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class MessageCache:
    """Last-seen messages by id, oldest evicted past max_size."""

    def __init__(self, max_size: int = 5000):
        self.max_size = max_size
        self._items: collections.OrderedDict[str, InboundMessage] = collections.OrderedDict()

    def put(self, msg: InboundMessage) -> None:
        self._items[msg.id] = msg
        self._items.move_to_end(msg.id)
        while len(self._items) > self.max_size:
            self._items.popitem(last=False)

    def get(self, msg_id: str) -> InboundMessage | None:
        return self._items.get(msg_id)

    def values(self) -> list[InboundMessage]:
        return list(self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, msg_id: str) -> bool:
        return msg_id in self._items


class ChannelProvider:
    """Registration surface other plugins use to extend the Signal channel."""

    id = CHANNEL_TYPE

    def __init__(self, send: SendFn | None = None, bot_username: str = "signal-bot"):
        self._send = send
        self._bot_username = bot_username
        self._commands: dict[str, Command] = {}
        self._parsers: dict[str, MessageParser] = {}

    def register_command(self, cmd: Command) -> None:
        self._commands[cmd.name.lower()] = cmd
        log.debug("Command registered: %s", cmd.name)

    def unregister_command(self, name: str) -> None:
        self._commands.pop(name.lower(), None)

    def get_command(self, name: str) -> Command | None:
        return self._commands.get(name.lower())

    @property
    def commands(self) -> list[Command]:
        return list(self._commands.values())

    def add_message_parser(self, parser: MessageParser) -> None:
        self._parsers[parser.id] = parser
        log.debug("Message parser registered: %s", parser.id)

    def remove_message_parser(self, parser_id: str) -> None:
        self._parsers.pop(parser_id, None)

    @property
    def parsers(self) -> list[MessageParser]:
        return list(self._parsers.values())

    def clear(self) -> None:
        self._commands.clear()
        self._parsers.clear()

    async def send(self, channel: str | ChannelTarget, content: str) -> None:
        if self._send is None:
            raise RuntimeError("Signal channel is not connected")
        await self._send(ChannelTarget.parse(channel), content)

    @property
    def bot_username(self) -> str:
        return self._bot_username


class Router:
    def __init__(
        self,
        policy: AllowPolicy,
        provider: ChannelProvider,
        agent: Agent,
        send: SendFn,
        cache: MessageCache | None = None,
        emit: EmitFn | None = None,
        command_prefix: str = "!",
        session_prefix: str = CHANNEL_TYPE,
        before_inject: Callable[[InboundMessage], Awaitable[None]] | None = None,
    ):
        self.policy = policy
        self.provider = provider
        self.agent = agent
        self.send = send
        self.cache = cache if cache is not None else MessageCache()
        self.emit = emit
        self.command_prefix = command_prefix
        self.session_prefix = session_prefix
        self.before_inject = before_inject
        self._emit_tasks: set[asyncio.Task] = set()

    def session_key(self, target: ChannelTarget) -> str:
        return f"{self.session_prefix}-{target}"

    def _reply_fn(self, target: ChannelTarget) -> Callable[[str], Awaitable[None]]:
        async def reply(text: str) -> None:
            await self.send(target, text)
        return reply

    async def handle(self, msg: InboundMessage) -> str:
        """Route one inbound message. Returns where it ended up."""
        if not self.policy.is_allowed(msg.sender_id, msg.is_group):
            log.info("Message from %s blocked by %s policy", msg.sender_id,
                     "group" if msg.is_group else "dm")
            return "blocked"

        target = msg.target
        self._notify(msg, target)

        text = msg.text or ""
        if await self._dispatch_command(msg, target, text):
            return "command"
        if await self._dispatch_parser(msg, target, text):
            return "parser"
        await self._fallback(msg, target)
        return "agent"

    def _notify(self, msg: InboundMessage, target: ChannelTarget) -> None:
        if self.emit is None:
            return
        payload = {
            "channel": {"type": CHANNEL_TYPE, "id": str(target), "name": target.name},
            "message": msg.text or "[media]",
            "from": msg.display_sender,
        }

        async def _run() -> None:
            try:
                await self.emit("channel:message", payload)
            except Exception as e:
                log.error("Failed to emit channel:message event: %s", e)

        task = asyncio.create_task(_run())
        self._emit_tasks.add(task)
        task.add_done_callback(self._emit_tasks.discard)

    async def _dispatch_command(self, msg: InboundMessage, target: ChannelTarget, text: str) -> bool:
        if not self.command_prefix or not text.startswith(self.command_prefix):
            return False
        # Whitespace right after the prefix means "not a command"
        parts = _ARG_SPLIT_RE.split(text[len(self.command_prefix):])
        name = parts[0].lower()
        if not name:
            return False
        cmd = self.provider.get_command(name)
        if cmd is None:
            return False

        ctx = CommandContext(
            channel=str(target),
            channel_type=CHANNEL_TYPE,
            sender=msg.display_sender,
            args=[p for p in parts[1:] if p],
            reply=self._reply_fn(target),
            bot_username=self.provider.bot_username,
        )
        try:
            await _maybe_await(cmd.handler(ctx))
        except Exception:
            log.exception("Command handler '%s' failed", name)
        return True

    async def _dispatch_parser(self, msg: InboundMessage, target: ChannelTarget, text: str) -> bool:
        for parser in self.provider.parsers:
            try:
                matched = parser.matches(text)
            except Exception:
                log.exception("Parser '%s' pattern failed", parser.id)
                continue
            if not matched:
                continue

            ctx = MessageContext(
                channel=str(target),
                channel_type=CHANNEL_TYPE,
                sender=msg.display_sender,
                content=text,
                reply=self._reply_fn(target),
                bot_username=self.provider.bot_username,
            )
            try:
                await _maybe_await(parser.handler(ctx))
            except Exception:
                log.exception("Parser '%s' handler failed", parser.id)
            return True
        return False

    async def _fallback(self, msg: InboundMessage, target: ChannelTarget) -> None:
        session_key = self.session_key(target)
        meta = {
            "from": msg.display_sender,
            "channel": {"type": CHANNEL_TYPE, "id": str(target), "name": target.name},
        }

        self.cache.put(msg)
        try:
            self.agent.log_message(session_key, msg.text or "[media]", meta)
        except Exception:
            log.exception("Message log failed for %s", session_key)

        if not msg.text:
            return

        if self.before_inject is not None:
            try:
                await self.before_inject(msg)
            except Exception as e:
                log.debug("Pre-inject hook failed (non-critical): %s", e)

        prefixed = f"[{msg.display_sender}]: {msg.text}"
        try:
            reply = await self.agent.inject(session_key, prefixed, meta)
        except Exception:
            log.exception("Agent injection failed for %s", session_key)
            return

        if not reply or not reply.strip():
            log.debug("Empty agent reply for %s, nothing sent", session_key)
            return
        try:
            await self.send(target, reply)
        except Exception:
            log.exception("Failed to deliver agent reply to %s", target)


# ─── Plugins ─────────────────────────────────────────────────────

@dataclass
class LoadedPlugin:
    name: str
    module: Any
    unregister: Callable[[ChannelProvider], Any] | None = field(default=None)


def load_plugins(plugins_path: Path, provider: ChannelProvider,
                 deps: dict[str, Any] | None = None) -> list[LoadedPlugin]:
    """Load command/parser plugins from a directory of .py files.

    Each plugin defines register(provider). Optional configure() receives
    deps by parameter name; optional unregister(provider) runs on shutdown.
    """
    loaded: list[LoadedPlugin] = []
    if not plugins_path.is_dir():
        return loaded

    deps = deps or {}
    for plugin_file in sorted(plugins_path.glob("*.py")):
        try:
            spec = importlib.util.spec_from_file_location(
                f"sigwire_plugin_{plugin_file.stem}", plugin_file,
            )
            if spec is None or spec.loader is None:
                log.warning("Plugin: cannot load %s (invalid spec)", plugin_file.name)
                continue

            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)

            register_fn = getattr(module, "register", None)
            if not callable(register_fn):
                log.debug("Plugin: %s has no register(), skipping", plugin_file.name)
                continue

            configure_fn = getattr(module, "configure", None)
            if callable(configure_fn):
                sig = inspect.signature(configure_fn)
                kwargs = {
                    name: deps[name]
                    for name in sig.parameters
                    if name in deps
                }
                configure_fn(**kwargs)

            register_fn(provider)
            unregister_fn = getattr(module, "unregister", None)
            loaded.append(LoadedPlugin(
                name=plugin_file.stem,
                module=module,
                unregister=unregister_fn if callable(unregister_fn) else None,
            ))
            log.info("Plugin loaded: %s", plugin_file.name)
        except Exception:
            log.exception("Plugin: failed to load %s", plugin_file.name)
    return loaded
