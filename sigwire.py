#!/usr/bin/env python3
"""sigwire — a gateway between signal-cli and a conversational agent.

Entry point. Wires config → daemon → event stream → router → agent.
Handles PID file, Unix signals, the message loop, and shutdown.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import logging.handlers
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any

# Add sigwire directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

import httpx

from agent import AgentIdentity, HTTPAgent
from channels import ChannelTarget, InboundMessage
from channels.daemon import DaemonOptions
from channels.http_api import HTTPApi, mask_phone_number
from channels.rpc import SignalRpcClient
from channels.signal import SignalChannel
from config import Config, ConfigError, load_config
from policy import AllowPolicy
from routing import ChannelProvider, LoadedPlugin, MessageCache, Router, load_plugins

log = logging.getLogger("sigwire")

# ─── PID File ────────────────────────────────────────────────────

def _check_pid_file(path: Path) -> None:
    """Refuse to start if another instance is live."""
    if path.exists():
        try:
            pid = int(path.read_text().strip())
            os.kill(pid, 0)  # Check if process exists
            print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except PermissionError:
            print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except (ProcessLookupError, ValueError):
            log.info("Stale PID file found, removing")
            path.unlink()


def _write_pid_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(os.getpid()))


def _remove_pid_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.debug("PID file cleanup failed: %s", e)


# ─── Gateway ─────────────────────────────────────────────────────

class SignalGateway:
    def __init__(self, config: Config, agent: Any = None,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self.start_time = time.time()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=1000)
        self.identity = AgentIdentity()
        self.plugins: list[LoadedPlugin] = []
        self._transport = transport
        self._stopping = asyncio.Event()
        self._shut_down = False
        self._reader_task: asyncio.Task | None = None
        self._http_api: HTTPApi | None = None
        self._pid_path = config.state_dir / "sigwire.pid"

        self.rpc = SignalRpcClient(config.signal_base_url, timeout=config.rpc_timeout,
                                   transport=transport)
        self.channel = SignalChannel(
            self.rpc,
            account=config.account,
            daemon_options=DaemonOptions(
                cli_path=config.cli_path,
                account=config.account,
                http_host=config.signal_http_host,
                http_port=config.signal_http_port,
                receive_mode=config.receive_mode,
                ignore_attachments=config.ignore_attachments,
                ignore_stories=config.ignore_stories,
                send_read_receipts=config.send_read_receipts,
            ),
            auto_start=config.auto_start,
            startup_timeout=config.startup_timeout,
            chunk_limit=config.text_chunk_limit,
            transport=transport,
        )
        self.agent = agent or HTTPAgent(config.agent_url, token=config.agent_token,
                                        timeout=config.agent_timeout, transport=transport)
        self.cache = MessageCache(max_size=config.cache_size)
        self.provider = ChannelProvider(send=self._send, bot_username=config.account)
        self.policy = AllowPolicy(
            dm=config.dm_policy,
            group=config.group_policy,
            allow_from=tuple(config.allow_from),
            group_allow_from=(tuple(config.group_allow_from)
                              if config.group_allow_from is not None else None),
        )
        self.router = Router(
            policy=self.policy,
            provider=self.provider,
            agent=self.agent,
            send=self._send,
            cache=self.cache,
            emit=self._emit_event if config.callback_url else None,
            command_prefix=config.command_prefix,
            session_prefix=config.session_prefix,
            before_inject=self._before_inject,
        )

    @property
    def running(self) -> bool:
        return not self._stopping.is_set()

    def _setup_logging(self) -> None:
        """Configure logging to file + stderr."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=self.config.log_max_bytes,
            backupCount=self.config.log_backup_count, encoding="utf-8",
        )
        fh.setFormatter(fmt)
        fh.setLevel(logging.DEBUG)

        # Stderr handler (for journald)
        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(logging.INFO)

        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        root.addHandler(fh)
        root.addHandler(sh)

        # Silence noisy third-party loggers
        for name in ("httpx", "httpcore", "aiohttp.access"):
            logging.getLogger(name).setLevel(logging.WARNING)

    # ─── Collaborator callbacks ──────────────────────────────────

    async def _send(self, target: ChannelTarget, text: str) -> None:
        await self.channel.send(target, text)

    async def _emit_event(self, name: str, payload: dict) -> None:
        """POST an observability event to the configured callback URL."""
        url = self.config.callback_url
        headers: dict[str, str] = {"Content-Type": "application/json"}
        token = self.config.callback_token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            async with httpx.AsyncClient(timeout=self.config.callback_timeout,
                                         transport=self._transport) as client:
                await client.post(url, json={"event": name, **payload}, headers=headers)
        except Exception as e:
            log.warning("Event callback failed (%s): %s", url, e)

    async def _before_inject(self, msg: InboundMessage) -> None:
        if self.config.ack_reaction:
            try:
                await self.channel.send_reaction(msg.target, self.identity.emoji,
                                                 msg.sender_id, msg.timestamp_ms)
            except Exception as e:
                log.debug("Ack reaction failed (non-critical): %s", e)
        if self.config.typing_indicators:
            await self.channel.send_typing(msg.target)

    async def _refresh_identity(self) -> None:
        try:
            identity = await self.agent.get_identity()
        except Exception as e:
            log.warning("Failed to refresh agent identity: %s", e)
            return
        if identity:
            self.identity = identity
            log.info("Agent identity: %s", identity.name)

    async def _build_status(self) -> dict:
        """Status for HTTP /status. Account info is masked."""
        account = self.config.account
        status: dict[str, Any] = {
            "account": mask_phone_number(account) if account else None,
            "agent": self.identity.name,
            "uptime_seconds": round(time.time() - self.start_time),
            "cached_messages": len(self.cache),
            "stream_connected": self.channel.connected,
        }
        check = await self.rpc.check(timeout=3.0)
        if not check.ok:
            status.update(connected=False, daemon_status="unreachable", error=check.error)
            return status

        # listAccounts isn't available in every signal-cli version
        try:
            accounts = await self.channel.list_accounts()
        except Exception:
            accounts = []
        own = next((a for a in accounts if a.get("number") == account), None)
        status.update(
            connected=True,
            daemon_status="running",
            registered_device={"device_id": own.get("device")} if own else None,
            account_count=len(accounts),
        )
        return status

    # ─── Loops ───────────────────────────────────────────────────

    async def _channel_reader(self) -> None:
        """Read messages from the Signal stream and push to queue."""
        try:
            async for msg in self.channel.receive():
                await self.queue.put(msg)
        except asyncio.CancelledError:
            return
        except Exception as e:
            log.error("Channel reader failed: %s", e)
        # Stream exhausted: sentinel ends the message loop, skipped when full
        with contextlib.suppress(asyncio.QueueFull):
            self.queue.put_nowait(None)

    async def _message_loop(self) -> None:
        """Dispatch inbound messages in arrival order."""
        while self.running:
            try:
                item = await asyncio.wait_for(self.queue.get(), timeout=1.0)
            except TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            if item is None:
                break
            if not isinstance(item, InboundMessage):
                continue
            try:
                await self.router.handle(item)
            except Exception:
                log.exception("Error handling Signal message %s", item.id)

    def _setup_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register Unix signal handlers."""
        def handle_sigterm():
            log.info("Signal received: shutting down gracefully")
            self._stopping.set()

        try:
            loop.add_signal_handler(signal.SIGTERM, handle_sigterm)
            loop.add_signal_handler(signal.SIGINT, handle_sigterm)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    # ─── Lifecycle ───────────────────────────────────────────────

    async def start(self) -> None:
        """Connect everything. Raises on daemon startup failure."""
        cfg = self.config
        plugins_path = cfg.config_dir / cfg.plugins_dir
        self.plugins = load_plugins(plugins_path, self.provider, deps={
            "config": cfg,
            "provider": self.provider,
            "channel": self.channel,
            "agent": self.agent,
        })

        await self._refresh_identity()
        await self.channel.connect()
        log.info("Signal daemon reachable at %s", self.rpc.base_url)

        if cfg.http_enabled:
            self._http_api = HTTPApi(
                host=cfg.http_host,
                port=cfg.http_port,
                auth_token=cfg.http_auth_token,
                get_status=self._build_status,
                get_messages=self.cache.values,
                rate_limit=cfg.http_rate_limit,
                rate_window=cfg.http_rate_window,
            )
            await self._http_api.start()

        self._reader_task = asyncio.create_task(self._channel_reader())

    async def run(self) -> None:
        """Main entry point — starts all components and runs until stopped."""
        cfg = self.config
        self._setup_logging()
        log.info("Starting sigwire for %s", mask_phone_number(cfg.account))

        _check_pid_file(self._pid_path)
        _write_pid_file(self._pid_path)

        try:
            self._setup_signals(asyncio.get_running_loop())
            await self.start()
            log.info("sigwire running (PID %d)", os.getpid())
            await self._message_loop()
        except Exception as e:
            log.error("Fatal error: %s", e, exc_info=True)
            raise
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Tear everything down. Safe to call more than once."""
        self._stopping.set()
        if self._shut_down:
            return
        self._shut_down = True

        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None

        if self._http_api is not None:
            await self._http_api.stop()
            self._http_api = None

        for plugin in self.plugins:
            if plugin.unregister is None:
                continue
            try:
                plugin.unregister(self.provider)
            except Exception:
                log.exception("Plugin %s unregister failed", plugin.name)
        self.provider.clear()

        try:
            await self.channel.disconnect()
        except Exception as e:
            log.warning("Channel disconnect failed: %s", e)

        close = getattr(self.agent, "close", None)
        if close is not None:
            try:
                await close()
            except Exception as e:
                log.debug("Agent client close failed: %s", e)

        _remove_pid_file(self._pid_path)
        log.info("sigwire stopped")


# ─── CLI Entry Point ─────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(
        description="sigwire — bridge signal-cli to a conversational agent",
    )
    parser.add_argument(
        "-c", "--config",
        default=os.environ.get("SIGWIRE_CONFIG", "./sigwire.toml"),
        help="Path to config file (default: $SIGWIRE_CONFIG or ./sigwire.toml)",
    )
    parser.add_argument(
        "--account",
        help="Override the Signal account (E.164 number)",
    )
    parser.add_argument(
        "--no-auto-start", action="store_true",
        help="Never spawn signal-cli; require an already running daemon",
    )
    args = parser.parse_args()

    overrides: dict[str, Any] = {}
    if args.account:
        overrides["signal.account"] = args.account
    if args.no_auto_start:
        overrides["signal.auto_start"] = False

    try:
        config = load_config(args.config, overrides=overrides)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    async def _run() -> None:
        gateway = SignalGateway(config)
        await gateway.run()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        pass
    except Exception:
        sys.exit(1)


if __name__ == "__main__":
    main()
