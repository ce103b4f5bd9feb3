"""signal-cli daemon supervision.

Spawns `signal-cli daemon --http`, forwards its output to the host logger
with severity classification, and polls the control plane until ready.
"""

from __future__ import annotations

import asyncio
import logging
import re
import signal
import time
from dataclasses import dataclass

from . import TransportError
from .rpc import SignalRpcClient

log = logging.getLogger(__name__)

_READY_POLL_INTERVAL = 0.15
_READY_CHECK_TIMEOUT = 1.0
_READY_NOTICE_AFTER = 5.0
_READY_NOTICE_EVERY = 5.0
_STOP_GRACE = 5.0

_SEVERE_TAG_RE = re.compile(r"\b(ERROR|WARN|WARNING)\b")
_FAILURE_WORD_RE = re.compile(r"\b(FAILED|SEVERE|EXCEPTION)\b", re.IGNORECASE)


class DaemonNotReadyError(TransportError):
    """Daemon did not answer liveness checks in time."""

    def __init__(self, timeout: float, last_error: str | None = None):
        self.timeout = timeout
        self.last_error = last_error
        msg = f"Signal daemon did not become ready within {timeout:g}s"
        if last_error:
            msg += f" ({last_error})"
        super().__init__(msg)


@dataclass
class DaemonOptions:
    cli_path: str = "signal-cli"
    account: str | None = None
    http_host: str = "127.0.0.1"
    http_port: int = 8080
    receive_mode: str | None = None
    ignore_attachments: bool = False
    ignore_stories: bool = False
    send_read_receipts: bool = False


def build_daemon_args(opts: DaemonOptions) -> list[str]:
    """Argument vector (without the executable). Order is stable."""
    args = []
    if opts.account:
        args += ["-a", opts.account]
    args.append("daemon")
    args += ["--http", f"{opts.http_host}:{opts.http_port}"]
    args.append("--no-receive-stdout")
    if opts.receive_mode:
        args += ["--receive-mode", opts.receive_mode]
    if opts.ignore_attachments:
        args.append("--ignore-attachments")
    if opts.ignore_stories:
        args.append("--ignore-stories")
    if opts.send_read_receipts:
        args.append("--send-read-receipts")
    return args


def classify_log_line(line: str) -> str | None:
    """Return "error", "log", or None for blank lines.

    signal-cli writes everything to stderr, so severity comes from the text.
    """
    trimmed = line.strip()
    if not trimmed:
        return None
    if _SEVERE_TAG_RE.search(trimmed):
        return "error"
    if _FAILURE_WORD_RE.search(trimmed):
        return "error"
    return "log"


class DaemonHandle:
    """One supervised signal-cli process."""

    def __init__(self, proc: asyncio.subprocess.Process | None,
                 logger: logging.Logger, readers: list[asyncio.Task] | None = None):
        self._proc = proc
        self._logger = logger
        self._readers = readers or []
        self._stopped = False

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    def stop(self) -> None:
        """Send SIGTERM once. Safe to call repeatedly."""
        if self._stopped:
            return
        self._stopped = True
        if not self.running:
            return
        try:
            self._proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            pass

    async def aclose(self, grace: float = _STOP_GRACE) -> None:
        """Stop, wait for exit, escalate to SIGKILL after the grace period."""
        self.stop()
        if self._proc is not None and self._proc.returncode is None:
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=grace)
            except TimeoutError:
                self._logger.error("signal-cli did not exit after SIGTERM, killing (pid %s)", self.pid)
                try:
                    self._proc.kill()
                except ProcessLookupError:
                    pass
                await self._proc.wait()
        for task in self._readers:
            task.cancel()
        for task in self._readers:
            try:
                await task
            except asyncio.CancelledError:
                pass


async def _forward_output(stream: asyncio.StreamReader, logger: logging.Logger) -> None:
    while True:
        raw = await stream.readline()
        if not raw:
            return
        line = raw.decode("utf-8", errors="replace")
        kind = classify_log_line(line)
        if kind == "error":
            logger.error("signal-cli: %s", line.strip())
        elif kind == "log":
            logger.info("signal-cli: %s", line.strip())


async def spawn_daemon(opts: DaemonOptions, logger: logging.Logger | None = None) -> DaemonHandle:
    """Start signal-cli. Returns as soon as the process exists.

    Spawn failures are reported through the logger; the returned handle is
    then inert and the readiness wait is what fails.
    """
    logger = logger or log
    args = build_daemon_args(opts)
    try:
        proc = await asyncio.create_subprocess_exec(
            opts.cli_path, *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.error("signal-cli spawn error: %s", e)
        return DaemonHandle(None, logger)

    readers = [
        asyncio.create_task(_forward_output(proc.stdout, logger)),
        asyncio.create_task(_forward_output(proc.stderr, logger)),
    ]
    return DaemonHandle(proc, logger, readers)


async def wait_until_ready(
    client: SignalRpcClient,
    timeout: float = 30.0,
    logger: logging.Logger | None = None,
) -> None:
    """Poll the liveness endpoint until it answers or the timeout expires."""
    logger = logger or log
    logger.info("Waiting for Signal daemon at %s...", client.base_url)
    start = time.monotonic()
    next_notice = _READY_NOTICE_AFTER
    last_error = None

    while time.monotonic() - start < timeout:
        res = await client.check(timeout=_READY_CHECK_TIMEOUT)
        if res.ok:
            logger.info("Signal daemon ready")
            return
        last_error = res.error
        elapsed = time.monotonic() - start
        if elapsed >= next_notice:
            logger.error("Still waiting for Signal daemon... (%s)", res.error)
            next_notice += _READY_NOTICE_EVERY
        await asyncio.sleep(_READY_POLL_INTERVAL)

    raise DaemonNotReadyError(timeout, last_error)
