"""Configuration loader for the sigwire gateway.

Loads sigwire.toml, applies environment variable overrides for secrets,
validates required fields, and provides typed access to all settings.
Immutable after load — no runtime config reloading.
"""

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


_DM_POLICIES = ("open", "pairing", "allowlist", "disabled")
_GROUP_POLICIES = ("open", "allowlist", "disabled")
_RECEIVE_MODES = ("on-start", "on-connection", "manual")


def _deep_get(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(key, default)
    return d


def _resolve_path(p: str) -> Path:
    return Path(p).expanduser().resolve()


class Config:
    """Immutable configuration loaded from sigwire.toml."""

    def __init__(self, data: dict, config_dir: Path | None = None):
        self._data = data
        self._config_dir = config_dir or Path.cwd()
        self._validate()

    def _validate(self):
        errors = []
        if not _deep_get(self._data, "signal", "account"):
            errors.append("[signal] account is required")
        if not _deep_get(self._data, "agent", "url"):
            errors.append("[agent] url is required")
        dm = _deep_get(self._data, "policy", "dm", default="pairing")
        if dm not in _DM_POLICIES:
            errors.append(f"[policy] dm must be one of {', '.join(_DM_POLICIES)} (got {dm!r})")
        group = _deep_get(self._data, "policy", "group", default="allowlist")
        if group not in _GROUP_POLICIES:
            errors.append(f"[policy] group must be one of {', '.join(_GROUP_POLICIES)} (got {group!r})")
        mode = _deep_get(self._data, "signal", "receive_mode", default="")
        if mode and mode not in _RECEIVE_MODES:
            errors.append(f"[signal] receive_mode must be one of {', '.join(_RECEIVE_MODES)} (got {mode!r})")
        port = _deep_get(self._data, "signal", "http_port", default=8080)
        if not isinstance(port, int) or port <= 0:
            errors.append("[signal] http_port must be a positive integer")
        if errors:
            raise ConfigError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))
        if self.http_enabled and not self.http_auth_token:
            log.warning("[http] enabled without SIGWIRE_HTTP_TOKEN; "
                        "only /api/v1/status will answer")

    # --- Signal daemon ---

    @property
    def account(self) -> str:
        return self._data["signal"]["account"]

    @property
    def cli_path(self) -> str:
        return _deep_get(self._data, "signal", "cli_path", default="signal-cli")

    @property
    def signal_http_host(self) -> str:
        return _deep_get(self._data, "signal", "http_host", default="127.0.0.1")

    @property
    def signal_http_port(self) -> int:
        return _deep_get(self._data, "signal", "http_port", default=8080)

    @property
    def signal_base_url(self) -> str:
        """Explicit http_url wins over host/port."""
        url = _deep_get(self._data, "signal", "http_url", default="")
        if url:
            return url
        return f"http://{self.signal_http_host}:{self.signal_http_port}"

    @property
    def auto_start(self) -> bool:
        return _deep_get(self._data, "signal", "auto_start", default=True)

    @property
    def receive_mode(self) -> str | None:
        return _deep_get(self._data, "signal", "receive_mode", default="") or None

    @property
    def ignore_attachments(self) -> bool:
        return _deep_get(self._data, "signal", "ignore_attachments", default=False)

    @property
    def ignore_stories(self) -> bool:
        return _deep_get(self._data, "signal", "ignore_stories", default=False)

    @property
    def send_read_receipts(self) -> bool:
        return _deep_get(self._data, "signal", "send_read_receipts", default=False)

    @property
    def startup_timeout(self) -> float:
        return float(_deep_get(self._data, "signal", "startup_timeout", default=30))

    @property
    def rpc_timeout(self) -> float:
        return float(_deep_get(self._data, "signal", "rpc_timeout", default=10))

    @property
    def text_chunk_limit(self) -> int:
        return _deep_get(self._data, "signal", "text_chunk_limit", default=4000)

    # --- Policy ---

    @property
    def dm_policy(self) -> str:
        return _deep_get(self._data, "policy", "dm", default="pairing")

    @property
    def group_policy(self) -> str:
        return _deep_get(self._data, "policy", "group", default="allowlist")

    @property
    def allow_from(self) -> list[str]:
        return [str(x) for x in _deep_get(self._data, "policy", "allow_from", default=[])]

    @property
    def group_allow_from(self) -> list[str] | None:
        """None means fall back to allow_from."""
        raw = _deep_get(self._data, "policy", "group_allow_from", default=None)
        return None if raw is None else [str(x) for x in raw]

    # --- Routing ---

    @property
    def command_prefix(self) -> str:
        return _deep_get(self._data, "routing", "command_prefix", default="!")

    @property
    def session_prefix(self) -> str:
        return _deep_get(self._data, "routing", "session_prefix", default="signal")

    @property
    def cache_size(self) -> int:
        return _deep_get(self._data, "routing", "cache_size", default=5000)

    @property
    def plugins_dir(self) -> str:
        return _deep_get(self._data, "routing", "plugins_dir", default="plugins.d")

    # --- Agent ---

    @property
    def agent_url(self) -> str:
        return self._data["agent"]["url"]

    @property
    def agent_token(self) -> str:
        env_var = _deep_get(self._data, "agent", "token_env", default="SIGWIRE_AGENT_TOKEN")
        return os.environ.get(env_var, "") if env_var else ""

    @property
    def agent_timeout(self) -> float:
        return float(_deep_get(self._data, "agent", "timeout", default=600))

    @property
    def typing_indicators(self) -> bool:
        return _deep_get(self._data, "agent", "typing_indicators", default=True)

    @property
    def ack_reaction(self) -> bool:
        return _deep_get(self._data, "agent", "ack_reaction", default=False)

    # --- Event callbacks ---

    @property
    def callback_url(self) -> str:
        return _deep_get(self._data, "events", "callback_url", default="")

    @property
    def callback_token(self) -> str:
        env_var = _deep_get(self._data, "events", "callback_token_env", default="")
        return os.environ.get(env_var, "") if env_var else ""

    @property
    def callback_timeout(self) -> float:
        return float(_deep_get(self._data, "events", "callback_timeout", default=10))

    # --- HTTP API ---

    @property
    def http_enabled(self) -> bool:
        return _deep_get(self._data, "http", "enabled", default=False)

    @property
    def http_host(self) -> str:
        return _deep_get(self._data, "http", "host", default="127.0.0.1")

    @property
    def http_port(self) -> int:
        return _deep_get(self._data, "http", "port", default=8110)

    @property
    def http_auth_token(self) -> str:
        return os.environ.get("SIGWIRE_HTTP_TOKEN", "")

    @property
    def http_rate_limit(self) -> int:
        return _deep_get(self._data, "http", "rate_limit", default=60)

    @property
    def http_rate_window(self) -> int:
        return _deep_get(self._data, "http", "rate_window", default=60)

    # --- Paths / logging ---

    @property
    def config_dir(self) -> Path:
        """Directory containing sigwire.toml (for resolving relative paths)."""
        return self._config_dir

    @property
    def state_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "state_dir", default="~/.sigwire"))

    @property
    def log_file(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "log_file",
                                       default="~/.sigwire/sigwire.log"))

    @property
    def log_max_bytes(self) -> int:
        return _deep_get(self._data, "logging", "max_bytes", default=10 * 1024 * 1024)

    @property
    def log_backup_count(self) -> int:
        return _deep_get(self._data, "logging", "backup_count", default=3)

    # --- Raw access ---

    def raw(self, *keys: str, default: Any = None) -> Any:
        """Unvalidated lookup, e.g. raw("plugins", "dice", "sides") for plugin settings."""
        return _deep_get(self._data, *keys, default=default)


def _load_dotenv(toml_path: Path) -> None:
    """Load .env file from same directory as sigwire.toml if it exists."""
    env_file = toml_path.parent / ".env"
    if not env_file.exists():
        return
    with open(env_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, val = line.partition("=")
            key = key.strip()
            val = val.strip().strip('"').strip("'")
            # Only set if not already in environment (env takes precedence)
            if key not in os.environ:
                os.environ[key] = val


def load_config(path: str | Path, overrides: dict | None = None) -> Config:
    """Load and validate config from a TOML file.

    Args:
        path: Path to sigwire.toml config file.
        overrides: Dotted key paths to apply to raw TOML data before
                   constructing Config (e.g. CLI args).
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")
    _load_dotenv(p)
    try:
        with open(p, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {p}: {e}") from e
    if overrides:
        for key_path, value in overrides.items():
            keys = key_path.split(".")
            d = data
            for k in keys[:-1]:
                d = d.setdefault(k, {})
            d[keys[-1]] = value
    return Config(data, config_dir=p.parent)
