"""Shared fixtures for the sigwire test suite.

All tests use temporary directories, mock transports, and fake agents.
Nothing talks to a real signal-cli daemon.
"""

import sys
from pathlib import Path

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))


@pytest.fixture
def minimal_toml_data(tmp_path):
    """Minimal valid config data (as parsed dict, not raw TOML)."""
    return {
        "signal": {
            "account": "+15550001111",
            "http_host": "127.0.0.1",
            "http_port": 8080,
            "auto_start": False,
        },
        "policy": {
            "dm": "allowlist",
            "group": "allowlist",
            "allow_from": ["+15552223333"],
        },
        "agent": {
            "url": "http://agent.test",
        },
        "paths": {
            "state_dir": str(tmp_path / "state"),
            "log_file": str(tmp_path / "sigwire.log"),
        },
    }


class FakeAgent:
    """Agent collaborator that records calls and returns a canned reply."""

    def __init__(self, reply="pong", identity=None):
        self.reply = reply
        self.identity = identity
        self.injected = []
        self.logged = []

    async def get_identity(self):
        return self.identity

    async def inject(self, session_key, text, meta):
        self.injected.append((session_key, text, meta))
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply

    def log_message(self, session_key, text, meta):
        self.logged.append((session_key, text, meta))


@pytest.fixture
def fake_agent():
    return FakeAgent()


def make_message(**overrides):
    from channels import InboundMessage

    defaults = {
        "id": "1700000000000-+15552223333",
        "sender_id": "+15552223333",
        "timestamp_ms": 1700000000000,
        "text": "Hello",
        "sender_name": "Alice",
    }
    defaults.update(overrides)
    return InboundMessage(**defaults)
