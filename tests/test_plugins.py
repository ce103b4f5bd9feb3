"""Tests for plugin loading — load_plugins().

Verifies: discovery order, configure() injection by parameter name,
unregister capture, bad plugin resilience, missing plugins dir.
"""

import pytest

from config import Config
from conftest import FakeAgent, make_message
from policy import AllowPolicy
from routing import ChannelProvider, Router, load_plugins


def _write_plugin(plugins_dir, filename, content):
    """Write a plugin file to the plugins directory."""
    plugins_dir.mkdir(parents=True, exist_ok=True)
    (plugins_dir / filename).write_text(content)


PING_PLUGIN = '''\
from routing import Command

async def _ping(ctx):
    await ctx.reply("pong")

def register(provider):
    provider.register_command(Command("ping", _ping, "Liveness check"))

def unregister(provider):
    provider.unregister_command("ping")
'''

CONFIGURED_PLUGIN = '''\
from routing import MessageParser
import re

SEEN = {}

def configure(config=None, agent=None):
    SEEN["config"] = config
    SEEN["agent"] = agent

def register(provider):
    provider.add_message_parser(MessageParser("dice", re.compile(r"\\broll\\b"), lambda ctx: None))
'''


SECTION_PLUGIN = '''\
STATE = {}

def configure(config):
    STATE["sides"] = config.raw("plugins", "dice", "sides", default=6)
    STATE["missing"] = config.raw("plugins", "dice", "color", default="white")

def register(provider):
    pass
'''

class TestLoadPlugins:
    def test_no_plugins_dir(self, tmp_path):
        assert load_plugins(tmp_path / "missing", ChannelProvider()) == []

    def test_register_and_unregister(self, tmp_path):
        plugins = tmp_path / "plugins.d"
        _write_plugin(plugins, "ping.py", PING_PLUGIN)
        provider = ChannelProvider()
        loaded = load_plugins(plugins, provider)
        assert [p.name for p in loaded] == ["ping"]
        assert provider.get_command("ping") is not None
        loaded[0].unregister(provider)
        assert provider.get_command("ping") is None

    def test_configure_gets_only_requested_deps(self, tmp_path):
        plugins = tmp_path / "plugins.d"
        _write_plugin(plugins, "dice.py", CONFIGURED_PLUGIN)
        provider = ChannelProvider()
        loaded = load_plugins(plugins, provider, deps={"config": "CFG", "channel": "CH"})
        assert loaded[0].module.SEEN == {"config": "CFG", "agent": None}
        assert loaded[0].unregister is None
        assert [p.id for p in provider.parsers] == ["dice"]

    def test_plugin_reads_own_config_section(self, tmp_path, minimal_toml_data):
        minimal_toml_data["plugins"] = {"dice": {"sides": 20}}
        plugins = tmp_path / "plugins.d"
        _write_plugin(plugins, "dice.py", SECTION_PLUGIN)
        loaded = load_plugins(plugins, ChannelProvider(),
                              deps={"config": Config(minimal_toml_data)})
        assert loaded[0].module.STATE == {"sides": 20, "missing": "white"}

    def test_sorted_discovery(self, tmp_path):
        plugins = tmp_path / "plugins.d"
        _write_plugin(plugins, "b.py", "def register(provider):\n    pass\n")
        _write_plugin(plugins, "a.py", "def register(provider):\n    pass\n")
        names = [p.name for p in load_plugins(plugins, ChannelProvider())]
        assert names == ["a", "b"]

    def test_module_without_register_skipped(self, tmp_path):
        plugins = tmp_path / "plugins.d"
        _write_plugin(plugins, "helper.py", "X = 1\n")
        assert load_plugins(plugins, ChannelProvider()) == []

    def test_broken_plugin_does_not_stop_others(self, tmp_path, caplog):
        plugins = tmp_path / "plugins.d"
        _write_plugin(plugins, "a_broken.py", "raise RuntimeError('import boom')\n")
        _write_plugin(plugins, "b_ping.py", PING_PLUGIN)
        provider = ChannelProvider()
        loaded = load_plugins(plugins, provider)
        assert [p.name for p in loaded] == ["b_ping"]
        assert "a_broken.py" in caplog.text

    def test_non_python_files_ignored(self, tmp_path):
        plugins = tmp_path / "plugins.d"
        _write_plugin(plugins, "README.md", "not a plugin")
        assert load_plugins(plugins, ChannelProvider()) == []

    @pytest.mark.asyncio
    async def test_loaded_command_routes(self, tmp_path):
        plugins = tmp_path / "plugins.d"
        _write_plugin(plugins, "ping.py", PING_PLUGIN)
        sent = []

        async def send(target, text):
            sent.append(text)

        provider = ChannelProvider(send=send)
        load_plugins(plugins, provider)
        agent = FakeAgent()
        router = Router(AllowPolicy(dm="open"), provider, agent, send)
        assert await router.handle(make_message(text="!ping")) == "command"
        assert sent == ["pong"]
        assert agent.injected == []
