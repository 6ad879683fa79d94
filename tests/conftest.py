"""
Shared fixtures for the CLI Connect test suite.
"""

import sys
import textwrap
from dataclasses import replace
from typing import Tuple

import pytest

from cli_connect.strategies import LoginStrategy
from cli_connect.tools import TOOLS, ToolDescriptor, ToolId
from cli_connect.utils.config import Config


@pytest.fixture
def home(tmp_path, monkeypatch):
    """Redirect the home directory so credential paths land in a temp dir."""
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("USERPROFILE", str(tmp_path))
    return tmp_path


@pytest.fixture
def fast_config():
    """Configuration with every delay shrunk for tests."""
    config = Config()
    config.login.url_fallback_delay = 5.0
    config.login.flush_delay = 0.1
    config.login.kill_grace = 1.0
    config.login.exit_recheck_delay = 0.05
    config.login.settle_delay = 0.0
    config.callback.grace_period = 0.1
    config.browser.enabled = False
    config.browser.close_delay = 0.0
    return config


def make_tool(**overrides) -> ToolDescriptor:
    """A Gemini-shaped tool with test-friendly timings and no side channels."""
    tool = replace(
        TOOLS[ToolId.GEMINI],
        port=0,
        poll_interval=0.05,
        login_timeout=5,
        requires_automation=False,
        uses_embedded_browser=False,
        uses_callback_server=False,
    )
    return replace(tool, **overrides)


class ScriptStrategy(LoginStrategy):
    """Runs an inline Python script in place of a real CLI."""

    def __init__(self, tool: ToolDescriptor, script: str, **attrs):
        super().__init__(tool)
        self.script = textwrap.dedent(script)
        for name, value in attrs.items():
            setattr(self, name, value)

    def build_command(self) -> Tuple[str, ...]:
        return (sys.executable, "-u", "-c", self.script)
