"""
Scripted keystroke automation for CLIs whose login needs menu navigation.

Each script runs as its own process (``python -m cli_connect.automation.<tool>_login``),
drives the real CLI through a pseudo-terminal with pexpect and reports
progress on stdout using line markers the orchestrator parses like native
CLI output.
"""

import importlib.util
import sys

AUTH_URL_MARKER = "AUTH_URL:"
SUCCESS_MARKER = "LOGIN_SUCCESS"
FAILED_MARKER = "LOGIN_FAILED:"
INFO_MARKER = "LOGIN_INFO:"

CODEX_LOGIN = "cli_connect.automation.codex_login"
CLAUDE_LOGIN = "cli_connect.automation.claude_login"

DEPENDENCY = "pexpect"


def is_available() -> bool:
    """Whether the pseudo-terminal automation dependency can be used here."""
    if sys.platform == "win32":
        return False
    return importlib.util.find_spec(DEPENDENCY) is not None


def script_command(module: str, *args: str) -> tuple:
    """argv that runs an automation module with the current interpreter."""
    return (sys.executable, "-u", "-m", module) + tuple(args)
