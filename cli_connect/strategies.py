"""
Per-tool login strategies.

The orchestrator runs the same procedure for every tool; everything that
differs between the CLIs (the command to spawn, state to reset before a
fresh login, extra output phrases, prompts to answer, what to do with an
authentication URL, native logout) is supplied by a LoginStrategy.
"""

import asyncio
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Tuple, Type

import structlog

from . import automation
from .credentials import CredentialLocator
from .scraper import FAILURE_PHRASES, SUCCESS_PHRASES
from .tools import ToolDescriptor, ToolId
from .utils.environment import spawn_env
from .utils.process import run_command, terminate_process

logger = structlog.get_logger(__name__)

EMBEDDED = "embedded"
EXTERNAL = "external"


@dataclass
class StrategyContext:
    """What a strategy needs from the session while preparing or logging out."""
    locator: CredentialLocator
    log: Callable[[str], None]
    env: Optional[Mapping[str, str]] = None
    timeout: float = 30.0


class LoginStrategy:
    """
    Default strategy: spawn the tool's own login command and scrape it.
    """

    url_handling = EXTERNAL
    external_fallback = True
    url_message = "Opening authentication page in browser..."
    extra_success_phrases: Tuple[str, ...] = ()
    extra_failure_phrases: Tuple[str, ...] = ()
    # (prompt text, keystrokes) answered at most once per attempt
    prompt_responses: Tuple[Tuple[str, str], ...] = ()

    def __init__(self, tool: ToolDescriptor):
        self.tool = tool

    @property
    def requires_automation(self) -> bool:
        return self.tool.requires_automation

    @property
    def success_phrases(self) -> Tuple[str, ...]:
        return SUCCESS_PHRASES + self.extra_success_phrases

    @property
    def failure_phrases(self) -> Tuple[str, ...]:
        return FAILURE_PHRASES + self.extra_failure_phrases

    def build_command(self) -> Tuple[str, ...]:
        return tuple(self.tool.login_cmd)

    def build_env(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        return spawn_env(base)

    def meaningful(self, line: str) -> bool:
        """Whether a cleaned output line is worth showing in the UI log."""
        return bool(line.strip())

    async def prepare(self, ctx: StrategyContext) -> None:
        """Reset tool state so the login starts from scratch."""

    async def logout(self, ctx: StrategyContext) -> Optional[str]:
        """
        Run the tool's native logout, if it has one.

        Returns:
            Optional[str]: A message describing what happened, None when the
            tool has no native logout
        """
        return None


class CodexStrategy(LoginStrategy):
    """
    Codex: ``codex login`` driven through the automation script.

    The CLI opens the browser and runs its own callback listener, so the
    URL is only reported, never opened a second time.
    """

    external_fallback = False
    url_message = "Browser should open automatically for authentication..."
    extra_success_phrases = ("successfully logged in",)

    def build_command(self) -> Tuple[str, ...]:
        return automation.script_command(automation.CODEX_LOGIN)

    async def _native_logout(self, ctx: StrategyContext) -> Optional[str]:
        try:
            result = await run_command(("codex", "logout"), env=spawn_env(ctx.env), timeout=ctx.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("codex logout failed", error=str(e))
            return f"codex logout failed: {e}"
        logger.debug("codex logout completed", exit_code=result.exit_code)
        return "codex logout completed" if result.ok else f"codex logout exited with code {result.exit_code}"

    async def prepare(self, ctx: StrategyContext) -> None:
        # A stale session makes `codex login` return without a new flow
        message = await self._native_logout(ctx)
        ctx.log(f"Cleared previous Codex session ({message})")

    async def logout(self, ctx: StrategyContext) -> Optional[str]:
        return await self._native_logout(ctx)


GEMINI_MEANINGFUL = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"Code Assist login required",
    r"open authentication page",
    r"Waiting for authentication",
    r"Loaded cached credentials",
    r"already authenticated",
    r"authenticated",
    r"logged in",
    r"https?://\S+",
))

OAUTH_PERSONAL = "oauth-personal"


def ensure_oauth_selected(settings_path: Path) -> None:
    """Force Gemini's settings to the personal OAuth login type."""
    settings: Dict = {}
    try:
        settings = json.loads(settings_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        pass
    except ValueError:
        logger.warning("Replacing unreadable Gemini settings", path=str(settings_path))
    if not isinstance(settings, dict):
        settings = {}

    auth = settings.setdefault("security", {}).setdefault("auth", {})
    auth["selectedType"] = OAUTH_PERSONAL
    if auth.get("enforcedType") not in (None, OAUTH_PERSONAL):
        del auth["enforcedType"]
    settings["selectedAuthType"] = OAUTH_PERSONAL

    settings_path.parent.mkdir(parents=True, exist_ok=True)
    settings_path.write_text(json.dumps(settings, indent=2), encoding="utf-8")


class GeminiStrategy(LoginStrategy):
    """
    Gemini: the CLI prints its OAuth URL; the embedded browser follows it.
    """

    url_handling = EMBEDDED
    url_message = "Opening authentication page in OAuth window..."
    prompt_responses = (("How would you like to authenticate", "\r"),)

    settings_path = "~/.gemini/settings.json"

    def meaningful(self, line: str) -> bool:
        return any(p.search(line) for p in GEMINI_MEANINGFUL)

    async def prepare(self, ctx: StrategyContext) -> None:
        removed = await ctx.locator.remove_credentials(self.tool)
        if removed:
            ctx.log("Cleared Gemini OAuth credentials")
        try:
            ensure_oauth_selected(Path(self.settings_path).expanduser())
        except OSError as e:
            logger.warning("Failed to ensure Gemini OAuth selection", error=str(e))


class ClaudeStrategy(LoginStrategy):
    """
    Claude Code: the interactive session is driven through its menus by the
    automation script.
    """

    logout_timeout = 3.0

    def build_command(self) -> Tuple[str, ...]:
        return automation.script_command(automation.CLAUDE_LOGIN)

    async def prepare(self, ctx: StrategyContext) -> None:
        removed = await ctx.locator.remove_credentials(self.tool)
        if removed:
            ctx.log("Cleared existing Claude credentials")

    async def logout(self, ctx: StrategyContext) -> Optional[str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.tool.login_cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                env=spawn_env(ctx.env),
            )
        except OSError as e:
            logger.warning("Could not start claude for logout", error=str(e))
            return f"Failed to run claude logout: {e}"

        try:
            proc.stdin.write(b"/logout\n")
            await proc.stdin.drain()
            await asyncio.sleep(1)
            proc.stdin.write(b"/exit\n")
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("claude exited before logout commands were sent")

        try:
            await asyncio.wait_for(proc.wait(), timeout=self.logout_timeout)
        except asyncio.TimeoutError:
            await terminate_process(proc, grace=1.0)
        return "Claude logout completed"


STRATEGIES: Dict[ToolId, Type[LoginStrategy]] = {
    ToolId.CODEX: CodexStrategy,
    ToolId.GEMINI: GeminiStrategy,
    ToolId.CLAUDE: ClaudeStrategy,
}


def get_strategy(tool: ToolDescriptor) -> LoginStrategy:
    """Instantiate the strategy registered for a tool."""
    return STRATEGIES.get(tool.id, LoginStrategy)(tool)
