"""
Static registry of the command-line tools CLI Connect can authenticate.

Each entry describes how to install the tool, which executable to look for,
how to start its login flow and where its credentials end up once the login
has finished.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple

from .errors import UnknownTool


class ToolId(str, Enum):
    """Identifiers of the supported tools."""
    CODEX = "codex"
    GEMINI = "gemini"
    CLAUDE = "claude"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class CredentialFile:
    """A candidate credential location on disk."""
    path: str  # relative to the home directory when it starts with "~"
    format: str = "json"  # "json" or "toml"
    copy_only: bool = False  # only used by the copy action, never proves authentication
    required_pattern: Optional[str] = None  # regex the content must match to count
    label: str = ""  # shown in copy messages

    def resolve(self) -> Path:
        """Expand the path against the current home directory."""
        return Path(self.path).expanduser()


@dataclass(frozen=True)
class ToolDescriptor:
    """Immutable description of a supported tool."""
    id: ToolId
    name: str
    description: str
    install_cmd: Tuple[str, ...]
    executable: str
    login_cmd: Tuple[str, ...]
    credential_files: Tuple[CredentialFile, ...]
    port: int
    login_timeout: int  # seconds
    poll_interval: float  # seconds between credential checks during login
    requires_automation: bool = False
    uses_embedded_browser: bool = False
    uses_callback_server: bool = True
    secure_store_service: Optional[str] = None
    extra_logout_files: Tuple[str, ...] = field(default_factory=tuple)
    success_message: str = ""

    @property
    def credential_paths(self) -> Tuple[Path, ...]:
        """Resolved candidate credential paths, copy-only fallbacks excluded."""
        return tuple(f.resolve() for f in self.credential_files if not f.copy_only)


TOOLS: Dict[ToolId, ToolDescriptor] = {
    ToolId.CODEX: ToolDescriptor(
        id=ToolId.CODEX,
        name="Codex CLI",
        description="OpenAI's lightweight coding agent",
        install_cmd=("npm", "install", "-g", "@openai/codex"),
        executable="codex",
        login_cmd=("codex", "login"),
        credential_files=(
            CredentialFile("~/.codex/auth.json", label="ChatGPT auth.json"),
            CredentialFile(
                "~/.codex/config.toml",
                format="toml",
                required_pattern=r'api_key\s*=\s*"([^"]+)"',
                label="ChatGPT config.toml"
            ),
        ),
        port=1455,
        login_timeout=10 * 60,
        poll_interval=3.0,
        requires_automation=True,
        # Codex runs its own local server on 1455
        uses_callback_server=False,
        success_message="ChatGPT (Codex) authenticated successfully",
    ),
    ToolId.GEMINI: ToolDescriptor(
        id=ToolId.GEMINI,
        name="Gemini CLI",
        description="Google's Gemini CLI with 1M token context",
        install_cmd=("npm", "install", "-g", "@google/gemini-cli"),
        executable="gemini",
        login_cmd=("gemini", "--prompt", "Authenticate"),
        credential_files=(
            CredentialFile("~/.gemini/oauth_creds.json", label="Gemini OAuth credentials"),
            CredentialFile("~/.gemini/settings.json", copy_only=True, label="Gemini settings"),
        ),
        port=1457,
        login_timeout=2 * 60,
        poll_interval=0.5,
        uses_embedded_browser=True,
        extra_logout_files=("~/.gemini/google_accounts.json",),
        success_message="Gemini CLI authenticated successfully",
    ),
    ToolId.CLAUDE: ToolDescriptor(
        id=ToolId.CLAUDE,
        name="Claude Code",
        description="Anthropic's powerful AI coding assistant",
        install_cmd=("npm", "install", "-g", "@anthropic-ai/claude-code"),
        executable="claude",
        login_cmd=("claude",),
        credential_files=(
            CredentialFile("~/.claude/.credentials.json", label="Claude credentials"),
            CredentialFile("~/.claude.json", copy_only=True, label="Claude settings"),
        ),
        port=1459,
        login_timeout=5 * 60,
        poll_interval=1.0,
        requires_automation=True,
        secure_store_service="Claude Code-credentials",
        success_message="Claude Code authenticated successfully",
    ),
}


def get_tool(tool_id: str, tools: Optional[Dict[ToolId, ToolDescriptor]] = None) -> ToolDescriptor:
    """
    Look up a tool descriptor by id.

    Raises:
        UnknownTool: If the id is not a supported tool
    """
    registry = tools if tools is not None else TOOLS
    try:
        return registry[ToolId(tool_id)]
    except (ValueError, KeyError):
        raise UnknownTool(f"Unknown tool: {tool_id}")
