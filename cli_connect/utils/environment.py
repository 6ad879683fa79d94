"""
Process environment preparation for spawned CLI tools.

Every child process gets a PATH that includes the usual Node.js install
locations and an environment stripped of variables that would let a CLI
skip its interactive OAuth flow (API keys, CI hints, headless browsers).
"""

import os
import sys
from pathlib import Path
from typing import Dict, List, Mapping, Optional


# Variables that short-circuit OAuth or force non-interactive behaviour
UNSET_VARS = (
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GEMINI_API_KEY",
    "GOOGLE_API_KEY",
    "GOOGLE_GENAI_USE_VERTEXAI",
    "GOOGLE_GENAI_USE_GCA",
    "NO_BROWSER",
    "DEBIAN_FRONTEND",
    "CI",
)


def _home(env: Mapping[str, str]) -> Path:
    home = env.get("HOME") or env.get("USERPROFILE")
    return Path(home) if home else Path.home()


def extra_paths(env: Optional[Mapping[str, str]] = None, platform: Optional[str] = None) -> List[str]:
    """Well-known binary directories prepended to PATH."""
    env = os.environ if env is None else env
    platform = platform or sys.platform
    home = _home(env)

    paths = [
        "/usr/local/bin",
        "/usr/bin",
        "/opt/homebrew/bin",
        "/opt/homebrew/sbin",
        str(home / ".nvm/versions/node/v22.17.0/bin"),
        str(home / ".nvm/versions/node/v20.18.0/bin"),
        str(home / ".volta/bin"),
        str(home / ".fnm/aliases/default/bin"),
    ]
    if platform == "win32":
        paths.append("C:\\Program Files\\nodejs")
        paths.append(str(Path(env.get("APPDATA", "")) / "npm"))
    return paths


def enhanced_path(env: Optional[Mapping[str, str]] = None, platform: Optional[str] = None) -> str:
    """
    Build a PATH value with the extra directories first, deduplicated.

    Args:
        env: Environment to derive from (defaults to os.environ)
        platform: Platform name override (defaults to sys.platform)

    Returns:
        str: The combined search path
    """
    env = os.environ if env is None else env
    platform = platform or sys.platform
    separator = ";" if platform == "win32" else ":"

    existing = [p for p in env.get("PATH", "").split(separator) if p]
    # dict preserves first-seen order
    combined = dict.fromkeys(extra_paths(env, platform) + existing)
    return separator.join(combined)


def sanitized_env(env: Optional[Mapping[str, str]] = None, platform: Optional[str] = None) -> Dict[str, str]:
    """
    Copy the environment with OAuth-conflicting variables removed.

    Args:
        env: Environment to derive from (defaults to os.environ)
        platform: Platform name override (defaults to sys.platform)

    Returns:
        Dict[str, str]: A new mapping; the input is never modified
    """
    env = os.environ if env is None else env
    result = {key: value for key, value in env.items() if key not in UNSET_VARS}
    result["PATH"] = enhanced_path(env, platform)

    if result.get("BROWSER") == "www-browser":
        del result["BROWSER"]

    return result


def spawn_env(env: Optional[Mapping[str, str]] = None, platform: Optional[str] = None) -> Dict[str, str]:
    """Sanitized environment plus terminal hints for interactive CLIs."""
    result = sanitized_env(env, platform)
    result["TERM"] = "xterm-256color"
    result["FORCE_COLOR"] = "1"
    return result
