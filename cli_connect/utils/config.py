"""
Configuration management for CLI Connect.

This module handles loading configuration from environment variables,
config files, and provides default values for all settings.
"""

import os
from typing import Optional, Dict, Any
from pathlib import Path
from dataclasses import dataclass, field

import tomli
from dotenv import load_dotenv

from ..tools import ToolId


VALID_LOG_LEVELS = {
    "DEBUG",
    "INFO",
    "WARNING",
    "ERROR",
    "CRITICAL"
}


@dataclass
class AppConfig:
    """General application configuration."""
    log_level: str = "INFO"
    log_file: Optional[str] = None
    json_logs: bool = True


@dataclass
class LoginConfig:
    """Login orchestration timings."""
    url_fallback_delay: float = 5.0  # open the auth URL externally if nothing completed by then
    flush_delay: float = 3.0  # let the CLI flush credentials before terminating it
    kill_grace: float = 5.0  # terminate -> kill escalation
    exit_recheck_delay: float = 1.0
    settle_delay: float = 1.0  # before probing credentials after a login
    timeouts: Dict[str, int] = field(default_factory=dict)  # per-tool wall-clock overrides

    def timeout_for(self, tool_id: str, default: int) -> float:
        """Wall-clock bound for a tool's login attempt."""
        return self.timeouts.get(str(tool_id), default)


@dataclass
class CallbackConfig:
    """Local OAuth callback server configuration."""
    host: str = "127.0.0.1"
    grace_period: float = 2.0  # keep serving late duplicate requests this long


@dataclass
class BrowserConfig:
    """Embedded browser window configuration."""
    enabled: bool = True
    headless: bool = False
    close_delay: float = 2.0
    width: int = 800
    height: int = 600


@dataclass
class InstallerConfig:
    """Runtime provisioning configuration."""
    runtime_poll_attempts: int = 60
    runtime_poll_interval: float = 2.0
    runtime_download_url: str = "https://nodejs.org/en/download/"


@dataclass
class TokenStoreConfig:
    """Optional remote token-storage endpoint."""
    base_url: Optional[str] = None  # unset disables forwarding
    user_id: str = "anonymous"
    timeout: float = 30.0
    include_secrets: bool = False


@dataclass
class Config:
    """Complete application configuration."""
    app: AppConfig = field(default_factory=AppConfig)
    login: LoginConfig = field(default_factory=LoginConfig)
    callback: CallbackConfig = field(default_factory=CallbackConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    installer: InstallerConfig = field(default_factory=InstallerConfig)
    token_store: TokenStoreConfig = field(default_factory=TokenStoreConfig)


def validate_config(config: Config) -> None:
    """
    Validate configuration values.

    Args:
        config: Config instance to validate

    Raises:
        ValueError: If any value is out of range
    """
    if config.app.log_level.upper() not in VALID_LOG_LEVELS:
        raise ValueError(
            f"Invalid log level '{config.app.log_level}'. "
            f"Must be one of: {', '.join(sorted(VALID_LOG_LEVELS))}"
        )

    positive = {
        "login.kill_grace": config.login.kill_grace,
        "callback.grace_period": config.callback.grace_period,
        "installer.runtime_poll_interval": config.installer.runtime_poll_interval,
        "token_store.timeout": config.token_store.timeout,
    }
    for name, value in positive.items():
        if value <= 0:
            raise ValueError(f"Invalid {name} '{value}'. Must be greater than zero")

    non_negative = {
        "login.url_fallback_delay": config.login.url_fallback_delay,
        "login.flush_delay": config.login.flush_delay,
        "login.exit_recheck_delay": config.login.exit_recheck_delay,
        "login.settle_delay": config.login.settle_delay,
        "browser.close_delay": config.browser.close_delay,
    }
    for name, value in non_negative.items():
        if value < 0:
            raise ValueError(f"Invalid {name} '{value}'. Must not be negative")

    valid_tools = {tool.value for tool in ToolId}
    for tool_id, timeout in config.login.timeouts.items():
        if tool_id not in valid_tools:
            raise ValueError(
                f"Invalid login timeout override for '{tool_id}'. "
                f"Must be one of: {', '.join(sorted(valid_tools))}"
            )
        if timeout <= 0:
            raise ValueError(f"Invalid login timeout '{timeout}' for '{tool_id}'")


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from environment variables and config files.

    Args:
        config_path: Optional path to TOML config file

    Returns:
        Config: Loaded configuration object
    """
    # Load environment variables from .env file if it exists
    load_dotenv()

    config = Config()

    _load_from_env(config)

    config_path = config_path or os.getenv("CLI_CONNECT_CONFIG")
    if config_path and Path(config_path).exists():
        _load_from_file(config, config_path)

    validate_config(config)

    return config


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


def _load_from_env(config: Config) -> None:
    """Load configuration values from environment variables."""
    config.app.log_level = os.getenv("CLI_CONNECT_LOG_LEVEL", config.app.log_level)
    config.app.log_file = os.getenv("CLI_CONNECT_LOG_FILE", config.app.log_file)
    config.app.json_logs = _env_bool("CLI_CONNECT_JSON_LOGS", config.app.json_logs)
    if _env_bool("CLI_CONNECT_DEBUG", False):
        config.app.log_level = "DEBUG"

    config.login.url_fallback_delay = float(
        os.getenv("CLI_CONNECT_URL_FALLBACK_DELAY", str(config.login.url_fallback_delay))
    )
    config.login.flush_delay = float(os.getenv("CLI_CONNECT_FLUSH_DELAY", str(config.login.flush_delay)))
    config.login.settle_delay = float(os.getenv("CLI_CONNECT_SETTLE_DELAY", str(config.login.settle_delay)))

    config.callback.host = os.getenv("CLI_CONNECT_CALLBACK_HOST", config.callback.host)

    config.browser.enabled = _env_bool("CLI_CONNECT_EMBEDDED_BROWSER", config.browser.enabled)
    config.browser.headless = _env_bool("CLI_CONNECT_BROWSER_HEADLESS", config.browser.headless)

    config.token_store.base_url = os.getenv("CLI_CONNECT_TOKEN_API_URL", config.token_store.base_url)
    config.token_store.user_id = os.getenv("CLI_CONNECT_USER_ID", config.token_store.user_id)
    config.token_store.include_secrets = _env_bool(
        "CLI_CONNECT_TOKEN_INCLUDE_SECRETS", config.token_store.include_secrets
    )


def _load_from_file(config: Config, config_path: str) -> None:
    """Load configuration from TOML file."""
    try:
        with open(config_path, "rb") as f:
            data = tomli.load(f)
    except (OSError, tomli.TOMLDecodeError) as e:
        raise RuntimeError(f"Failed to load config from {config_path}: {e}")

    sections: Dict[str, Any] = {
        "app": config.app,
        "login": config.login,
        "callback": config.callback,
        "browser": config.browser,
        "installer": config.installer,
        "token_store": config.token_store,
    }
    for section_name, section in sections.items():
        for key, value in data.get(section_name, {}).items():
            if hasattr(section, key):
                setattr(section, key, value)
