"""
Tool installation and Node.js runtime provisioning.
"""

import asyncio
import sys
import webbrowser
from typing import Callable, Mapping, Optional, Sequence, Tuple

import structlog

from .errors import InstallFailed, PrerequisiteMissing
from .tools import ToolDescriptor
from .utils.config import InstallerConfig
from .utils.environment import spawn_env
from .utils.process import run_command

logger = structlog.get_logger(__name__)

LogCallback = Callable[[str], None]

RUNTIME_EXECUTABLES = ("node", "npm")

# (executable to look up, install command) tried in order
LINUX_PACKAGE_MANAGERS: Tuple[Tuple[str, str], ...] = (
    ("apt-get", "sudo apt-get update && sudo apt-get install -y nodejs npm"),
    ("yum", "sudo yum install -y nodejs npm"),
    ("dnf", "sudo dnf install -y nodejs npm"),
    ("pacman", "sudo pacman -S --noconfirm nodejs npm"),
    ("zypper", "sudo zypper install -y nodejs npm"),
)


class Installer:
    """
    Checks for and installs CLI tools through npm.
    """

    def __init__(
        self,
        config: Optional[InstallerConfig] = None,
        env: Optional[Mapping[str, str]] = None,
        platform: Optional[str] = None,
        open_url: Callable[[str], object] = webbrowser.open
    ):
        self.config = config or InstallerConfig()
        self.env = env
        self.platform = platform or sys.platform
        self.open_url = open_url

    @property
    def lookup_command(self) -> str:
        return "where" if self.platform == "win32" else "which"

    async def which(self, executable: str) -> bool:
        """Whether an executable is on the prepared PATH."""
        try:
            result = await run_command(
                (self.lookup_command, executable),
                env=spawn_env(self.env, self.platform),
                timeout=30
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("PATH lookup failed", executable=executable, error=str(e))
            return False
        return result.ok

    async def is_installed(self, tool: ToolDescriptor) -> bool:
        installed = await self.which(tool.executable)
        logger.debug("Tool install check", tool_id=str(tool.id), installed=installed)
        return installed

    async def has_runtime(self) -> bool:
        for executable in RUNTIME_EXECUTABLES:
            if not await self.which(executable):
                return False
        return True

    async def ensure_runtime(self, log: LogCallback) -> None:
        """
        Make sure Node.js and npm are available, provisioning them if needed.

        Raises:
            PrerequisiteMissing: If the runtime is still missing after the
                automatic attempt and the manual-install polling window
        """
        if await self.has_runtime():
            return

        logger.info("Node.js runtime missing, provisioning", platform=self.platform)
        log("Node.js not found. Installing...")
        if await self._provision(log) and await self.has_runtime():
            log("Node.js installed successfully")
            return

        log(f"Please install Node.js manually from {self.config.runtime_download_url}")
        self.open_url(self.config.runtime_download_url)

        for _ in range(self.config.runtime_poll_attempts):
            await asyncio.sleep(self.config.runtime_poll_interval)
            if await self.has_runtime():
                log("Node.js detected")
                return

        raise PrerequisiteMissing("Node.js installation failed. Please install it manually from nodejs.org")

    async def _provision(self, log: LogCallback) -> bool:
        try:
            if self.platform == "darwin":
                if await self.which("brew"):
                    log("Installing Node.js via Homebrew...")
                    return await self.stream(("brew", "install", "node"), log) == 0
            elif self.platform.startswith("linux"):
                for manager, command in LINUX_PACKAGE_MANAGERS:
                    if await self.which(manager):
                        log("Installing Node.js via system package manager...")
                        if await self.stream(("sh", "-c", command), log) == 0:
                            return True
        except OSError as e:
            logger.error("Node.js provisioning failed", error=str(e))
        return False

    async def stream(self, argv: Sequence[str], log: LogCallback) -> int:
        """
        Run a command, forwarding its combined output line by line.

        Returns:
            int: The exit code

        Raises:
            OSError: If the command cannot be started
        """
        if self.platform == "win32":
            # npm is a .cmd shim on Windows
            argv = ("cmd", "/c") + tuple(argv)

        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=spawn_env(self.env, self.platform),
        )
        async for raw in proc.stdout:
            line = raw.decode(errors="replace").rstrip()
            if line:
                log(line)
        return await proc.wait()

    async def install(self, tool: ToolDescriptor, log: LogCallback) -> None:
        """
        Install a tool with its package-manager command.

        Raises:
            PrerequisiteMissing: If the Node.js runtime cannot be provisioned
            InstallFailed: If the install command fails or cannot be started
        """
        logger.info("Installing tool", tool_id=str(tool.id), command=" ".join(tool.install_cmd))
        await self.ensure_runtime(log)

        log(f"Installing {tool.name}...")
        try:
            exit_code = await self.stream(tool.install_cmd, log)
        except OSError as e:
            raise InstallFailed(f"Failed to run installer for {tool.name}: {e}") from e

        if exit_code != 0:
            logger.error("Installation failed", tool_id=str(tool.id), exit_code=exit_code)
            raise InstallFailed(f"Installation failed with code {exit_code}", exit_code=exit_code)

        logger.info("Tool installed", tool_id=str(tool.id))
        log(f"{tool.name} installed successfully!")
