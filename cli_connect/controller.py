"""
UI-facing session controller.

SessionController is the request/response surface used by the terminal UI.
Every operation takes a tool id and returns a plain dict with a ``success``
flag plus either a payload or an ``error`` message and ``kind`` tag; failures
never escape as exceptions. Progress is reported through the EventEmitter.

The controller exclusively owns the per-tool connection state. All mutations
happen on the event loop, so no locking is needed.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import structlog

from . import automation
from .api_client import TokenStoreClient
from .callback_server import CallbackServerRegistry
from .clipboard import copy_to_clipboard
from .credentials import CredentialLocator
from .errors import ConnectError
from .events import (
    CREDENTIALS_STORED,
    PREREQUISITE_STATUS,
    PREREQUISITES_READY,
    SHOW_SUCCESS,
    TOOL_CONNECTED,
    EventEmitter,
)
from .installer import Installer
from .orchestrator import LoginOrchestrator
from .strategies import StrategyContext, get_strategy
from .tools import TOOLS, ToolDescriptor, ToolId, get_tool
from .utils.config import Config

logger = structlog.get_logger(__name__)

Result = Dict[str, Any]


@dataclass
class ToolConnectionState:
    """Connection state of one tool."""
    connected: bool = False
    in_progress: bool = False


class SessionController:
    """
    Owns the connection state of every tool and runs the connect flow.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        emitter: Optional[EventEmitter] = None,
        installer: Optional[Installer] = None,
        locator: Optional[CredentialLocator] = None,
        callback_servers: Optional[CallbackServerRegistry] = None,
        orchestrator: Optional[LoginOrchestrator] = None,
        token_store: Optional[TokenStoreClient] = None,
        tools: Optional[Dict[ToolId, ToolDescriptor]] = None,
        env: Optional[Mapping[str, str]] = None,
        clipboard: Callable[[str], Awaitable[bool]] = copy_to_clipboard,
        automation_available: Callable[[], bool] = automation.is_available
    ):
        """
        Initialize the controller.

        Collaborators left as None are built from ``config``.

        Args:
            config: Application configuration
            emitter: Event sink for status, log and completion events
            installer: Tool installer
            locator: Credential locator
            callback_servers: Registry of OAuth callback listeners
            orchestrator: Login orchestrator
            token_store: Remote token-storage client
            tools: Tool registry (defaults to the built-in table)
            env: Base environment for spawned processes
            clipboard: Coroutine writing text to the system clipboard
            automation_available: Reports whether scripted automation can run
        """
        self.config = config or Config()
        self.emitter = emitter or EventEmitter()
        self.tools = tools or TOOLS
        self.env = env
        self.clipboard = clipboard
        self.automation_available = automation_available

        self.installer = installer or Installer(self.config.installer, env=env)
        self.locator = locator or CredentialLocator(settle_delay=self.config.login.settle_delay)
        self.callback_servers = callback_servers or CallbackServerRegistry(
            host=self.config.callback.host,
            grace_period=self.config.callback.grace_period,
        )
        self.orchestrator = orchestrator or LoginOrchestrator(
            self.config,
            self.locator,
            self.callback_servers,
            self.emitter,
            env=env,
            automation_available=automation_available,
        )
        self.token_store = token_store or TokenStoreClient(self.config.token_store)

        self._states: Dict[ToolId, ToolConnectionState] = {
            tool_id: ToolConnectionState() for tool_id in self.tools
        }

    def state(self, tool_id: ToolId) -> ToolConnectionState:
        return self._states.setdefault(tool_id, ToolConnectionState())

    async def _handle(self, operation: str, tool_id: str,
                      action: Callable[[ToolDescriptor], Awaitable[Result]]) -> Result:
        """Run one operation, converting every failure into a failed result."""
        try:
            tool = get_tool(tool_id, self.tools)
            result = await action(tool)
        except ConnectError as e:
            logger.warning("Operation failed",
                          operation=operation,
                          tool_id=str(tool_id),
                          kind=e.kind,
                          error=str(e))
            return {"success": False, "error": str(e), "kind": e.kind}
        except Exception as e:
            logger.error("Unexpected error",
                        operation=operation,
                        tool_id=str(tool_id),
                        error=str(e),
                        exc_info=True)
            return {"success": False, "error": str(e), "kind": "internal"}

        result.setdefault("success", True)
        return result

    def _log(self, tool: ToolDescriptor) -> Callable[[str], None]:
        return lambda message: self.emitter.log(tool.id, message)

    async def startup(self) -> Result:
        """
        Check the prerequisites shared by all tools.

        Emits one ``prerequisite-status`` event per prerequisite, then
        ``prerequisites-ready``.
        """
        missing: List[str] = []

        try:
            runtime = await self.installer.has_runtime()
        except Exception as e:
            logger.error("Runtime check failed", error=str(e), exc_info=True)
            runtime = False
        self.emitter.emit(
            PREREQUISITE_STATUS,
            name="node",
            status="ok" if runtime else "missing",
            message="Node.js and npm found" if runtime else "Node.js will be installed when a tool needs it",
        )
        if not runtime:
            missing.append("node")

        scripted = self.automation_available()
        self.emitter.emit(
            PREREQUISITE_STATUS,
            name=automation.DEPENDENCY,
            status="ok" if scripted else "missing",
            message=(f"{automation.DEPENDENCY} available" if scripted
                     else f"{automation.DEPENDENCY} is required for scripted logins"),
        )
        if not scripted:
            missing.append(automation.DEPENDENCY)

        self.emitter.emit(PREREQUISITES_READY, ready=not missing, missing=missing)
        logger.info("Prerequisites checked", missing=missing)
        return {"success": True, "ready": not missing, "missing": missing}

    async def check_install(self, tool_id: str) -> Result:
        async def action(tool: ToolDescriptor) -> Result:
            return {"installed": await self.installer.is_installed(tool)}
        return await self._handle("check_install", tool_id, action)

    async def check_authenticated(self, tool_id: str) -> Result:
        async def action(tool: ToolDescriptor) -> Result:
            return {"authenticated": await self.locator.check_authenticated(tool)}
        return await self._handle("check_authenticated", tool_id, action)

    async def status(self, tool_id: str) -> Result:
        """Installed and authenticated flags plus the controller's own state."""
        async def action(tool: ToolDescriptor) -> Result:
            state = self.state(tool.id)
            return {
                "tool_id": str(tool.id),
                "name": tool.name,
                "installed": await self.installer.is_installed(tool),
                "authenticated": await self.locator.check_authenticated(tool),
                "connected": state.connected,
                "in_progress": state.in_progress,
            }
        return await self._handle("status", tool_id, action)

    async def install(self, tool_id: str) -> Result:
        async def action(tool: ToolDescriptor) -> Result:
            await self._install(tool)
            return {"message": f"{tool.name} installed successfully"}
        return await self._handle("install", tool_id, action)

    async def _install(self, tool: ToolDescriptor) -> None:
        self.emitter.status(tool.id, "installing", f"Installing {tool.name}...")
        await self.installer.install(tool, self._log(tool))

    async def login(self, tool_id: str) -> Result:
        async def action(tool: ToolDescriptor) -> Result:
            state = self.state(tool.id)
            if state.in_progress:
                raise ConnectError(f"{tool.name} login already in progress")

            state.in_progress = True
            try:
                source = await self._login(tool)
            except ConnectError:
                self.emitter.status(tool.id, "error", f"{tool.name} login failed")
                raise
            finally:
                state.in_progress = False

            state.connected = True
            self.emitter.status(tool.id, "authenticated", f"{tool.name} authenticated")
            return {"message": f"{tool.name} authenticated", "source": source}
        return await self._handle("login", tool_id, action)

    async def _login(self, tool: ToolDescriptor) -> str:
        self.emitter.status(tool.id, "authenticating", f"Authenticating {tool.name}...")
        return await self.orchestrator.login(tool)

    async def logout(self, tool_id: str) -> Result:
        """
        Log a tool out: its native logout (where it has one), then removal of
        its credential files and secure-store entry.

        Refused while a login or connect for the tool is running.
        """
        async def action(tool: ToolDescriptor) -> Result:
            if self.state(tool.id).in_progress:
                return {
                    "success": False,
                    "skipped": True,
                    "error": f"{tool.name} login in progress",
                    "kind": "in_progress",
                }

            ctx = StrategyContext(locator=self.locator, log=self._log(tool), env=self.env)
            native = await get_strategy(tool).logout(ctx)
            if native:
                self.emitter.log(tool.id, native)

            result = await self.locator.logout(tool)
            if result["success"]:
                self.state(tool.id).connected = False
                self.emitter.status(tool.id, "logged-out", result["message"])
            else:
                result["error"] = result["message"]
                result["kind"] = "logout_failed"
            result["native"] = native
            return result
        return await self._handle("logout", tool_id, action)

    async def extract_credentials(self, tool_id: str) -> Result:
        async def action(tool: ToolDescriptor) -> Result:
            descriptor = await self.locator.extract(tool)
            return {"message": descriptor.message, "credentials": descriptor.redacted()}
        return await self._handle("extract_credentials", tool_id, action)

    async def copy_credentials(self, tool_id: str) -> Result:
        """
        Copy a tool's credentials to the system clipboard.

        The copy text is included in the result so a caller without a
        clipboard can still use it.
        """
        async def action(tool: ToolDescriptor) -> Result:
            copyable = await self.locator.copyable(tool)
            if copyable is None:
                return {
                    "success": False,
                    "error": f"No {tool.name} credentials found to copy",
                    "kind": "not_found",
                }

            copied = await self.clipboard(copyable["copy_text"])
            message = copyable["message"] if copied else "No clipboard available"
            return {"message": message, "copied": copied, "copy_text": copyable["copy_text"]}
        return await self._handle("copy_credentials", tool_id, action)

    async def connect(self, tool_id: str) -> Result:
        """
        Install if needed, log in unless already authenticated, then extract
        and forward credentials.

        A tool that is already connected or mid-connect is left alone; the
        call returns ``skipped: True`` without starting anything.
        """
        async def action(tool: ToolDescriptor) -> Result:
            state = self.state(tool.id)
            if state.in_progress or state.connected:
                logger.info("Connect ignored",
                           tool_id=str(tool.id),
                           connected=state.connected,
                           in_progress=state.in_progress)
                return {"success": state.connected, "skipped": True,
                        "connected": state.connected, "in_progress": state.in_progress}

            state.in_progress = True
            try:
                result = await self._connect(tool)
            except ConnectError as e:
                self.emitter.status(tool.id, "error", str(e))
                raise
            finally:
                state.in_progress = False

            state.connected = True
            return result
        return await self._handle("connect", tool_id, action)

    async def _connect(self, tool: ToolDescriptor) -> Result:
        logger.info("Connecting tool", tool_id=str(tool.id))
        self.emitter.status(tool.id, "checking", f"Checking {tool.name}...")

        if not await self.installer.is_installed(tool):
            await self._install(tool)

        login_skipped = await self.locator.check_authenticated(tool)
        if login_skipped:
            logger.info("Already authenticated, skipping login", tool_id=str(tool.id))
            self.emitter.log(tool.id, f"{tool.name} already authenticated")
        else:
            await self._login(tool)

        self.emitter.status(tool.id, "extracting", "Extracting credentials...")
        descriptor = await self.locator.extract(tool)
        redacted = descriptor.redacted()

        stored = None
        if self.token_store.enabled:
            stored = await self.token_store.store_token(descriptor)
            self.emitter.emit(CREDENTIALS_STORED,
                              tool_id=str(tool.id),
                              success=stored["success"],
                              message=stored["message"])

        self.emitter.status(tool.id, "connected", descriptor.message)
        self.emitter.emit(TOOL_CONNECTED, tool_id=str(tool.id), credentials=redacted)
        self.emitter.emit(SHOW_SUCCESS, tool_id=str(tool.id), message=descriptor.message)
        logger.info("Tool connected",
                   tool_id=str(tool.id),
                   login_skipped=login_skipped,
                   degraded=descriptor.degraded)

        return {
            "message": descriptor.message,
            "credentials": redacted,
            "login_skipped": login_skipped,
            "stored": stored,
        }

    async def close(self) -> None:
        """Tear down every in-flight attempt and listener."""
        logger.info("Closing session")
        await self.orchestrator.cancel_all()
        await self.callback_servers.stop_all()
        await self.token_store.close()
