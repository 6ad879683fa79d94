"""
Local OAuth callback server.

A short-lived aiohttp listener bound to a tool's assigned port (or an
OS-assigned port when that one is taken). The first request to one of the
accepted paths renders a confirmation page and signals completion; the
listener then closes itself after a grace period during which duplicate
or late browser requests are still answered.
"""

import asyncio
import html
from typing import Callable, Dict, List, Optional

from aiohttp import web
import structlog

from .tools import ToolDescriptor, ToolId

logger = structlog.get_logger(__name__)

ACCEPTED_PATHS = ("/callback", "/auth/callback", "/")

CompletionCallback = Callable[[ToolId, Dict[str, str]], None]


class CallbackServer:
    """
    One callback listener for one in-flight login of one tool.
    """

    def __init__(
        self,
        tool: ToolDescriptor,
        on_complete: CompletionCallback,
        host: str = "127.0.0.1",
        grace_period: float = 2.0
    ):
        """
        Initialize the callback server.

        Args:
            tool: Tool the listener is serving
            on_complete: Called once with (tool id, query params) on the first callback
            host: Interface to bind (loopback only)
            grace_period: Seconds to keep serving after completion
        """
        self.tool = tool
        self.on_complete = on_complete
        self.host = host
        self.grace_period = grace_period

        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._port: Optional[int] = None
        self._completed = False
        self._close_handle: Optional[asyncio.TimerHandle] = None
        self._stop_task: Optional[asyncio.Task] = None

    @property
    def port(self) -> Optional[int]:
        return self._port

    @property
    def running(self) -> bool:
        return self._runner is not None

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self._port}/auth/callback"

    async def start(self) -> int:
        """
        Bind the listener.

        Returns:
            int: The port actually bound

        Raises:
            OSError: If neither the assigned nor an ephemeral port can be bound
        """
        if self._runner is not None:
            return self._port

        self._app = web.Application()
        for path in ACCEPTED_PATHS:
            self._app.router.add_get(path, self._handle_callback)

        self._runner = web.AppRunner(self._app, access_log=None)
        await self._runner.setup()

        try:
            self._site = web.TCPSite(self._runner, self.host, self.tool.port)
            await self._site.start()
        except OSError as e:
            logger.warning("Callback port in use, falling back to ephemeral port",
                          tool_id=str(self.tool.id),
                          port=self.tool.port,
                          error=str(e))
            await self._site.stop()
            try:
                self._site = web.TCPSite(self._runner, self.host, 0)
                await self._site.start()
            except OSError:
                await self._cleanup()
                raise

        self._port = self._runner.addresses[0][1]
        logger.info("Callback server started",
                   tool_id=str(self.tool.id),
                   port=self._port,
                   fallback=self._port != self.tool.port)
        return self._port

    async def stop(self) -> None:
        """Close the listener immediately."""
        if self._close_handle is not None:
            self._close_handle.cancel()
            self._close_handle = None
        if self._runner is None:
            return
        await self._cleanup()
        logger.debug("Callback server stopped", tool_id=str(self.tool.id), port=self._port)

    async def _cleanup(self) -> None:
        runner, self._runner = self._runner, None
        self._site = None
        await runner.cleanup()

    def _schedule_close(self) -> None:
        loop = asyncio.get_running_loop()

        def close() -> None:
            self._close_handle = None
            self._stop_task = loop.create_task(self.stop())

        self._close_handle = loop.call_later(self.grace_period, close)

    async def _handle_callback(self, request: web.Request) -> web.Response:
        """Handle an OAuth redirect on any accepted path."""
        params = dict(request.query)
        error = params.get("error")

        logger.info("OAuth callback received",
                   tool_id=str(self.tool.id),
                   path=request.path,
                   has_code="code" in params,
                   has_error=error is not None,
                   duplicate=self._completed)

        if not self._completed:
            self._completed = True
            try:
                self.on_complete(self.tool.id, params)
            except Exception as e:
                logger.error("Callback completion handler failed",
                            tool_id=str(self.tool.id),
                            error=str(e))
            self._schedule_close()

        if error:
            description = params.get("error_description")
            message = f"{error} - {description}" if description else error
            page = self._generate_error_page(message)
        else:
            page = self._generate_success_page()

        return web.Response(text=page, content_type="text/html")

    def _generate_success_page(self) -> str:
        """Generate HTML success page."""
        return f"""
        <!DOCTYPE html>
        <html>
        <head>
            <meta charset="utf-8">
            <title>Authentication Complete</title>
            <style>
                body {{ font-family: Arial, sans-serif; margin: 40px; text-align: center; }}
                .success {{ color: #28a745; font-size: 24px; margin-bottom: 20px; }}
                .message {{ font-size: 16px; color: #333; }}
            </style>
        </head>
        <body>
            <div class="success">✅ Authentication Complete</div>
            <div class="message">
                <p>{html.escape(self.tool.name)} is now connected.</p>
                <p>You can close this window and return to CLI Connect.</p>
            </div>
            <script>
                setTimeout(function () {{ window.close(); }}, 3000);
            </script>
        </body>
        </html>
        """

    def _generate_error_page(self, error_message: str) -> str:
        """Generate HTML error page."""
        return f"""
        <!DOCTYPE html>
        <html>
        <head>
            <meta charset="utf-8">
            <title>Authentication Error</title>
            <style>
                body {{ font-family: Arial, sans-serif; margin: 40px; text-align: center; }}
                .error {{ color: #dc3545; font-size: 24px; margin-bottom: 20px; }}
                .message {{ font-size: 16px; color: #333; }}
                .details {{ background: #f8f9fa; padding: 15px; border-radius: 5px; margin: 20px; }}
            </style>
        </head>
        <body>
            <div class="error">❌ Authentication Failed</div>
            <div class="message">
                <p>{html.escape(self.tool.name)} reported an error during sign-in.</p>
                <div class="details">
                    <strong>Error:</strong> {html.escape(error_message)}
                </div>
                <p>Please close this window and try connecting again.</p>
            </div>
        </body>
        </html>
        """


class CallbackServerRegistry:
    """
    The live callback listeners, at most one per tool.
    """

    def __init__(self, host: str = "127.0.0.1", grace_period: float = 2.0):
        self.host = host
        self.grace_period = grace_period
        self._servers: Dict[ToolId, CallbackServer] = {}

    async def start(self, tool: ToolDescriptor, on_complete: CompletionCallback) -> CallbackServer:
        """Start a listener for a tool, replacing any previous one."""
        await self.stop(tool.id)

        server = CallbackServer(tool, on_complete, host=self.host, grace_period=self.grace_period)
        await server.start()
        self._servers[tool.id] = server
        return server

    def get(self, tool_id: ToolId) -> Optional[CallbackServer]:
        server = self._servers.get(tool_id)
        if server is not None and not server.running:
            # closed itself after its grace period
            del self._servers[tool_id]
            return None
        return server

    def active(self) -> List[ToolId]:
        return [tool_id for tool_id in list(self._servers) if self.get(tool_id) is not None]

    async def stop(self, tool_id: ToolId) -> None:
        server = self._servers.pop(tool_id, None)
        if server is not None:
            await server.stop()

    async def stop_all(self) -> None:
        for tool_id in list(self._servers):
            await self.stop(tool_id)
