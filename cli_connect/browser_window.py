"""
Embedded browser window for OAuth flows.

Opens the authorization URL in a dedicated Playwright-driven Chromium
window, watches every navigation and redirect, and forwards a detected
success to the local callback server so completion is signalled through
the same channel as an external browser would use.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern, Tuple
from urllib.parse import unquote

import aiohttp
import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from .errors import AuthenticationDenied
from .tools import ToolDescriptor, ToolId

logger = structlog.get_logger(__name__)


def _compile(*patterns: str) -> Tuple[Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


TOOL_SUCCESS_PATTERNS: Dict[ToolId, Tuple[Pattern, ...]] = {
    ToolId.CLAUDE: _compile(r"console\.anthropic\.com/oauth/code/success", r"download-complete"),
    ToolId.GEMINI: _compile(r"developers\.google\.com/gemini-code-assist/auth/auth_success"),
    ToolId.CODEX: (),
}

# code=true is an authorize-request flag, not an authorization code
GENERIC_SUCCESS_PATTERNS = _compile(r"[?&]code=(?!true(?:&|#|$))", r"success", r"authenticated")
ERROR_PATTERNS = _compile(r"error", r"denied")
CODE_RE = re.compile(r"[?&]code=(?!true(?:&|#|$))([^&#]+)")


@dataclass
class NavigationMatch:
    """A navigation that decided the outcome of the flow."""
    outcome: str  # "success" or "error"
    url: str
    code: Optional[str] = None


class NavigationTracker:
    """
    Classifies the URLs a browser visits during one OAuth flow.

    The first decisive URL wins; the initial authorization URL itself is
    never classified, and everything after completion is ignored.
    """

    def __init__(self, tool_id: ToolId, initial_url: str):
        self.tool_id = tool_id
        self.initial_url = initial_url
        self.completed = False
        self.history: List[str] = []

    def observe(self, url: str) -> Optional[NavigationMatch]:
        if self.completed or not url or url == self.initial_url:
            return None
        self.history.append(url)

        success_patterns = TOOL_SUCCESS_PATTERNS.get(self.tool_id, ()) + GENERIC_SUCCESS_PATTERNS
        if any(p.search(url) for p in success_patterns):
            self.completed = True
            code_match = CODE_RE.search(url)
            code = unquote(code_match.group(1)) if code_match else None
            return NavigationMatch("success", url, code)

        if any(p.search(url) for p in ERROR_PATTERNS):
            self.completed = True
            return NavigationMatch("error", url)

        return None


class EmbeddedBrowserWindow:
    """
    One browser window for one login attempt.

    ``open()`` resolves with the success match, resolves with None when the
    user closes the window first, and raises AuthenticationDenied when an
    error page is reached.
    """

    def __init__(
        self,
        tool: ToolDescriptor,
        callback_port: int,
        callback_host: str = "127.0.0.1",
        close_delay: float = 2.0,
        headless: bool = False,
        width: int = 800,
        height: int = 600
    ):
        self.tool = tool
        self.callback_port = callback_port
        self.callback_host = callback_host
        self.close_delay = close_delay
        self.headless = headless
        self.width = width
        self.height = height

        self.tracker: Optional[NavigationTracker] = None
        self._page = None
        self._playwright = None
        self._browser = None
        self._done: Optional[asyncio.Future] = None
        self._tasks: List[asyncio.Task] = []
        self._closed = False

    @property
    def callback_url(self) -> str:
        return f"http://{self.callback_host}:{self.callback_port}/auth/callback"

    async def open(self, auth_url: str) -> Optional[NavigationMatch]:
        loop = asyncio.get_running_loop()
        self.tracker = NavigationTracker(self.tool.id, auth_url)
        self._done = loop.create_future()

        logger.info("Opening embedded browser", tool_id=str(self.tool.id))
        try:
            self._page = await self._launch()
            self._page.on("framenavigated", self._on_frame_navigated)
            self._page.on("request", self._on_request)
            self._page.on("close", self._on_close)

            try:
                await self._page.goto(auth_url, wait_until="commit")
            except PlaywrightError as e:
                # Redirect chains can abort the initial load; events still arrive
                logger.debug("Initial navigation interrupted", tool_id=str(self.tool.id), error=str(e))

            return await self._done
        finally:
            await self.close()

    async def close(self) -> None:
        """Close the window and release the browser."""
        if self._closed:
            return
        self._closed = True

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()

        if self._page is not None:
            try:
                await self._page.close()
            except PlaywrightError as e:
                logger.debug("Browser page already closed", error=str(e))
        await self._shutdown()

        if self._done is not None and not self._done.done():
            self._done.set_result(None)
        logger.debug("Embedded browser closed", tool_id=str(self.tool.id))

    async def _launch(self):
        """Start Chromium and return a fresh page."""
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self.headless)
        context = await self._browser.new_context(
            viewport={"width": self.width, "height": self.height}
        )
        return await context.new_page()

    async def _shutdown(self) -> None:
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                logger.debug("Browser already closed", error=str(e))
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    def _on_frame_navigated(self, frame) -> None:
        if frame.parent_frame is None:
            self.handle_url(frame.url)

    def _on_request(self, request) -> None:
        if request.is_navigation_request() and request.redirected_from is not None:
            self.handle_url(request.url)

    def _on_close(self, page) -> None:
        if self._done is not None and not self._done.done():
            logger.info("Embedded browser closed by user", tool_id=str(self.tool.id))
            self._done.set_result(None)

    def handle_url(self, url: str) -> None:
        """Feed one observed URL into the tracker and act on a decision."""
        logger.debug("Browser navigation", tool_id=str(self.tool.id), url=url.split("?")[0])
        match = self.tracker.observe(url) if self.tracker else None
        if match is None:
            return

        if match.outcome == "success":
            logger.info("Authentication success detected in browser",
                       tool_id=str(self.tool.id),
                       has_code=match.code is not None)
            self._tasks.append(asyncio.ensure_future(self._complete_success(match)))
        else:
            logger.error("Authentication error detected in browser", tool_id=str(self.tool.id))
            if self._done is not None and not self._done.done():
                self._done.set_exception(AuthenticationDenied("Authentication was denied or failed"))

    async def _complete_success(self, match: NavigationMatch) -> None:
        try:
            if match.code is not None:
                await self._send_code(match.code)
            else:
                await self._page.goto(
                    f"{self.callback_url}?success=true&tool={self.tool.id}",
                    wait_until="commit"
                )
        except (aiohttp.ClientError, asyncio.TimeoutError, PlaywrightError) as e:
            logger.warning("Could not reach local callback server",
                          tool_id=str(self.tool.id),
                          error=str(e))

        await asyncio.sleep(self.close_delay)
        if self._done is not None and not self._done.done():
            self._done.set_result(match)

    async def _send_code(self, code: str) -> None:
        """Forward the authorization code to the callback server as a synthetic request."""
        timeout = aiohttp.ClientTimeout(total=5)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            params = {"code": code, "tool": str(self.tool.id)}
            async with session.get(self.callback_url, params=params) as response:
                await response.read()
                logger.debug("Authorization code forwarded",
                            tool_id=str(self.tool.id),
                            status=response.status)
