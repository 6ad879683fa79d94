"""
Login orchestration.

One LoginAttempt per login request. The attempt spawns the tool's login
command (or its automation script), scrapes its output, optionally serves
an OAuth callback or follows the authorization URL in an embedded browser,
and polls the tool's credential locations. Whichever completion channel
fires first settles the attempt; every task, timer, process, listener and
window the attempt created is torn down before ``login()`` returns.
"""

import asyncio
import codecs
import uuid
import webbrowser
from typing import Any, Callable, Dict, Mapping, Optional, Set
from urllib.parse import urlparse

import structlog

from . import automation
from .browser_window import EmbeddedBrowserWindow
from .callback_server import CallbackServer, CallbackServerRegistry
from .credentials import CredentialLocator
from .errors import (
    AuthenticationDenied,
    ConnectError,
    LoginCancelled,
    LoginProcessFailed,
    LoginTimeout,
    PrerequisiteMissing,
    SpawnFailed,
)
from .events import AUTH_COMPLETED, EventEmitter
from .scraper import OutputScanner, ScanResult, visible_lines
from .strategies import EMBEDDED, LoginStrategy, StrategyContext, get_strategy
from .tools import ToolDescriptor, ToolId
from .utils.config import Config
from .utils.logging import LogContext
from .utils.process import terminate_process

logger = structlog.get_logger(__name__)

MAX_TRANSCRIPT = 64 * 1024

BrowserFactory = Callable[[ToolDescriptor, int], EmbeddedBrowserWindow]


class LoginAttempt:
    """
    State of one in-flight login.

    ``outcome`` is settled exactly once: ``succeed`` and ``fail`` are no-ops
    once it is done, so completion channels can race freely.
    """

    def __init__(self, tool: ToolDescriptor, strategy: LoginStrategy):
        self.id = uuid.uuid4().hex[:12]
        self.tool = tool
        self.strategy = strategy
        loop = asyncio.get_running_loop()
        self.outcome: asyncio.Future = loop.create_future()
        self.started = loop.time()
        self.finished = asyncio.Event()

        self.process: Optional[asyncio.subprocess.Process] = None
        self.callback_server: Optional[CallbackServer] = None
        self.browser: Optional[EmbeddedBrowserWindow] = None
        self.auth_url: Optional[str] = None
        self.answered: Set[str] = set()
        self.transcript = ""

        self._tasks: Set[asyncio.Task] = set()
        self._timers: Set[asyncio.TimerHandle] = set()

    @property
    def resolved(self) -> bool:
        return self.outcome.done()

    @property
    def succeeded(self) -> bool:
        return self.outcome.done() and not self.outcome.cancelled() and self.outcome.exception() is None

    def succeed(self, source: str) -> bool:
        if self.outcome.done():
            return False
        self.outcome.set_result(source)
        logger.info("Login attempt resolved", tool_id=str(self.tool.id), source=source)
        return True

    def fail(self, error: ConnectError) -> bool:
        if self.outcome.done():
            return False
        self.outcome.set_exception(error)
        logger.warning("Login attempt rejected",
                      tool_id=str(self.tool.id),
                      kind=error.kind,
                      error=str(error))
        return True

    def record(self, text: str) -> None:
        self.transcript = (self.transcript + text)[-MAX_TRANSCRIPT:]

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            error = task.exception()
            logger.error("Login attempt task failed",
                        tool_id=str(self.tool.id),
                        error=str(error),
                        exc_info=error)
            if isinstance(error, ConnectError):
                self.fail(error)
            else:
                self.fail(ConnectError(f"{self.tool.name} login failed: {error}"))

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()

        def fire() -> None:
            self._timers.discard(handle)
            callback(*args)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)
        return handle

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    async def cancel_pending(self) -> None:
        """Cancel every timer and task and wait until the tasks are gone."""
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()

        tasks = [t for t in self._tasks if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


class LoginOrchestrator:
    """
    Runs login attempts, at most one per tool.
    """

    def __init__(
        self,
        config: Config,
        locator: CredentialLocator,
        callback_servers: CallbackServerRegistry,
        emitter: EventEmitter,
        env: Optional[Mapping[str, str]] = None,
        browser_factory: Optional[BrowserFactory] = None,
        open_external: Callable[[str], Any] = webbrowser.open,
        automation_available: Callable[[], bool] = automation.is_available
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Application configuration (timings, browser settings)
            locator: Credential locator used for polling and pre-login reset
            callback_servers: Registry owning the callback listeners
            emitter: Event sink for UI log lines and completion events
            env: Base environment for spawned processes (defaults to os.environ)
            browser_factory: Builds the embedded browser for a tool and callback port
            open_external: Opens a URL in the system browser
            automation_available: Reports whether scripted-keystroke automation can run
        """
        self.config = config
        self.locator = locator
        self.callback_servers = callback_servers
        self.emitter = emitter
        self.env = env
        self.browser_factory = browser_factory or self._default_browser
        self.open_external = open_external
        self.automation_available = automation_available
        self._attempts: Dict[ToolId, LoginAttempt] = {}

    def _default_browser(self, tool: ToolDescriptor, port: int) -> EmbeddedBrowserWindow:
        browser = self.config.browser
        return EmbeddedBrowserWindow(
            tool,
            port,
            callback_host=self.config.callback.host,
            close_delay=browser.close_delay,
            headless=browser.headless,
            width=browser.width,
            height=browser.height,
        )

    def active(self, tool_id: ToolId) -> Optional[LoginAttempt]:
        return self._attempts.get(tool_id)

    async def login(self, tool: ToolDescriptor, strategy: Optional[LoginStrategy] = None) -> str:
        """
        Run one login attempt to completion.

        Args:
            tool: Tool to log in
            strategy: Strategy override (defaults to the tool's registered one)

        Returns:
            str: The completion channel that won (output phrase, credentials,
            callback, browser or process exit)

        Raises:
            ConnectError: PrerequisiteMissing, SpawnFailed, AuthenticationDenied,
                LoginTimeout, LoginProcessFailed or LoginCancelled
        """
        if tool.id in self._attempts:
            raise ConnectError(f"{tool.name} login already in progress")

        attempt = LoginAttempt(tool, strategy or get_strategy(tool))
        self._attempts[tool.id] = attempt

        with LogContext(attempt.id):
            try:
                return await self._run(attempt)
            finally:
                await self._teardown(attempt)
                if self._attempts.get(tool.id) is attempt:
                    del self._attempts[tool.id]
                attempt.finished.set()
                logger.info("Login attempt finished", tool_id=str(tool.id), attempt_id=attempt.id)

    async def cancel_all(self) -> None:
        """Reject every in-flight attempt and wait for their teardown."""
        attempts = list(self._attempts.values())
        for attempt in attempts:
            attempt.fail(LoginCancelled(f"{attempt.tool.name} login cancelled"))
        for attempt in attempts:
            await attempt.finished.wait()

    async def _run(self, attempt: LoginAttempt) -> str:
        tool, strategy = attempt.tool, attempt.strategy
        logger.info("Login attempt started",
                   tool_id=str(tool.id),
                   attempt_id=attempt.id,
                   strategy=type(strategy).__name__)

        if strategy.requires_automation and not self.automation_available():
            raise PrerequisiteMissing(
                f"{automation.DEPENDENCY} is required for {tool.name} login but is not available. "
                f"Install it with: pip install {automation.DEPENDENCY}"
            )

        # The bound covers the pre-login reset as well as the login itself
        timeout = self.config.login.timeout_for(tool.id, tool.login_timeout)
        deadline = attempt.started + timeout
        try:
            await asyncio.wait_for(strategy.prepare(StrategyContext(
                locator=self.locator,
                log=lambda message: self.emitter.log(tool.id, message),
                env=self.env,
            )), timeout)
        except asyncio.TimeoutError:
            raise LoginTimeout(self._timeout_message(tool, timeout)) from None

        if tool.uses_callback_server:
            try:
                attempt.callback_server = await self.callback_servers.start(tool, self._on_callback)
            except OSError as e:
                logger.error("Callback server unavailable", tool_id=str(tool.id), error=str(e))

        argv = strategy.build_command()
        try:
            attempt.process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=strategy.build_env(self.env),
            )
        except OSError as e:
            raise SpawnFailed(f"Failed to start {tool.name} login: {e}") from e

        logger.info("Login process spawned", tool_id=str(tool.id), pid=attempt.process.pid)
        self.emitter.log(tool.id, f"Started {tool.name} login...")

        attempt.spawn(self._pump(attempt, attempt.process.stdout))
        attempt.spawn(self._pump(attempt, attempt.process.stderr))
        attempt.spawn(self._poll_credentials(attempt))
        attempt.spawn(self._watch_exit(attempt))

        remaining = max(deadline - asyncio.get_running_loop().time(), 0)
        try:
            return await asyncio.wait_for(asyncio.shield(attempt.outcome), remaining)
        except asyncio.TimeoutError:
            attempt.fail(LoginTimeout(self._timeout_message(tool, timeout)))
            # A success may have landed at the deadline
            return await attempt.outcome

    @staticmethod
    def _timeout_message(tool: ToolDescriptor, timeout: float) -> str:
        return f"{tool.name} login timed out after {int(timeout)} seconds"

    async def _teardown(self, attempt: LoginAttempt) -> None:
        await attempt.cancel_pending()

        if attempt.browser is not None:
            await attempt.browser.close()
            attempt.browser = None

        proc = attempt.process
        if proc is not None and proc.returncode is None:
            if attempt.succeeded:
                # Give the CLI time to write its credentials
                try:
                    await asyncio.wait_for(proc.wait(), self.config.login.flush_delay)
                except asyncio.TimeoutError:
                    pass
            await terminate_process(proc, grace=self.config.login.kill_grace)

        if attempt.callback_server is not None:
            await attempt.callback_server.stop()

    async def _pump(self, attempt: LoginAttempt, stream: asyncio.StreamReader) -> None:
        strategy = attempt.strategy
        scanner = OutputScanner(
            strategy.success_phrases,
            strategy.failure_phrases,
            prompts=[prompt for prompt, _ in strategy.prompt_responses],
        )
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        while True:
            data = await stream.read(4096)
            if not data:
                break
            text = decoder.decode(data)
            if text:
                self._handle_scan(attempt, scanner.feed(text))

        tail = decoder.decode(b"", final=True)
        if tail:
            self._handle_scan(attempt, scanner.feed(tail))
        self._handle_scan(attempt, scanner.finish())

    def _handle_scan(self, attempt: LoginAttempt, result: ScanResult) -> None:
        tool, strategy = attempt.tool, attempt.strategy
        attempt.record(result.text)

        for line in visible_lines(result.text):
            logger.debug("CLI output", tool_id=str(tool.id), line=line)
            if strategy.meaningful(line):
                self.emitter.log(tool.id, line)
        for message in result.info:
            self.emitter.log(tool.id, message)

        if attempt.resolved:
            return

        for prompt in result.prompts:
            if prompt not in attempt.answered:
                attempt.answered.add(prompt)
                self._answer_prompt(attempt, prompt)

        if result.url and attempt.auth_url is None:
            self._on_auth_url(attempt, result.url)

        # Failure is evaluated first so a denial after a URL still rejects
        if result.failure:
            attempt.fail(AuthenticationDenied(f"{tool.name} login failed: {result.failure}"))
        elif result.success:
            self.emitter.log(tool.id, "Authentication completed successfully!")
            attempt.succeed(f"output:{result.success}")

    def _answer_prompt(self, attempt: LoginAttempt, prompt: str) -> None:
        keys = next(k for p, k in attempt.strategy.prompt_responses if p.lower() == prompt)
        logger.debug("Answering prompt", tool_id=str(attempt.tool.id), prompt=prompt)
        proc = attempt.process
        if proc is None or proc.stdin is None:
            return
        try:
            proc.stdin.write(keys.encode())
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug("Could not answer prompt", tool_id=str(attempt.tool.id), error=str(e))

    def _on_auth_url(self, attempt: LoginAttempt, url: str) -> None:
        tool, strategy = attempt.tool, attempt.strategy
        attempt.auth_url = url
        logger.info("Authentication URL detected", tool_id=str(tool.id), host=urlparse(url).netloc)
        self.emitter.log(tool.id, strategy.url_message)

        if strategy.url_handling == EMBEDDED and self.config.browser.enabled:
            attempt.spawn(self._run_browser(attempt, url))
        elif strategy.external_fallback:
            attempt.call_later(self.config.login.url_fallback_delay, self._open_external, attempt, url)

    def _open_external(self, attempt: LoginAttempt, url: str) -> None:
        if attempt.resolved:
            return
        logger.info("Opening authentication URL in system browser", tool_id=str(attempt.tool.id))
        try:
            self.open_external(url)
        except webbrowser.Error as e:
            logger.warning("Could not open system browser", tool_id=str(attempt.tool.id), error=str(e))
            self.emitter.log(attempt.tool.id, f"Open this URL to continue: {url}")

    async def _run_browser(self, attempt: LoginAttempt, url: str) -> None:
        tool = attempt.tool
        port = attempt.callback_server.port if attempt.callback_server else tool.port
        attempt.browser = self.browser_factory(tool, port)
        try:
            match = await attempt.browser.open(url)
        except AuthenticationDenied as e:
            attempt.fail(e)
            return
        except Exception as e:
            # No usable embedded browser: fall back to the system one
            logger.warning("Embedded browser failed, falling back to system browser",
                          tool_id=str(tool.id),
                          error=str(e))
            self._open_external(attempt, url)
            return
        finally:
            attempt.browser = None

        if match is not None:
            attempt.succeed("browser")
        else:
            logger.info("Browser window closed before completion", tool_id=str(tool.id))

    def _on_callback(self, tool_id: ToolId, params: Dict[str, str]) -> None:
        self.emitter.emit(AUTH_COMPLETED, tool_id=str(tool_id))
        attempt = self._attempts.get(tool_id)
        if attempt is None:
            logger.warning("Callback received with no login in progress", tool_id=str(tool_id))
            return

        error = params.get("error")
        if error:
            attempt.fail(AuthenticationDenied(f"{attempt.tool.name} authorization failed: {error}"))
        else:
            attempt.succeed("callback")

    async def _poll_credentials(self, attempt: LoginAttempt) -> None:
        tool = attempt.tool
        while not attempt.resolved:
            await asyncio.sleep(tool.poll_interval)
            if await self.locator.check_authenticated(tool):
                logger.info("Credentials detected on disk", tool_id=str(tool.id))
                self.emitter.log(tool.id, f"Detected {tool.name} credentials")
                attempt.succeed("credentials")
                return

    async def _watch_exit(self, attempt: LoginAttempt) -> None:
        tool = attempt.tool
        code = await attempt.process.wait()
        logger.info("Login process exited", tool_id=str(tool.id), exit_code=code)
        if attempt.resolved:
            return

        # Let the pumps drain and credential writes land
        await asyncio.sleep(self.config.login.exit_recheck_delay)
        if attempt.resolved:
            return

        if code == 0 or await self.locator.check_authenticated(tool):
            attempt.succeed("exit")
        else:
            attempt.fail(LoginProcessFailed(
                f"{tool.name} login process failed with code {code}",
                exit_code=code
            ))
