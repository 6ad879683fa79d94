"""
Tests for the login orchestrator.

Child processes are real Python scripts printing literal CLI output, so the
scraping, the completion race and the teardown are exercised end to end.
"""

import asyncio
import socket
from unittest.mock import AsyncMock, Mock

import aiohttp
import pytest

from cli_connect.browser_window import NavigationMatch
from cli_connect.callback_server import CallbackServerRegistry
from cli_connect.credentials import CredentialLocator, SecureStore
from cli_connect.errors import (
    AuthenticationDenied,
    ConnectError,
    LoginCancelled,
    LoginProcessFailed,
    LoginTimeout,
    PrerequisiteMissing,
    SpawnFailed,
)
from cli_connect.events import AUTH_COMPLETED, LOG, EventEmitter
from cli_connect.orchestrator import LoginOrchestrator
from cli_connect.strategies import EMBEDDED, GeminiStrategy

from .conftest import ScriptStrategy, make_tool

SLEEP_FOREVER = "import time; time.sleep(60)"


@pytest.fixture
def events():
    return []


@pytest.fixture
def orchestrator(fast_config, events):
    emitter = EventEmitter()
    emitter.subscribe(lambda event, payload: events.append((event, payload)))
    return LoginOrchestrator(
        fast_config,
        CredentialLocator(secure_store=SecureStore(platform="linux"), settle_delay=0),
        CallbackServerRegistry(grace_period=0.1),
        emitter,
        open_external=Mock(),
        automation_available=lambda: True,
    )


async def start_login(orchestrator, tool, strategy):
    """Start a login in the background and return (task, attempt)."""
    task = asyncio.ensure_future(orchestrator.login(tool, strategy))
    await asyncio.sleep(0)
    attempt = orchestrator.active(tool.id)
    assert attempt is not None
    return task, attempt


async def wait_until(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class TestOutputCompletion:
    """Completion through scraped output."""

    @pytest.mark.asyncio
    async def test_success_phrase_resolves_and_cleans_up(self, home, orchestrator):
        tool = make_tool()
        strategy = ScriptStrategy(tool, f"""
            print("Please visit https://accounts.google.com/o/oauth2/auth?client_id=1 to sign in")
            print("Authentication successful")
            {SLEEP_FOREVER}
        """)
        orchestrator.config.login.url_fallback_delay = 0.2

        task, attempt = await start_login(orchestrator, tool, strategy)
        source = await asyncio.wait_for(task, 10)

        assert source == "output:authentication successful"
        assert attempt.auth_url == "https://accounts.google.com/o/oauth2/auth?client_id=1"
        assert attempt.pending_tasks == 0
        assert attempt.pending_timers == 0
        assert attempt.process.returncode is not None
        assert orchestrator.active(tool.id) is None

        # Nothing fires after resolution, not even the URL fallback timer
        await asyncio.sleep(0.4)
        orchestrator.open_external.assert_not_called()

    @pytest.mark.asyncio
    async def test_url_then_denial_rejects(self, home, orchestrator):
        tool = make_tool()
        strategy = ScriptStrategy(tool, f"""
            import time
            print("Open https://claude.ai/oauth/authorize?code=true&client_id=9 to continue")
            time.sleep(0.3)
            print("Error: access denied")
            {SLEEP_FOREVER}
        """)

        with pytest.raises(AuthenticationDenied, match="access denied"):
            await asyncio.wait_for(orchestrator.login(tool, strategy), 10)

    @pytest.mark.asyncio
    async def test_failed_marker_rejects(self, home, orchestrator):
        tool = make_tool()
        strategy = ScriptStrategy(tool, """
            print("LOGIN_INFO:Starting Claude authentication process...")
            print("LOGIN_FAILED:No URL detected")
        """)

        with pytest.raises(AuthenticationDenied, match="No URL detected"):
            await asyncio.wait_for(orchestrator.login(tool, strategy), 10)

    @pytest.mark.asyncio
    async def test_unterminated_last_line_is_scanned(self, home, orchestrator):
        tool = make_tool()
        strategy = ScriptStrategy(tool, """
            import sys
            sys.stdout.write("Error: access denied")
        """)
        # Exit code 0 would otherwise win once the recheck delay passes
        orchestrator.config.login.exit_recheck_delay = 1.0

        with pytest.raises(AuthenticationDenied, match="access denied"):
            await asyncio.wait_for(orchestrator.login(tool, strategy), 10)

    @pytest.mark.asyncio
    async def test_stderr_is_scraped(self, home, orchestrator):
        tool = make_tool()
        strategy = ScriptStrategy(tool, f"""
            import sys
            sys.stderr.write("Loaded cached credentials.\\n")
            {SLEEP_FOREVER}
        """)

        source = await asyncio.wait_for(orchestrator.login(tool, strategy), 10)
        assert source == "output:loaded cached credentials"

    @pytest.mark.asyncio
    async def test_output_forwarded_to_log(self, home, orchestrator, events):
        tool = make_tool()
        strategy = ScriptStrategy(tool, """
            print("\\x1b[32mWorking...\\x1b[0m")
            print("LOGIN_INFO:Complete the sign-in in your browser")
            print("LOGIN_SUCCESS")
        """)

        await asyncio.wait_for(orchestrator.login(tool, strategy), 10)

        messages = [payload["message"] for event, payload in events if event == LOG]
        assert "Working..." in messages
        assert "Complete the sign-in in your browser" in messages
        assert not any(m.startswith("LOGIN_") for m in messages)

    @pytest.mark.asyncio
    async def test_prompt_answered_once(self, home, orchestrator):
        tool = make_tool()
        strategy = ScriptStrategy(tool, """
            import sys
            print("How would you like to authenticate for this project?")
            key = sys.stdin.buffer.read(1)
            print("Authentication successful" if key == b"\\r" else "Login failed")
            import time; time.sleep(60)
        """, prompt_responses=(("How would you like to authenticate", "\r"),))

        source = await asyncio.wait_for(orchestrator.login(tool, strategy), 10)
        assert source == "output:authentication successful"


class TestOtherChannels:
    """Completion through process exit, credentials, callback and browser."""

    @pytest.mark.asyncio
    async def test_clean_exit_without_phrase_succeeds(self, home, orchestrator):
        tool = make_tool()
        strategy = ScriptStrategy(tool, 'print("bye")')
        assert await asyncio.wait_for(orchestrator.login(tool, strategy), 10) == "exit"

    @pytest.mark.asyncio
    async def test_non_zero_exit_fails(self, home, orchestrator):
        tool = make_tool()
        strategy = ScriptStrategy(tool, "import sys; sys.exit(3)")

        with pytest.raises(LoginProcessFailed) as exc_info:
            await asyncio.wait_for(orchestrator.login(tool, strategy), 10)
        assert exc_info.value.exit_code == 3

    @pytest.mark.asyncio
    async def test_credential_file_appearance(self, home, orchestrator):
        tool = make_tool()
        strategy = ScriptStrategy(tool, f"""
            import os, time
            time.sleep(0.2)
            path = os.path.join(os.environ["HOME"], ".gemini", "oauth_creds.json")
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w") as f:
                f.write('{{"access_token": "ya29"}}')
            {SLEEP_FOREVER}
        """)

        source = await asyncio.wait_for(orchestrator.login(tool, strategy), 10)
        assert source == "credentials"

    @pytest.mark.asyncio
    async def test_callback_request(self, home, orchestrator, events):
        tool = make_tool(uses_callback_server=True)
        strategy = ScriptStrategy(tool, SLEEP_FOREVER)

        task, attempt = await start_login(orchestrator, tool, strategy)
        await wait_until(lambda: attempt.process is not None)
        server = attempt.callback_server

        async with aiohttp.ClientSession() as session:
            async with session.get(server.url, params={"code": "abc"}) as response:
                assert response.status == 200

        assert await asyncio.wait_for(task, 10) == "callback"
        assert (AUTH_COMPLETED, {"tool_id": "gemini"}) in events
        assert not server.running

    @pytest.mark.asyncio
    async def test_callback_error_rejects(self, home, orchestrator):
        tool = make_tool(uses_callback_server=True)
        strategy = ScriptStrategy(tool, SLEEP_FOREVER)

        task, attempt = await start_login(orchestrator, tool, strategy)
        await wait_until(lambda: attempt.process is not None)

        async with aiohttp.ClientSession() as session:
            async with session.get(attempt.callback_server.url, params={"error": "access_denied"}):
                pass

        with pytest.raises(AuthenticationDenied, match="access_denied"):
            await asyncio.wait_for(task, 10)

    @pytest.mark.asyncio
    async def test_embedded_browser_success(self, home, orchestrator):
        tool = make_tool()
        url = "https://accounts.google.com/o/oauth2/v2/auth?client_id=1"
        strategy = ScriptStrategy(tool, f"""
            print("Please visit {url} to sign in")
            {SLEEP_FOREVER}
        """, url_handling=EMBEDDED)

        browser = Mock()

        async def open_window(auth_url):
            assert auth_url == url
            return NavigationMatch("success", "https://example.com/authenticated")

        browser.open = open_window
        orchestrator.config.browser.enabled = True
        orchestrator.browser_factory = Mock(return_value=browser)

        assert await asyncio.wait_for(orchestrator.login(tool, strategy), 10) == "browser"

    @pytest.mark.asyncio
    async def test_embedded_window_closed_by_user_leaves_other_channels(self, home, orchestrator):
        tool = make_tool()
        url = "https://accounts.google.com/o/oauth2/v2/auth?client_id=1"
        strategy = ScriptStrategy(tool, f"""
            import os, time
            print("Please visit {url} to sign in")
            time.sleep(0.5)
            path = os.path.join(os.environ["HOME"], ".gemini", "oauth_creds.json")
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w") as f:
                f.write('{{"access_token": "ya29"}}')
            {SLEEP_FOREVER}
        """, url_handling=EMBEDDED)

        browser = Mock()
        browser.close = AsyncMock()
        opened = []

        async def open_window(auth_url):
            opened.append(auth_url)
            return None

        browser.open = open_window
        orchestrator.config.browser.enabled = True
        orchestrator.browser_factory = Mock(return_value=browser)

        task, attempt = await start_login(orchestrator, tool, strategy)
        await wait_until(lambda: opened)
        await asyncio.sleep(0.1)
        assert not attempt.resolved
        assert attempt.browser is None

        assert await asyncio.wait_for(task, 10) == "credentials"
        orchestrator.open_external.assert_not_called()
        browser.close.assert_not_awaited()
        assert attempt.pending_tasks == 0

    @pytest.mark.asyncio
    async def test_embedded_window_closed_by_user_then_timeout(self, home, orchestrator):
        tool = make_tool(uses_callback_server=True, login_timeout=0.8)
        url = "https://accounts.google.com/o/oauth2/v2/auth?client_id=1"
        strategy = ScriptStrategy(tool, f"""
            print("Please visit {url} to sign in")
            {SLEEP_FOREVER}
        """, url_handling=EMBEDDED)

        browser = Mock()

        async def open_window(auth_url):
            return None

        browser.open = open_window
        orchestrator.config.browser.enabled = True
        orchestrator.browser_factory = Mock(return_value=browser)

        task, attempt = await start_login(orchestrator, tool, strategy)
        with pytest.raises(LoginTimeout):
            await asyncio.wait_for(task, 10)

        orchestrator.browser_factory.assert_called_once()
        assert attempt.process.returncode is not None
        assert not attempt.callback_server.running
        assert attempt.pending_tasks == 0
        assert attempt.pending_timers == 0
        assert orchestrator.active(tool.id) is None

    @pytest.mark.asyncio
    async def test_embedded_browser_failure_falls_back_to_system_browser(self, home, orchestrator):
        tool = make_tool()
        url = "https://accounts.google.com/o/oauth2/v2/auth?client_id=1"
        strategy = ScriptStrategy(tool, f"""
            import time
            print("Please visit {url} to sign in")
            time.sleep(0.5)
            print("Authentication successful")
            {SLEEP_FOREVER}
        """, url_handling=EMBEDDED)

        browser = Mock()

        async def open_window(auth_url):
            raise RuntimeError("Executable doesn't exist")

        browser.open = open_window
        orchestrator.config.browser.enabled = True
        orchestrator.browser_factory = Mock(return_value=browser)

        await asyncio.wait_for(orchestrator.login(tool, strategy), 10)
        orchestrator.open_external.assert_called_once_with(url)

    @pytest.mark.asyncio
    async def test_external_fallback_opens_url(self, home, orchestrator):
        tool = make_tool()
        url = "https://accounts.google.com/o/oauth2/v2/auth?client_id=1"
        strategy = ScriptStrategy(tool, f"""
            import time
            print("Please visit {url} to sign in")
            time.sleep(0.5)
            print("Authentication successful")
            {SLEEP_FOREVER}
        """)
        orchestrator.config.login.url_fallback_delay = 0.1

        await asyncio.wait_for(orchestrator.login(tool, strategy), 10)
        orchestrator.open_external.assert_called_once_with(url)


class TestFailures:
    """Failure taxonomy and teardown."""

    @pytest.mark.asyncio
    async def test_timeout_kills_child_and_releases_port(self, home, orchestrator):
        tool = make_tool(uses_callback_server=True, login_timeout=0.5)
        strategy = ScriptStrategy(tool, f"""
            print("Waiting for authentication...")
            {SLEEP_FOREVER}
        """)

        task, attempt = await start_login(orchestrator, tool, strategy)
        await wait_until(lambda: attempt.process is not None)
        port = attempt.callback_server.port

        with pytest.raises(LoginTimeout):
            await asyncio.wait_for(task, 10)

        assert attempt.process.returncode is not None
        assert not attempt.callback_server.running
        assert orchestrator.callback_servers.get(tool.id) is None
        assert attempt.pending_tasks == 0
        assert attempt.pending_timers == 0

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("127.0.0.1", port))
        finally:
            sock.close()

    @pytest.mark.asyncio
    async def test_spawn_failure(self, home, orchestrator):
        tool = make_tool()
        strategy = ScriptStrategy(tool, "")
        strategy.build_command = lambda: ("/nonexistent/cli-connect-test-binary",)

        with pytest.raises(SpawnFailed):
            await orchestrator.login(tool, strategy)
        assert orchestrator.active(tool.id) is None

    @pytest.mark.asyncio
    async def test_missing_automation_dependency(self, home, orchestrator):
        tool = make_tool(requires_automation=True)
        orchestrator.automation_available = lambda: False

        with pytest.raises(PrerequisiteMissing, match="pexpect"):
            await orchestrator.login(tool, ScriptStrategy(tool, SLEEP_FOREVER))

    @pytest.mark.asyncio
    async def test_missing_automation_keeps_existing_credentials(self, home, orchestrator):
        creds = home / ".gemini" / "oauth_creds.json"
        creds.parent.mkdir()
        creds.write_text('{"access_token": "ya29"}')
        tool = make_tool(requires_automation=True)
        orchestrator.automation_available = lambda: False

        with pytest.raises(PrerequisiteMissing):
            await orchestrator.login(tool, GeminiStrategy(tool))

        assert creds.exists()
        assert orchestrator.active(tool.id) is None

    @pytest.mark.asyncio
    async def test_slow_reset_counts_against_timeout(self, home, orchestrator):
        tool = make_tool(login_timeout=0.3)

        async def slow_prepare(ctx):
            await asyncio.sleep(5)

        strategy = ScriptStrategy(tool, SLEEP_FOREVER, prepare=slow_prepare)
        task, attempt = await start_login(orchestrator, tool, strategy)

        with pytest.raises(LoginTimeout, match="timed out"):
            await asyncio.wait_for(task, 2)
        assert attempt.process is None
        assert orchestrator.active(tool.id) is None

    @pytest.mark.asyncio
    async def test_reset_time_shortens_login_window(self, home, orchestrator):
        tool = make_tool(login_timeout=1.0)

        async def slow_prepare(ctx):
            await asyncio.sleep(0.7)

        strategy = ScriptStrategy(tool, SLEEP_FOREVER, prepare=slow_prepare)
        started = asyncio.get_running_loop().time()

        with pytest.raises(LoginTimeout):
            await asyncio.wait_for(orchestrator.login(tool, strategy), 10)
        assert asyncio.get_running_loop().time() - started < 1.5

    @pytest.mark.asyncio
    async def test_second_login_for_same_tool_rejected(self, home, orchestrator):
        tool = make_tool()
        task, attempt = await start_login(orchestrator, tool, ScriptStrategy(tool, SLEEP_FOREVER))

        try:
            with pytest.raises(ConnectError, match="already in progress"):
                await orchestrator.login(tool, ScriptStrategy(tool, SLEEP_FOREVER))
        finally:
            await orchestrator.cancel_all()

        with pytest.raises(LoginCancelled):
            await task

    @pytest.mark.asyncio
    async def test_cancel_all_tears_down(self, home, orchestrator):
        tool = make_tool(uses_callback_server=True)
        task, attempt = await start_login(orchestrator, tool, ScriptStrategy(tool, SLEEP_FOREVER))
        await wait_until(lambda: attempt.process is not None)

        await orchestrator.cancel_all()

        assert attempt.finished.is_set()
        assert attempt.process.returncode is not None
        assert not attempt.callback_server.running
        with pytest.raises(LoginCancelled):
            await task
