"""
Tests for credential discovery, extraction, copy and logout.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from cli_connect.credentials import (
    CredentialLocator,
    SecureStore,
    StorageKind,
    mask_secrets,
)
from cli_connect.tools import TOOLS, ToolId
from cli_connect.utils.process import CommandResult

CODEX = TOOLS[ToolId.CODEX]
GEMINI = TOOLS[ToolId.GEMINI]
CLAUDE = TOOLS[ToolId.CLAUDE]


@pytest.fixture
def locator():
    return CredentialLocator(secure_store=SecureStore(platform="linux"), settle_delay=0)


def write(home, relative, content):
    path = home / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


class TestCheckAuthenticated:
    @pytest.mark.asyncio
    async def test_nothing_present(self, home, locator):
        for tool in TOOLS.values():
            assert await locator.check_authenticated(tool) is False

    @pytest.mark.asyncio
    async def test_credential_file_present(self, home, locator):
        write(home, ".gemini/oauth_creds.json", '{"access_token": "ya29.a0"}')
        assert await locator.check_authenticated(GEMINI) is True

    @pytest.mark.asyncio
    async def test_empty_file_does_not_count(self, home, locator):
        write(home, ".codex/auth.json", "")
        assert await locator.check_authenticated(CODEX) is False

    @pytest.mark.asyncio
    async def test_codex_config_needs_api_key(self, home, locator):
        write(home, ".codex/config.toml", 'model = "o4-mini"\n')
        assert await locator.check_authenticated(CODEX) is False

        write(home, ".codex/config.toml", 'model = "o4-mini"\napi_key = "sk-test"\n')
        assert await locator.check_authenticated(CODEX) is True

    @pytest.mark.asyncio
    async def test_copy_only_fallback_does_not_count(self, home, locator):
        write(home, ".claude.json", '{"numStartups": 3}')
        assert await locator.check_authenticated(CLAUDE) is False

    @pytest.mark.asyncio
    async def test_secure_store_entry_counts(self, home):
        store = SecureStore(platform="darwin")
        store.exists = AsyncMock(return_value=True)
        locator = CredentialLocator(secure_store=store, settle_delay=0)

        assert await locator.check_authenticated(CLAUDE) is True
        store.exists.assert_awaited_once_with("Claude Code-credentials")


class TestExtract:
    @pytest.mark.asyncio
    async def test_nothing_found_is_degraded_not_failed(self, home, locator):
        descriptor = await locator.extract(GEMINI)

        assert descriptor.status == "authenticated"
        assert descriptor.degraded is True
        assert descriptor.storage == StorageKind.UNKNOWN
        assert descriptor.message == "Gemini CLI authenticated (verification skipped)"
        assert locator.last_known(ToolId.GEMINI) is descriptor

    @pytest.mark.asyncio
    async def test_json_file(self, home, locator):
        content = {"access_token": "ya29.secret", "refresh_token": "1//0g", "expiry_date": 1760000000000}
        path = write(home, ".gemini/oauth_creds.json", json.dumps(content))

        descriptor = await locator.extract(GEMINI)

        assert descriptor.degraded is False
        assert descriptor.storage == StorageKind.FILE
        assert descriptor.path == str(path)
        assert descriptor.format == "json"
        assert descriptor.payload == content
        assert descriptor.message == "Gemini CLI authenticated successfully"
        assert json.loads(descriptor.copy_text) == content

    @pytest.mark.asyncio
    async def test_redacted_view_hides_secrets(self, home, locator):
        write(home, ".gemini/oauth_creds.json",
              json.dumps({"access_token": "ya29.secret", "expiry_date": 1760000000000}))

        redacted = (await locator.extract(GEMINI)).redacted()

        assert "raw" not in redacted
        assert "copy_text" not in redacted
        assert redacted["payload"] == {"access_token": "***", "expiry_date": 1760000000000}
        assert "ya29.secret" not in json.dumps(redacted)

    @pytest.mark.asyncio
    async def test_codex_toml_api_key(self, home, locator):
        write(home, ".codex/config.toml", 'api_key = "sk-proj-123"\n')

        descriptor = await locator.extract(CODEX)

        assert descriptor.format == "toml"
        assert descriptor.payload == {"api_key": "sk-proj-123"}

    @pytest.mark.asyncio
    async def test_codex_auth_json_preferred(self, home, locator):
        write(home, ".codex/auth.json", '{"tokens": {"id_token": "eyJ"}}')
        write(home, ".codex/config.toml", 'api_key = "sk-proj-123"\n')

        descriptor = await locator.extract(CODEX)

        assert descriptor.path.endswith("auth.json")

    @pytest.mark.asyncio
    async def test_non_json_content(self, home, locator):
        write(home, ".gemini/oauth_creds.json", "not json")
        descriptor = await locator.extract(GEMINI)
        assert descriptor.format == "text"
        assert descriptor.payload is None

    @pytest.mark.asyncio
    async def test_secure_store_first(self, home):
        store = SecureStore(platform="darwin")
        store.read = AsyncMock(return_value='{"claudeAiOauth": {"accessToken": "sk-ant-oat"}}')
        locator = CredentialLocator(secure_store=store, settle_delay=0)
        write(home, ".claude/.credentials.json", '{"other": true}')

        descriptor = await locator.extract(CLAUDE)

        assert descriptor.storage == StorageKind.SECURE_STORE
        assert descriptor.service == "Claude Code-credentials"
        assert descriptor.payload["claudeAiOauth"]["accessToken"] == "sk-ant-oat"


class TestCopyable:
    @pytest.mark.asyncio
    async def test_formatted_json(self, home, locator):
        write(home, ".codex/auth.json", '{"OPENAI_API_KEY":null,"tokens":{"id_token":"eyJ"}}')

        copyable = await locator.copyable(CODEX)

        assert copyable["message"] == "ChatGPT auth.json (formatted) copied"
        assert copyable["copy_text"].startswith("{\n")

    @pytest.mark.asyncio
    async def test_raw_text(self, home, locator):
        write(home, ".codex/config.toml", 'api_key = "sk-proj-123"\n')
        copyable = await locator.copyable(CODEX)
        assert copyable["message"] == "ChatGPT config.toml copied"
        assert copyable["copy_text"] == 'api_key = "sk-proj-123"\n'

    @pytest.mark.asyncio
    async def test_copy_only_fallback(self, home, locator):
        write(home, ".claude.json", '{"numStartups": 3}')
        copyable = await locator.copyable(CLAUDE)
        assert copyable["message"] == "Claude settings (formatted) copied"

    @pytest.mark.asyncio
    async def test_keychain_message(self, home):
        store = SecureStore(platform="darwin")
        store.read = AsyncMock(return_value="secret-blob")
        locator = CredentialLocator(secure_store=store, settle_delay=0)

        copyable = await locator.copyable(CLAUDE)

        assert copyable == {"copy_text": "secret-blob", "message": "Claude Code credentials copied from Keychain"}

    @pytest.mark.asyncio
    async def test_nothing_to_copy(self, home, locator):
        assert await locator.copyable(GEMINI) is None


class TestLogout:
    @pytest.mark.asyncio
    async def test_nothing_to_remove_is_success(self, home, locator):
        result = await locator.logout(GEMINI)
        assert result == {"success": True, "message": "No Gemini CLI credentials to remove", "removed": []}

    @pytest.mark.asyncio
    async def test_removes_credential_files_only(self, home, locator):
        creds = write(home, ".gemini/oauth_creds.json", "{}")
        accounts = write(home, ".gemini/google_accounts.json", "{}")
        settings = write(home, ".gemini/settings.json", "{}")

        result = await locator.logout(GEMINI)

        assert result["success"] is True
        assert result["message"] == "Gemini CLI logged out successfully"
        assert sorted(result["removed"]) == sorted([str(creds), str(accounts)])
        assert settings.exists()
        assert not creds.exists()

    @pytest.mark.asyncio
    async def test_clears_last_known(self, home, locator):
        write(home, ".gemini/oauth_creds.json", "{}")
        await locator.extract(GEMINI)
        await locator.logout(GEMINI)
        assert locator.last_known(ToolId.GEMINI) is None

    @pytest.mark.asyncio
    async def test_removal_error_reported(self, home, locator):
        write(home, ".gemini/oauth_creds.json", "{}")
        with patch("pathlib.Path.unlink", side_effect=PermissionError("read-only")):
            result = await locator.logout(GEMINI)
        assert result["success"] is False
        assert "read-only" in result["message"]

    @pytest.mark.asyncio
    async def test_keychain_entry_deleted(self, home):
        store = SecureStore(platform="darwin")
        store.delete = AsyncMock(return_value=True)
        locator = CredentialLocator(secure_store=store, settle_delay=0)

        result = await locator.logout(CLAUDE)

        assert result["removed"] == ["keychain:Claude Code-credentials"]


class TestSecureStore:
    @pytest.mark.asyncio
    async def test_unavailable_off_macos(self):
        store = SecureStore(platform="linux")
        assert await store.read("svc") is None
        assert await store.exists("svc") is False
        assert await store.delete("svc") is False

    @pytest.mark.asyncio
    async def test_read_uses_security_command(self):
        store = SecureStore(platform="darwin")
        result = CommandResult(exit_code=0, stdout="secret\n", stderr="")
        with patch("cli_connect.credentials.run_command", AsyncMock(return_value=result)) as run:
            assert await store.read("Claude Code-credentials") == "secret"
        argv = run.await_args.args[0]
        assert argv == ("security", "find-generic-password", "-s", "Claude Code-credentials", "-w")

    @pytest.mark.asyncio
    async def test_missing_entry(self):
        store = SecureStore(platform="darwin")
        result = CommandResult(exit_code=44, stdout="", stderr="could not be found")
        with patch("cli_connect.credentials.run_command", AsyncMock(return_value=result)):
            assert await store.read("svc") is None
            assert await store.exists("svc") is False

    @pytest.mark.asyncio
    async def test_command_missing(self):
        store = SecureStore(platform="darwin")
        with patch("cli_connect.credentials.run_command", AsyncMock(side_effect=FileNotFoundError("security"))):
            assert await store.read("svc") is None


def test_mask_secrets_nested():
    data = {"tokens": {"id_token": "eyJ", "account_id": "acc"}, "list": [{"password": "p"}], "empty_key": ""}
    assert mask_secrets(data) == {
        "tokens": {"id_token": "***", "account_id": "acc"},
        "list": [{"password": "***"}],
        "empty_key": "",
    }
