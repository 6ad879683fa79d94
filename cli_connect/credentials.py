"""
Credential discovery, extraction and removal.

After a login the credential material written by a CLI is located by
probing its candidate locations in order: the OS secure store (macOS
Keychain) first, then the credential files on disk. The result is
normalised into a CredentialDescriptor. Extraction never fails the connect
flow: when nothing can be found a degraded descriptor is returned instead.
"""

import asyncio
import json
import re
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pydantic import BaseModel, Field

from .tools import CredentialFile, ToolDescriptor, ToolId
from .utils.process import run_command

logger = structlog.get_logger(__name__)

SECRET_KEY_RE = re.compile(r"token|secret|key|password|credential", re.IGNORECASE)
MASK = "***"


class StorageKind(str, Enum):
    """Where credential material was found."""
    SECURE_STORE = "secure-store"
    FILE = "file"
    UNKNOWN = "unknown"


def mask_secrets(value: Any) -> Any:
    """Recursively replace values stored under secret-looking keys."""
    if isinstance(value, dict):
        masked = {}
        for key, item in value.items():
            if SECRET_KEY_RE.search(str(key)) and isinstance(item, (str, int, float)) and item != "":
                masked[key] = MASK
            else:
                masked[key] = mask_secrets(item)
        return masked
    if isinstance(value, list):
        return [mask_secrets(item) for item in value]
    return value


class CredentialDescriptor(BaseModel):
    """Normalised result of a credential extraction."""
    tool_id: str
    status: str = "authenticated"
    message: str
    storage: StorageKind = StorageKind.UNKNOWN
    path: Optional[str] = None
    format: Optional[str] = None
    service: Optional[str] = None
    size: Optional[int] = None
    payload: Optional[Dict[str, Any]] = None
    raw: Optional[str] = Field(default=None, repr=False)
    copy_text: Optional[str] = Field(default=None, repr=False)
    degraded: bool = False
    extracted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def redacted(self) -> Dict[str, Any]:
        """Metadata-only view, safe to log or forward."""
        data = self.model_dump(mode="json", exclude={"raw", "copy_text", "payload"})
        data["payload"] = mask_secrets(self.payload) if self.payload is not None else None
        return data


@dataclass
class CredentialHit:
    """Raw content read from one credential location."""
    storage: StorageKind
    content: str
    label: str
    format: str = "json"
    path: Optional[Path] = None
    service: Optional[str] = None


class SecureStore:
    """
    macOS Keychain access through the ``security`` command.

    On other platforms every lookup reports nothing stored.
    """

    def __init__(self, platform: Optional[str] = None, timeout: float = 10.0):
        self.platform = platform or sys.platform
        self.timeout = timeout

    @property
    def available(self) -> bool:
        return self.platform == "darwin"

    async def _security(self, *args: str):
        try:
            return await run_command(("security",) + args, timeout=self.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("Secure store command failed", command=args[0], error=str(e))
            return None

    async def read(self, service: str) -> Optional[str]:
        if not self.available:
            return None
        result = await self._security("find-generic-password", "-s", service, "-w")
        if result is None or not result.ok or not result.stdout.strip():
            return None
        return result.stdout.strip()

    async def exists(self, service: str) -> bool:
        if not self.available:
            return False
        result = await self._security("find-generic-password", "-s", service)
        return result is not None and result.ok

    async def delete(self, service: str) -> bool:
        """Delete an entry; False when there was nothing to delete."""
        if not self.available:
            return False
        result = await self._security("delete-generic-password", "-s", service)
        return result is not None and result.ok


def read_credential_file(cred: CredentialFile) -> Optional[str]:
    """
    Read a candidate credential file.

    Returns:
        Optional[str]: The content, or None when the file is missing, empty
        or lacks the entry it is required to contain
    """
    path = cred.resolve()
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning("Credential file unreadable", path=str(path), error=str(e))
        return None

    if not content.strip():
        return None
    if cred.required_pattern and not re.search(cred.required_pattern, content):
        return None
    return content


def _format_copy_text(content: str) -> Tuple[str, bool]:
    try:
        return json.dumps(json.loads(content), indent=2), True
    except ValueError:
        return content, False


class CredentialLocator:
    """
    Finds, reads and removes the credentials of each tool.
    """

    def __init__(self, secure_store: Optional[SecureStore] = None, settle_delay: float = 1.0):
        self.secure_store = secure_store or SecureStore()
        self.settle_delay = settle_delay
        self._last_known: Dict[ToolId, CredentialDescriptor] = {}

    def last_known(self, tool_id: ToolId) -> Optional[CredentialDescriptor]:
        return self._last_known.get(tool_id)

    async def _first_hit(self, tool: ToolDescriptor, include_copy_only: bool = False) -> Optional[CredentialHit]:
        """Read the first location, in search order, that holds credentials."""
        if tool.secure_store_service:
            secret = await self.secure_store.read(tool.secure_store_service)
            if secret:
                return CredentialHit(
                    storage=StorageKind.SECURE_STORE,
                    content=secret,
                    label=f"{tool.name} credentials",
                    service=tool.secure_store_service,
                )

        for cred in tool.credential_files:
            if cred.copy_only and not include_copy_only:
                continue
            content = read_credential_file(cred)
            if content is not None:
                return CredentialHit(
                    storage=StorageKind.FILE,
                    content=content,
                    label=cred.label or cred.resolve().name,
                    format=cred.format,
                    path=cred.resolve(),
                )
        return None

    async def check_authenticated(self, tool: ToolDescriptor) -> bool:
        """Whether any non-fallback credential location holds credentials."""
        if tool.secure_store_service and await self.secure_store.exists(tool.secure_store_service):
            return True

        for cred in tool.credential_files:
            if cred.copy_only:
                continue
            if cred.required_pattern:
                if read_credential_file(cred) is not None:
                    return True
                continue
            try:
                if cred.resolve().stat().st_size > 0:
                    return True
            except OSError:
                continue
        return False

    async def extract(self, tool: ToolDescriptor) -> CredentialDescriptor:
        """
        Locate and normalise a tool's credentials after a login.

        Args:
            tool: Tool whose credentials to extract

        Returns:
            CredentialDescriptor: a real descriptor, or a degraded one when
            no location yielded content
        """
        if self.settle_delay > 0:
            # Writes can race the completion signal
            await asyncio.sleep(self.settle_delay)

        hit = await self._first_hit(tool)
        if hit is None:
            logger.warning("No credential artifact found, verification skipped", tool_id=str(tool.id))
            descriptor = CredentialDescriptor(
                tool_id=str(tool.id),
                message=f"{tool.name} authenticated (verification skipped)",
                degraded=True,
            )
        else:
            descriptor = self._describe(tool, hit)
            logger.info("Credentials extracted",
                       tool_id=str(tool.id),
                       storage=descriptor.storage.value,
                       path=descriptor.path,
                       size=descriptor.size)

        self._last_known[tool.id] = descriptor
        return descriptor

    def _describe(self, tool: ToolDescriptor, hit: CredentialHit) -> CredentialDescriptor:
        payload: Optional[Dict[str, Any]] = None
        content_format = hit.format

        if hit.format == "toml":
            match = re.search(r'api_key\s*=\s*"([^"]+)"', hit.content, re.IGNORECASE)
            if match:
                payload = {"api_key": match.group(1)}
        else:
            try:
                parsed = json.loads(hit.content)
                payload = parsed if isinstance(parsed, dict) else {"value": parsed}
                content_format = "json"
            except ValueError:
                content_format = "text"

        copy_text, _ = _format_copy_text(hit.content)
        return CredentialDescriptor(
            tool_id=str(tool.id),
            message=tool.success_message or f"{tool.name} authenticated successfully",
            storage=hit.storage,
            path=str(hit.path) if hit.path else None,
            format=content_format,
            service=hit.service,
            size=len(hit.content),
            payload=payload,
            raw=hit.content,
            copy_text=copy_text,
        )

    async def copyable(self, tool: ToolDescriptor) -> Optional[Dict[str, str]]:
        """
        Credential text ready for the clipboard.

        Returns:
            Optional[Dict[str, str]]: ``copy_text`` and a human ``message``,
            or None when nothing is available
        """
        hit = await self._first_hit(tool, include_copy_only=True)
        if hit is not None:
            copy_text, formatted = _format_copy_text(hit.content)
            if hit.storage == StorageKind.SECURE_STORE:
                message = f"{hit.label} copied from Keychain"
            elif formatted:
                message = f"{hit.label} (formatted) copied"
            else:
                message = f"{hit.label} copied"
            return {"copy_text": copy_text, "message": message}

        last = self._last_known.get(tool.id)
        if last is not None and last.copy_text:
            return {"copy_text": last.copy_text, "message": f"{tool.name} credentials copied"}
        return None

    async def remove_credentials(self, tool: ToolDescriptor) -> List[str]:
        """
        Delete a tool's secure-store entry and credential files.

        Returns:
            List[str]: what was actually removed

        Raises:
            OSError: If an existing file could not be deleted
        """
        removed: List[str] = []
        if tool.secure_store_service and await self.secure_store.delete(tool.secure_store_service):
            removed.append(f"keychain:{tool.secure_store_service}")

        paths = list(tool.credential_paths) + [Path(p).expanduser() for p in tool.extra_logout_files]
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            removed.append(str(path))
            logger.debug("Removed credential file", tool_id=str(tool.id), path=str(path))

        self._last_known.pop(tool.id, None)
        return removed

    async def logout(self, tool: ToolDescriptor) -> Dict[str, Any]:
        """Remove stored credentials; nothing to remove still counts as success."""
        try:
            removed = await self.remove_credentials(tool)
        except OSError as e:
            logger.error("Failed to remove credentials", tool_id=str(tool.id), error=str(e))
            return {"success": False, "message": f"Error removing {tool.name} credentials: {e}"}

        if not removed:
            return {"success": True, "message": f"No {tool.name} credentials to remove", "removed": []}
        return {"success": True, "message": f"{tool.name} logged out successfully", "removed": removed}
