"""
Client for the optional remote token-storage service.

Extracted credential records can be forwarded to a bookkeeping endpoint.
Forwarding is best effort: every failure is logged and reported in the
returned result, never raised into the login flow.
"""

import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp
import structlog

from . import __version__
from .credentials import CredentialDescriptor
from .utils.config import TokenStoreConfig

logger = structlog.get_logger(__name__)

TOKENS_PATH = "/api/ai-providers/tokens"
HEALTH_PATH = "/health"


class TokenStoreClient:
    """
    Forwards credential records to a remote token store.

    Use as an async context manager, or call ``close()`` when done.
    """

    def __init__(self, config: Optional[TokenStoreConfig] = None):
        self.config = config or TokenStoreConfig()
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def enabled(self) -> bool:
        return bool(self.config.base_url)

    def _url(self, path: str) -> str:
        return self.config.base_url.rstrip("/") + path

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                headers={"User-Agent": f"cli-connect/{__version__}"},
            )
        return self._session

    async def __aenter__(self):
        self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def build_request(self, descriptor: CredentialDescriptor) -> Dict[str, Any]:
        """
        Build the store-token request body for a descriptor.

        Only redacted metadata is sent unless ``include_secrets`` is set.
        """
        if self.config.include_secrets and descriptor.raw is not None:
            token_data = descriptor.raw
        else:
            token_data = json.dumps(descriptor.redacted())

        return {
            "provider": descriptor.tool_id,
            "userId": self.config.user_id,
            "tokenData": token_data,
            "originalPath": descriptor.path or descriptor.service or "",
            "format": descriptor.format or "unknown",
            "metadata": {
                "storage": descriptor.storage.value,
                "degraded": descriptor.degraded,
                "size": descriptor.size,
                "extractedAt": descriptor.extracted_at.isoformat(),
            },
        }

    async def store_token(self, descriptor: CredentialDescriptor) -> Dict[str, Any]:
        """
        Forward one credential record.

        Returns:
            Dict[str, Any]: ``success``, ``message`` and ``data`` (response body)
        """
        if not self.enabled:
            return {"success": False, "message": "Token storage not configured", "data": None}

        body = self.build_request(descriptor)
        logger.info("Forwarding credentials to token store",
                   provider=body["provider"],
                   redacted=not self.config.include_secrets)
        return await self._request("POST", TOKENS_PATH, json=body)

    async def health_check(self) -> Dict[str, Any]:
        """Check whether the token store is reachable."""
        if not self.enabled:
            return {"success": False, "message": "Token storage not configured", "data": None}
        return await self._request("GET", HEALTH_PATH)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        session = self._get_session()
        try:
            async with session.request(method, self._url(path), **kwargs) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = None

                if 200 <= response.status < 300:
                    message = data.get("message") if isinstance(data, dict) else None
                    success = data.get("success", True) if isinstance(data, dict) else True
                    return {
                        "success": bool(success),
                        "message": message or "OK",
                        "data": data.get("data", data) if isinstance(data, dict) else data,
                    }

                message = data.get("message") if isinstance(data, dict) else None
                logger.error("Token store request failed",
                            method=method,
                            path=path,
                            status=response.status)
                return {
                    "success": False,
                    "message": message or f"HTTP {response.status}",
                    "data": data,
                }

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Token store unreachable", method=method, path=path, error=str(e))
            return {"success": False, "message": f"Token store unreachable: {e}", "data": None}
