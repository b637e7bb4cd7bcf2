"""
HTTP evidence gateway (IPFS-style pinning service).

    POST {base}/api/v1/blobs         body: raw bytes -> {"uri": "...", "content_hash": "..."}
    GET  {base}/api/v1/blobs?uri=... -> raw bytes

``ipfs://`` locators are content-addressed by the gateway, so an empty
content hash is accepted for them.
"""

import logging
from typing import Optional

import aiohttp

from agentledger.exceptions import EvidenceError, EvidenceNotFoundError
from agentledger.evidence.local_store import verify_blob
from agentledger.interfaces.evidence import StoredEvidence

logger = logging.getLogger(__name__)


class HttpEvidenceGateway:
    """Async HTTP client for a blob pinning gateway."""

    def __init__(self, base_url: str, auth_token: Optional[str] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {}
            if self.auth_token:
                headers["Authorization"] = f"Bearer {self.auth_token}"
            self._session = aiohttp.ClientSession(
                base_url=self.base_url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def store(self, data: bytes) -> StoredEvidence:
        session = await self._get_session()
        try:
            async with session.post(
                "/api/v1/blobs", data=bytes(data), headers={"Content-Type": "application/octet-stream"}
            ) as resp:
                if resp.status not in (200, 201):
                    raise EvidenceError(f"Evidence store failed: HTTP {resp.status}")
                body = await resp.json()
        except aiohttp.ClientError as exc:
            raise EvidenceError(f"Evidence gateway unreachable: {exc}") from exc
        stored = StoredEvidence(uri=body["uri"], content_hash=body.get("content_hash", ""))
        logger.debug("Pinned evidence %s", stored.uri)
        return stored

    async def fetch(self, uri: str) -> bytes:
        session = await self._get_session()
        try:
            async with session.get("/api/v1/blobs", params={"uri": uri}) as resp:
                if resp.status == 404:
                    raise EvidenceNotFoundError(f"No evidence stored at {uri}")
                if resp.status != 200:
                    raise EvidenceError(f"Evidence fetch failed: HTTP {resp.status}")
                return await resp.read()
        except aiohttp.ClientError as exc:
            raise EvidenceError(f"Evidence gateway unreachable: {exc}") from exc

    async def fetch_verified(self, uri: str, content_hash: str = "") -> bytes:
        data = await self.fetch(uri)
        return verify_blob(data, content_hash, uri)
