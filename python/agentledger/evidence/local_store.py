"""Filesystem content-addressed evidence store.

Blobs live at ``<root>/<aa>/<sha256 hex>`` and are addressed as
``sha256://<hex>``. The locator is itself the content hash, so fetches are
always verifiable.
"""

import asyncio
import hashlib
import logging
import os
from pathlib import Path
from typing import Union

from agentledger.chain.identifiers import content_hash
from agentledger.exceptions import EvidenceError, EvidenceIntegrityError, EvidenceNotFoundError
from agentledger.interfaces.evidence import StoredEvidence

logger = logging.getLogger(__name__)

SCHEME = "sha256://"


def _normalize_hash(value: str) -> str:
    value = value.lower()
    return value[2:] if value.startswith("0x") else value


def verify_blob(data: bytes, expected_hash: str, uri: str) -> bytes:
    """Return ``data`` if it matches ``expected_hash`` (empty = accept)."""
    if expected_hash and _normalize_hash(content_hash(data)) != _normalize_hash(expected_hash):
        raise EvidenceIntegrityError(
            f"Evidence at {uri} does not match hash {expected_hash}",
            details={"uri": uri, "expected": expected_hash, "actual": content_hash(data)},
        )
    return data


class LocalEvidenceStore:
    """IEvidenceGateway on a local directory."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, digest: str) -> Path:
        return self.root / digest[:2] / digest

    def _digest_from_uri(self, uri: str) -> str:
        if not uri.startswith(SCHEME):
            raise EvidenceError(f"Unsupported evidence locator {uri!r}")
        digest = uri[len(SCHEME):].lower()
        if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
            raise EvidenceError(f"Malformed evidence locator {uri!r}")
        return digest

    def _write(self, data: bytes) -> StoredEvidence:
        digest = hashlib.sha256(data).hexdigest()
        path = self._path(digest)
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_bytes(data)
            os.replace(tmp, path)
            logger.debug("Stored evidence %s (%d bytes)", digest[:12], len(data))
        return StoredEvidence(uri=SCHEME + digest, content_hash="0x" + digest)

    def _read(self, uri: str) -> bytes:
        path = self._path(self._digest_from_uri(uri))
        if not path.exists():
            raise EvidenceNotFoundError(f"No evidence stored at {uri}")
        return path.read_bytes()

    async def store(self, data: bytes) -> StoredEvidence:
        return await asyncio.to_thread(self._write, bytes(data))

    async def fetch(self, uri: str) -> bytes:
        return await asyncio.to_thread(self._read, uri)

    async def fetch_verified(self, uri: str, content_hash: str = "") -> bytes:
        data = await self.fetch(uri)
        # The locator carries its own hash; check it even when none is given.
        verify_blob(data, content_hash or "0x" + self._digest_from_uri(uri), uri)
        return data
