"""Interface for content-addressed evidence storage."""

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class StoredEvidence:
    """Locator plus content hash. ``content_hash`` may be empty when the
    locator is itself content-addressed (e.g. ``ipfs://<cid>``)."""
    uri: str
    content_hash: str = ""


class IEvidenceGateway(Protocol):
    """Store/fetch request and response payload blobs."""

    async def store(self, data: bytes) -> StoredEvidence:
        ...

    async def fetch(self, uri: str) -> bytes:
        ...

    async def fetch_verified(self, uri: str, content_hash: str = "") -> bytes:
        """Fetch and check against ``content_hash`` when one is given.

        Raises:
            EvidenceIntegrityError: blob does not match.
            EvidenceNotFoundError: nothing stored under ``uri``.
        """
        ...
