"""Chain-side types: normalized events, identifiers and chain clients."""

from agentledger.chain.events import BlockBatch, BlockHeader, ChainEvent, EventKind, normalize_event
from agentledger.chain.identifiers import canonical_json, content_hash, derive_request_hash

__all__ = [
    "BlockBatch",
    "BlockHeader",
    "ChainEvent",
    "EventKind",
    "normalize_event",
    "canonical_json",
    "content_hash",
    "derive_request_hash",
]
