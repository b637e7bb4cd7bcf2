"""Deterministic identifiers shared by the chain side and the read model."""

import hashlib
import json
from typing import Any


def content_hash(data: bytes) -> str:
    """sha256 of a blob, 0x-prefixed hex."""
    return "0x" + hashlib.sha256(data).hexdigest()


def derive_request_hash(validator: str, agent_id: int, request_content_hash: str) -> str:
    """Validation request identifier: hash of (validator, agent id, content hash)."""
    material = f"{validator.lower()}|{int(agent_id)}|{request_content_hash.lower()}"
    return "0x" + hashlib.sha256(material.encode()).hexdigest()


def canonical_json(value: Any) -> bytes:
    """Stable JSON encoding for hashed documents."""
    return json.dumps(value, sort_keys=True, separators=(",", ":")).encode()
