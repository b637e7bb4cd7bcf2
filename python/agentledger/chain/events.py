"""Normalized registry events.

Raw events arrive from the chain client as dictionaries::

    {"event": "NewFeedback", "block_number": 12, "block_hash": "0x..",
     "log_index": 0, "tx_hash": "0x..", "args": {...}}

``normalize_event`` turns one into a ChainEvent whose ``payload`` is one of the
typed payload classes below, keyed by EventKind. Anything that does not fit
raises MalformedEvent so the indexer can quarantine it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Union

from agentledger.exceptions import MalformedEvent

SCORE_MIN = 0
SCORE_MAX = 100


class EventKind(str, Enum):
    """Event types emitted by the three registries."""

    REGISTERED = "Registered"
    METADATA_SET = "MetadataSet"
    VALIDATION_REQUEST = "ValidationRequest"
    VALIDATION_RESPONSE = "ValidationResponse"
    NEW_FEEDBACK = "NewFeedback"
    FEEDBACK_REVOKED = "FeedbackRevoked"
    RESPONSE_APPENDED = "ResponseAppended"


@dataclass(frozen=True)
class BlockHeader:
    """Canonical position of a block."""

    number: int
    hash: str
    parent_hash: str
    timestamp: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BlockHeader":
        try:
            return cls(
                number=int(data["number"]),
                hash=str(data["hash"]),
                parent_hash=str(data["parent_hash"]),
                timestamp=int(data.get("timestamp", 0)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedEvent(f"Bad block header: {exc}", raw=dict(data)) from exc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "hash": self.hash,
            "parent_hash": self.parent_hash,
            "timestamp": self.timestamp,
        }


# ── Payloads ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Registered:
    agent_id: int
    owner: str
    token_uri: str


@dataclass(frozen=True)
class MetadataSet:
    agent_id: int
    key: str
    value: bytes


@dataclass(frozen=True)
class ValidationRequested:
    validator: str
    agent_id: int
    request_uri: str
    content_hash: str
    request_hash: str


@dataclass(frozen=True)
class ValidationResponded:
    validator: str
    agent_id: int
    request_hash: str
    score: int
    response_uri: str
    response_hash: str
    tag: str


@dataclass(frozen=True)
class NewFeedback:
    agent_id: int
    client: str
    feedback_index: int
    score: int
    tag1: str
    tag2: str
    file_uri: str
    file_hash: str
    auth_ref: str


@dataclass(frozen=True)
class FeedbackRevoked:
    agent_id: int
    client: str
    feedback_index: int


@dataclass(frozen=True)
class ResponseAppended:
    agent_id: int
    client: str
    feedback_index: int
    responder: str
    response_uri: str
    response_hash: str


EventPayload = Union[
    Registered,
    MetadataSet,
    ValidationRequested,
    ValidationResponded,
    NewFeedback,
    FeedbackRevoked,
    ResponseAppended,
]


@dataclass(frozen=True)
class ChainEvent:
    """One normalized event, positioned by (block_number, log_index)."""

    kind: EventKind
    block_number: int
    block_hash: str
    log_index: int
    tx_hash: str
    payload: EventPayload
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def position(self) -> tuple:
        return (self.block_number, self.log_index)


@dataclass
class BlockBatch:
    """A block header plus its ordered, already-normalized events."""

    header: BlockHeader
    events: List[ChainEvent] = field(default_factory=list)
    malformed: List[MalformedEvent] = field(default_factory=list)


# ── Parsing helpers ──────────────────────────────────────────────────


def _addr(value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise ValueError(f"expected address, got {value!r}")
    return value.lower()


def _int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("expected integer, got bool")
    if isinstance(value, str):
        return int(value, 0)
    if isinstance(value, int):
        return value
    raise ValueError(f"expected integer, got {value!r}")


def _str(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"expected string, got {value!r}")
    return value


def _bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        text = value[2:] if value.startswith("0x") else value
        return bytes.fromhex(text)
    raise ValueError(f"expected hex bytes, got {value!r}")


def _score(value: Any) -> int:
    score = _int(value)
    if not SCORE_MIN <= score <= SCORE_MAX:
        raise ValueError(f"score {score} outside {SCORE_MIN}-{SCORE_MAX}")
    return score


def _parse_payload(kind: EventKind, args: Dict[str, Any]) -> EventPayload:
    if kind is EventKind.REGISTERED:
        return Registered(
            agent_id=_int(args["agent_id"]),
            owner=_addr(args["owner"]),
            token_uri=_str(args.get("token_uri")),
        )
    if kind is EventKind.METADATA_SET:
        return MetadataSet(
            agent_id=_int(args["agent_id"]),
            key=_str(args["key"]),
            value=_bytes(args["value"]),
        )
    if kind is EventKind.VALIDATION_REQUEST:
        return ValidationRequested(
            validator=_addr(args["validator"]),
            agent_id=_int(args["agent_id"]),
            request_uri=_str(args.get("request_uri")),
            content_hash=_str(args.get("content_hash")),
            request_hash=_str(args["request_hash"]),
        )
    if kind is EventKind.VALIDATION_RESPONSE:
        return ValidationResponded(
            validator=_addr(args["validator"]),
            agent_id=_int(args["agent_id"]),
            request_hash=_str(args["request_hash"]),
            score=_score(args["score"]),
            response_uri=_str(args.get("response_uri")),
            response_hash=_str(args.get("response_hash")),
            tag=_str(args.get("tag")),
        )
    if kind is EventKind.NEW_FEEDBACK:
        return NewFeedback(
            agent_id=_int(args["agent_id"]),
            client=_addr(args["client"]),
            feedback_index=_int(args["feedback_index"]),
            score=_score(args["score"]),
            tag1=_str(args.get("tag1")),
            tag2=_str(args.get("tag2")),
            file_uri=_str(args.get("file_uri")),
            file_hash=_str(args.get("file_hash")),
            auth_ref=_str(args.get("auth_ref")),
        )
    if kind is EventKind.FEEDBACK_REVOKED:
        return FeedbackRevoked(
            agent_id=_int(args["agent_id"]),
            client=_addr(args["client"]),
            feedback_index=_int(args["feedback_index"]),
        )
    return ResponseAppended(
        agent_id=_int(args["agent_id"]),
        client=_addr(args["client"]),
        feedback_index=_int(args["feedback_index"]),
        responder=_addr(args["responder"]),
        response_uri=_str(args.get("response_uri")),
        response_hash=_str(args.get("response_hash")),
    )


def normalize_event(raw: Dict[str, Any]) -> ChainEvent:
    """Parse one raw event dictionary.

    Raises:
        MalformedEvent: unknown kind, missing position fields, or bad args.
    """
    if not isinstance(raw, dict):
        raise MalformedEvent(f"Event is not an object: {type(raw).__name__}")
    try:
        kind = EventKind(raw.get("event"))
    except ValueError:
        raise MalformedEvent(f"Unknown event kind {raw.get('event')!r}", raw=raw)
    try:
        block_number = _int(raw["block_number"])
        block_hash = _str(raw["block_hash"])
        log_index = _int(raw["log_index"])
        tx_hash = _str(raw.get("tx_hash"))
    except (KeyError, ValueError) as exc:
        raise MalformedEvent(f"{kind.value}: bad position ({exc})", raw=raw) from exc
    args = raw.get("args")
    if not isinstance(args, dict):
        raise MalformedEvent(f"{kind.value}: args missing", raw=raw)
    try:
        payload = _parse_payload(kind, args)
    except (KeyError, ValueError, TypeError) as exc:
        raise MalformedEvent(f"{kind.value}: bad args ({exc})", raw=raw) from exc
    return ChainEvent(
        kind=kind,
        block_number=block_number,
        block_hash=block_hash,
        log_index=log_index,
        tx_hash=tx_hash,
        payload=payload,
        raw=raw,
    )
