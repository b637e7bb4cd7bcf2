"""Read model row types.

These are snapshots handed to the orchestrator, aggregator and scorer; none
of them is ever written back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class RequestStatus(str, Enum):
    PENDING = "pending"
    RESPONDED = "responded"


@dataclass(frozen=True)
class Checkpoint:
    """Last block fully applied to the read model."""

    block_number: int
    block_hash: str


@dataclass
class AgentView:
    agent_id: int
    owner: str
    token_uri: str
    created_block: int
    created_time: int
    updated_block: int
    updated_time: int
    metadata: Dict[str, bytes] = field(default_factory=dict)


@dataclass(frozen=True)
class ValidationResponseView:
    request_hash: str
    validator: str
    score: int
    response_uri: str
    response_hash: str
    tag: str
    block_number: int
    block_time: int


@dataclass
class ValidationRequestView:
    request_hash: str
    validator: str
    agent_id: int
    request_uri: str
    content_hash: str
    block_number: int
    block_time: int
    response: Optional[ValidationResponseView] = None

    @property
    def status(self) -> RequestStatus:
        return RequestStatus.RESPONDED if self.response else RequestStatus.PENDING


@dataclass(frozen=True)
class FeedbackResponseView:
    responder: str
    response_uri: str
    response_hash: str
    block_number: int


@dataclass
class FeedbackView:
    agent_id: int
    client: str
    feedback_index: int
    score: int
    tag1: str
    tag2: str
    file_uri: str
    file_hash: str
    auth_ref: str
    block_number: int
    block_time: int
    revoked: bool = False
    responses: List[FeedbackResponseView] = field(default_factory=list)


@dataclass(frozen=True)
class ReputationSummary:
    agent_id: int
    count: int
    average_score: float


@dataclass(frozen=True)
class ValidationSummary:
    agent_id: int
    requests: int
    responded: int
    average_score: float


@dataclass(frozen=True)
class QuarantineRecord:
    """An event the projection refused to apply."""

    block_number: int
    log_index: int
    block_hash: str
    event_kind: str
    reason: str
    raw_json: str
    request_hash: Optional[str] = None
