"""Read-only query interface over the indexed projection.

The Event Indexer is the only writer of the read model. Everything else
(orchestrator, aggregator, scorer, query API) depends on this Protocol.
"""

from typing import Dict, Iterable, List, Optional, Protocol

from agentledger.indexer.models import (
    AgentView,
    Checkpoint,
    FeedbackView,
    QuarantineRecord,
    ReputationSummary,
    ValidationRequestView,
    ValidationResponseView,
    ValidationSummary,
)


class IReadModel(Protocol):
    """Query surface of the read model."""

    def get_checkpoint(self) -> Optional[Checkpoint]:
        ...

    def get_agent(self, agent_id: int) -> Optional[AgentView]:
        ...

    def get_metadata(self, agent_id: int, key: str) -> Optional[bytes]:
        ...

    def get_validation_request(self, request_hash: str) -> Optional[ValidationRequestView]:
        ...

    def get_responses(self, request_hashes: Iterable[str]) -> Dict[str, ValidationResponseView]:
        """Latest response per known request hash; missing keys = no response."""
        ...

    def list_agent_validations(self, agent_id: int) -> List[ValidationRequestView]:
        ...

    def next_feedback_index(self, agent_id: int, client: str) -> int:
        ...

    def get_feedback(self, agent_id: int, client: str, feedback_index: int) -> Optional[FeedbackView]:
        ...

    def find_feedback_by_hash(self, agent_id: int, client: str, file_hash: str) -> Optional[FeedbackView]:
        ...

    def list_feedback(
        self, agent_id: int, client: Optional[str] = None, include_revoked: bool = True
    ) -> List[FeedbackView]:
        ...

    def reputation_summary(
        self, agent_id: int, tag1: Optional[str] = None, tag2: Optional[str] = None
    ) -> ReputationSummary:
        ...

    def validation_summary(self, agent_id: int) -> ValidationSummary:
        ...

    def list_quarantine(self, limit: int = 100) -> List[QuarantineRecord]:
        ...
