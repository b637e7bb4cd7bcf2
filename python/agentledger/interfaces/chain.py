"""Interface for the ledger collaborator.

Typed access to the Identity, Validation and Reputation registries plus the
raw event feed the indexer consumes. A client is bound to one sending account;
writes are signed for that account by the collaborator.
"""

from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence, Tuple

from agentledger.chain.events import BlockHeader


@dataclass(frozen=True)
class WriteReceipt:
    """Result of an accepted write."""
    tx_hash: str
    block_number: int
    block_hash: str
    value: Any = None  # agent id, request hash or feedback index


class IChainClient(Protocol):
    """Interface for registry reads, writes and the event feed.

    Errors:
        TransientChainError: network/timeout; safe to retry.
        RejectedWriteError: deterministic rejection; never retried.
    """

    @property
    def account(self) -> str:
        """Address writes are issued from."""
        ...

    # --- Event feed ---

    async def get_block_number(self) -> int:
        ...

    async def get_block(self, number: int) -> Optional[BlockHeader]:
        ...

    async def get_logs(self, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        """Raw events in [from_block, to_block], ordered by (block, log index)."""
        ...

    def subscribe(self, poll_interval: float = 2.0) -> AsyncIterator[BlockHeader]:
        """Yield each new head as it appears."""
        ...

    # --- Identity registry ---

    async def register(self, token_uri: str, metadata: Sequence[Tuple[str, bytes]] = ()) -> WriteReceipt:
        ...

    async def set_metadata(self, agent_id: int, key: str, value: bytes) -> WriteReceipt:
        ...

    async def token_uri(self, agent_id: int) -> str:
        ...

    async def get_metadata(self, agent_id: int, key: str) -> bytes:
        ...

    # --- Validation registry ---

    async def validation_request(
        self, validator: str, agent_id: int, request_uri: str, content_hash: str
    ) -> WriteReceipt:
        """Emit a ValidationRequest; receipt value is the request hash."""
        ...

    async def validation_response(
        self, request_hash: str, score: int, response_uri: str, response_hash: str, tag: str
    ) -> WriteReceipt:
        ...

    async def get_validation_status(self, request_hash: str) -> Dict[str, Any]:
        ...

    # --- Reputation registry ---

    async def give_feedback(
        self,
        agent_id: int,
        score: int,
        tag1: str,
        tag2: str,
        file_uri: str,
        file_hash: str,
        credential: Dict[str, Any],
    ) -> WriteReceipt:
        """Receipt value is the chain-assigned feedback index."""
        ...

    async def revoke_feedback(self, agent_id: int, feedback_index: int) -> WriteReceipt:
        ...

    async def append_response(
        self, agent_id: int, client: str, feedback_index: int, response_uri: str, response_hash: str
    ) -> WriteReceipt:
        ...
