"""agentledger interface contracts (Protocol-based dependency injection)."""

from agentledger.interfaces.chain import IChainClient, WriteReceipt
from agentledger.interfaces.evidence import IEvidenceGateway, StoredEvidence
from agentledger.interfaces.read_model import IReadModel

__all__ = [
    "IChainClient",
    "WriteReceipt",
    "IEvidenceGateway",
    "StoredEvidence",
    "IReadModel",
]
