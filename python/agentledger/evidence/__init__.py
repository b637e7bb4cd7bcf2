"""Evidence gateways."""

from agentledger.evidence.http_gateway import HttpEvidenceGateway
from agentledger.evidence.local_store import LocalEvidenceStore

__all__ = ["HttpEvidenceGateway", "LocalEvidenceStore"]
