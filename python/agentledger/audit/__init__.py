"""Hash-chained audit trail of chain writes."""

from agentledger.audit.trail import AuditStatus, AuditTrail

__all__ = ["AuditStatus", "AuditTrail"]
