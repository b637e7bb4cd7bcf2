"""Reputation scoring and feedback authorization."""

from agentledger.reputation.authorization import (
    FeedbackAuthorization,
    LocalCredentialIssuer,
    check_credential,
)
from agentledger.reputation.rubric import ScoringRubric, TaskOutcome

__all__ = [
    "FeedbackAuthorization",
    "LocalCredentialIssuer",
    "check_credential",
    "ScoringRubric",
    "TaskOutcome",
]
