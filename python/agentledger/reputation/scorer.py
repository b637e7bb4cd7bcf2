"""
Reputation Scorer & Authorizer.

Turns a decided task into a feedback record:

1. score the outcome with the rubric
2. store a deterministic feedback evidence document (same task, same bytes,
   same hash) so retries and restarts reproduce the same file hash
3. obtain an owner-signed credential and refuse with StaleAuthorization when
   the pair's next index has reached its limit or it has expired
4. submit through the audited ChainWriter

Index allocation and per-(agent, client) serialization are the caller's job
(TaskOrchestrator), which passes the expected next index in.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from agentledger.chain.identifiers import canonical_json
from agentledger.exceptions import RejectedWriteError, TransientChainError
from agentledger.interfaces.chain import IChainClient, WriteReceipt
from agentledger.interfaces.evidence import IEvidenceGateway, StoredEvidence
from agentledger.interfaces.read_model import IReadModel
from agentledger.orchestration.writer import ChainWriter
from agentledger.reputation.authorization import FeedbackAuthorization, ICredentialIssuer, check_credential
from agentledger.reputation.rubric import ScoringRubric, TaskOutcome

logger = logging.getLogger(__name__)


class ReputationScorer:
    """Scores outcomes and submits authorized feedback for one client account."""

    def __init__(
        self,
        client: IChainClient,
        read_model: IReadModel,
        evidence: IEvidenceGateway,
        issuer: ICredentialIssuer,
        writer: ChainWriter,
        rubric: Optional[ScoringRubric] = None,
        tag: str = "task",
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self._read_model = read_model
        self._evidence = evidence
        self._issuer = issuer
        self._writer = writer
        self.rubric = rubric or ScoringRubric()
        self.tag = tag
        self._clock = clock

    @property
    def client_address(self) -> str:
        return self._client.account

    def compute_score(self, outcome: TaskOutcome) -> int:
        return self.rubric.score(outcome)

    async def store_evidence(
        self, task_id: str, agent_id: int, verdict: str, outcome: TaskOutcome, score: int
    ) -> StoredEvidence:
        """Feedback evidence document referenced by file URI/hash."""
        document = {
            "type": "task-feedback",
            "task_id": task_id,
            "agent_id": agent_id,
            "client": self.client_address,
            "verdict": verdict,
            "outcome": outcome.to_dict(),
            "score": score,
        }
        return await self._evidence.store(canonical_json(document))

    async def authorize(self, agent_id: int, next_index: int) -> FeedbackAuthorization:
        agent = self._read_model.get_agent(agent_id)
        if agent is None:
            raise TransientChainError(f"Agent {agent_id} not indexed yet")
        credential = await self._issuer.issue(
            agent_id=agent_id,
            client=self.client_address,
            owner=agent.owner,
            index_limit=next_index + 1,
        )
        check_credential(credential, next_index, self._clock())
        return credential

    async def submit(
        self,
        agent_id: int,
        score: int,
        verdict: str,
        evidence: StoredEvidence,
        next_index: int,
        task_id: Optional[str] = None,
        prior_unresolved: bool = False,
    ) -> WriteReceipt:
        """
        Authorize and write one feedback record. Receipt value is the chain index.

        ``prior_unresolved`` marks an earlier write for the same evidence whose
        fate is unknown (timed out or exhausted). Every attempt after the first,
        and every attempt when that flag is set, first looks the evidence hash up
        in the read model so a write that already landed is never repeated.
        """
        credential = await self.authorize(agent_id, next_index)
        credential_dict: Dict[str, Any] = credential.to_dict()
        client = self.client_address
        attempts = 0

        async def give():
            nonlocal attempts
            attempts += 1
            may_have_landed = prior_unresolved or attempts > 1
            if may_have_landed:
                landed = self._read_model.find_feedback_by_hash(agent_id, client, evidence.content_hash)
                if landed is not None:
                    logger.info(
                        "Feedback for agent %s already recorded at index %d; not resubmitting",
                        agent_id, landed.feedback_index,
                    )
                    return WriteReceipt(tx_hash="", block_number=landed.block_number, block_hash="",
                                        value=landed.feedback_index)
            # Credential validity is re-checked per attempt against the freshest known index.
            current = max(next_index, self._read_model.next_feedback_index(agent_id, client))
            check_credential(credential, current, self._clock())
            try:
                return await self._client.give_feedback(
                    agent_id, score, verdict, self.tag, evidence.uri, evidence.content_hash, credential_dict
                )
            except RejectedWriteError as exc:
                if may_have_landed and exc.reason == "stale_authorization":
                    # Our own earlier write may hold the slot; wait for the read model.
                    raise TransientChainError(
                        f"Feedback for agent {agent_id} may already be recorded: {exc.message}",
                        details={"agent_id": agent_id, "client": client, "expected_index": next_index},
                    ) from exc
                raise

        receipt = await self._writer.write(
            "give_feedback",
            give,
            task_id=task_id,
            details={
                "agent_id": agent_id,
                "client": self.client_address,
                "expected_index": next_index,
                "score": score,
                "file_hash": evidence.content_hash,
            },
        )
        logger.info(
            "Feedback for agent %s by %s: score %d, index %s (expected %d)",
            agent_id, self.client_address, score, receipt.value, next_index,
        )
        return receipt

    async def revoke_feedback(self, agent_id: int, feedback_index: int, task_id: Optional[str] = None) -> WriteReceipt:
        return await self._writer.write(
            "revoke_feedback",
            lambda: self._client.revoke_feedback(agent_id, feedback_index),
            task_id=task_id,
            details={"agent_id": agent_id, "client": self.client_address, "feedback_index": feedback_index},
        )

    async def append_response(
        self,
        responder: IChainClient,
        agent_id: int,
        client: str,
        feedback_index: int,
        body: bytes,
        task_id: Optional[str] = None,
    ) -> WriteReceipt:
        """Attach a response (stored as evidence) to an existing feedback record."""
        stored = await self._evidence.store(body)
        return await self._writer.write(
            "append_response",
            lambda: responder.append_response(agent_id, client, feedback_index, stored.uri, stored.content_hash),
            task_id=task_id,
            details={"agent_id": agent_id, "client": client.lower(), "feedback_index": feedback_index,
                     "responder": responder.account},
        )
