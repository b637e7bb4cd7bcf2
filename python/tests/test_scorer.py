"""Tests for the reputation scorer (reputation/scorer.py)."""

import time

import pytest

from agentledger.exceptions import StaleAuthorization, TransientChainError
from agentledger.orchestration.writer import ChainWriter
from agentledger.reputation.authorization import LocalCredentialIssuer
from agentledger.reputation.rubric import TaskOutcome
from agentledger.reputation.scorer import ReputationScorer

from conftest import CLIENT, fast_retry


def _scorer(harness, owner_key, clock=time.time):
    issuer = LocalCredentialIssuer(chain_id=harness.ledger.chain_id, ttl=3600)
    issuer.add_key(owner_key[0])
    return ReputationScorer(
        harness.client,
        harness.read_model,
        harness.evidence,
        issuer,
        ChainWriter(harness.audit, fast_retry()),
        clock=clock,
    )


class TestEvidence:
    async def test_evidence_document_is_deterministic(self, harness):
        outcome = TaskOutcome(passed=True, review_comment_count=2)
        first = await harness.scorer.store_evidence("task-1", 42, "pass", outcome, 85)
        second = await harness.scorer.store_evidence("task-1", 42, "pass", outcome, 85)
        other = await harness.scorer.store_evidence("task-2", 42, "pass", outcome, 85)

        assert first == second
        assert other.content_hash != first.content_hash

    def test_client_address(self, harness):
        assert harness.scorer.client_address == CLIENT


class TestAuthorize:
    async def test_unindexed_agent_is_transient(self, harness):
        with pytest.raises(TransientChainError):
            await harness.scorer.authorize(42, 0)

    async def test_credential_is_bound_to_next_index(self, harness):
        agent_id = await harness.register_agent()
        credential = await harness.scorer.authorize(agent_id, 3)
        assert credential.index_limit == 4
        assert credential.client == CLIENT

    async def test_expired_credential_is_refused_before_writing(self, harness, owner_key):
        agent_id = await harness.register_agent()
        scorer = _scorer(harness, owner_key, clock=lambda: time.time() + 7200)
        evidence = await scorer.store_evidence("task-1", agent_id, "pass", TaskOutcome(passed=True), 95)

        with pytest.raises(StaleAuthorization):
            await scorer.submit(agent_id, 95, "pass", evidence, 0, task_id="task-1")
        assert harness.ledger.feedback_count(agent_id, CLIENT) == 0


class TestFeedbackWrites:
    async def _give(self, harness):
        agent_id = await harness.register_agent()
        outcome = TaskOutcome(passed=True)
        score = harness.scorer.compute_score(outcome)
        evidence = await harness.scorer.store_evidence("task-1", agent_id, "pass", outcome, score)
        receipt = await harness.scorer.submit(agent_id, score, "pass", evidence, 0, task_id="task-1")
        await harness.sync()
        return agent_id, receipt

    async def test_submit_writes_feedback(self, harness):
        agent_id, receipt = await self._give(harness)

        assert receipt.value == 0
        view = harness.read_model.get_feedback(agent_id, CLIENT, 0)
        assert (view.score, view.tag1, view.tag2) == (95, "pass", "task")
        statuses = [e["status"] for e in harness.audit.list_entries(task_id="task-1")]
        assert statuses == ["attempted", "confirmed"]

    async def test_revoke_feedback(self, harness):
        agent_id, _ = await self._give(harness)

        await harness.scorer.revoke_feedback(agent_id, 0, task_id="task-1")
        await harness.sync()

        assert harness.read_model.get_feedback(agent_id, CLIENT, 0).revoked
        assert harness.read_model.list_feedback(agent_id, include_revoked=False) == []

    async def test_append_response_by_agent_owner(self, harness):
        agent_id, _ = await self._give(harness)

        await harness.scorer.append_response(harness.owner, agent_id, CLIENT, 0, b"thanks", task_id="task-1")
        await harness.sync()

        responses = harness.read_model.get_feedback(agent_id, CLIENT, 0).responses
        assert [r.responder for r in responses] == [harness.owner.account]
        assert await harness.evidence.fetch(responses[0].response_uri) == b"thanks"

    async def test_retry_after_landed_write_reuses_indexed_feedback(self, harness, monkeypatch):
        agent_id = await harness.register_agent()
        outcome = TaskOutcome(passed=True)
        evidence = await harness.scorer.store_evidence("task-1", agent_id, "pass", outcome, 95)
        original = harness.client.give_feedback
        calls = []

        async def lands_then_times_out(*args):
            calls.append(args)
            await original(*args)
            await harness.sync()
            raise TransientChainError("receipt timeout")

        monkeypatch.setattr(harness.client, "give_feedback", lands_then_times_out)

        receipt = await harness.scorer.submit(agent_id, 95, "pass", evidence, 0, task_id="task-1")

        assert receipt.value == 0
        assert len(calls) == 1
        assert harness.ledger.feedback_count(agent_id, CLIENT) == 1
        statuses = [e["status"] for e in harness.audit.list_entries(task_id="task-1")]
        assert statuses == ["attempted", "transient_failure", "confirmed"]
