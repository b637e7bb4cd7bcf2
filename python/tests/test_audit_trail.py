"""Tests for the hash-chained write audit trail and the audited chain writer."""

import sqlite3

import pytest

from agentledger.audit.trail import AuditStatus, AuditTrail
from agentledger.exceptions import RejectedWriteError, StaleAuthorization, TransientChainError
from agentledger.interfaces.chain import WriteReceipt
from agentledger.orchestration.writer import ChainWriter

from conftest import fast_retry


@pytest.fixture
def audit(tmp_path):
    return AuditTrail(tmp_path / "audit.db")


class TestAuditTrail:
    def test_entries_are_chained(self, audit):
        first = audit.record("validation_request", AuditStatus.ATTEMPTED, "task-1", {"validator": "0xv"})
        second = audit.record("validation_request", AuditStatus.CONFIRMED, "task-1", {"tx_hash": "0xt"})

        assert first["prev_hash"] is None
        assert second["prev_hash"] == first["hash"]
        assert audit.verify_chain()

    def test_filters(self, audit):
        audit.record("validation_request", AuditStatus.ATTEMPTED, "task-1")
        audit.record("give_feedback", AuditStatus.ATTEMPTED, "task-1")
        audit.record("give_feedback", AuditStatus.ATTEMPTED, "task-2")

        assert len(audit.list_entries(task_id="task-1")) == 2
        assert [e["task_id"] for e in audit.list_entries(operation="give_feedback")] == ["task-1", "task-2"]

    def test_tampering_is_detected(self, audit, tmp_path):
        audit.record("give_feedback", AuditStatus.ATTEMPTED, "task-1", {"score": 95})
        audit.record("give_feedback", AuditStatus.CONFIRMED, "task-1", {"score": 95})

        conn = sqlite3.connect(tmp_path / "audit.db")
        conn.execute("UPDATE audit_trail SET details = ? WHERE id = 1", ('{"score": 100}',))
        conn.commit()
        conn.close()

        assert not audit.verify_chain()

    def test_deletion_is_detected(self, audit, tmp_path):
        for status in (AuditStatus.ATTEMPTED, AuditStatus.CONFIRMED, AuditStatus.ATTEMPTED):
            audit.record("give_feedback", status, "task-1")

        conn = sqlite3.connect(tmp_path / "audit.db")
        conn.execute("DELETE FROM audit_trail WHERE id = 2")
        conn.commit()
        conn.close()

        assert not audit.verify_chain()

    def test_non_json_details_are_stringified(self, audit):
        entry = audit.record("give_feedback", AuditStatus.ATTEMPTED, "task-1", {"when": object()})
        assert isinstance(entry["details"]["when"], str)
        assert audit.verify_chain()


class TestChainWriter:
    def _receipt(self):
        return WriteReceipt(tx_hash="0xt", block_number=7, block_hash="0xb7", value=3)

    async def test_confirmed_write(self, audit):
        writer = ChainWriter(audit, fast_retry())

        async def ok():
            return self._receipt()

        receipt = await writer.write("give_feedback", ok, task_id="task-1", details={"agent_id": 42})

        assert receipt.value == 3
        entries = audit.list_entries(task_id="task-1")
        assert [e["status"] for e in entries] == ["attempted", "confirmed"]
        assert entries[1]["details"] == {
            "agent_id": 42, "tx_hash": "0xt", "block_number": 7, "value": 3,
        }

    async def test_transient_then_success(self, audit):
        writer = ChainWriter(audit, fast_retry())
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientChainError("timeout")
            return self._receipt()

        await writer.write("give_feedback", flaky, task_id="task-1")
        statuses = [e["status"] for e in audit.list_entries(task_id="task-1")]
        assert statuses == ["attempted", "transient_failure", "transient_failure", "confirmed"]

    async def test_rejection_is_not_retried(self, audit):
        writer = ChainWriter(audit, fast_retry())
        calls = []

        async def rejected():
            calls.append(1)
            raise RejectedWriteError("not owner", reason="not_owner")

        with pytest.raises(RejectedWriteError):
            await writer.write("validation_request", rejected, task_id="task-1")

        assert len(calls) == 1
        last = audit.list_entries(task_id="task-1")[-1]
        assert (last["status"], last["details"]["reason"]) == ("rejected", "not_owner")

    async def test_exhausted_budget(self, audit):
        writer = ChainWriter(audit, fast_retry(max_retries=2))

        async def down():
            raise TransientChainError("rpc down")

        with pytest.raises(TransientChainError):
            await writer.write("give_feedback", down, task_id="task-1")

        statuses = [e["status"] for e in audit.list_entries(task_id="task-1")]
        assert statuses == ["attempted", "transient_failure", "transient_failure", "exhausted"]

    async def test_stale_credential_recorded_as_rejected(self, audit):
        writer = ChainWriter(audit, fast_retry())

        async def stale():
            raise StaleAuthorization("limit reached")

        with pytest.raises(StaleAuthorization):
            await writer.write("give_feedback", stale, task_id="task-1")

        last = audit.list_entries(task_id="task-1")[-1]
        assert (last["status"], last["details"]["reason"]) == ("rejected", "stale_authorization")
