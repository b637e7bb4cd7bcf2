"""Tests for the SQLite read model: idempotency, ordering, rewind, atomicity."""

import pytest

from agentledger.chain.events import BlockBatch, BlockHeader, normalize_event
from agentledger.chain.identifiers import derive_request_hash
from agentledger.exceptions import MalformedEvent, ReorgDetected
from agentledger.indexer.store import SqliteReadModel

OWNER = "0x" + "0a" * 20
VALIDATOR = "0x" + "0b" * 20
OTHER_VALIDATOR = "0x" + "0e" * 20
CLIENT = "0x" + "0c" * 20
REQUEST = derive_request_hash(VALIDATOR, 42, "0xcontent")


def _hash(number: int, fork: int = 0) -> str:
    return "0x%064x" % (number + fork * 1_000_000)


def _raw(kind, number, log_index, args, fork=0):
    return {
        "event": kind,
        "block_number": number,
        "block_hash": _hash(number, fork),
        "log_index": log_index,
        "tx_hash": "0x%x%02d" % (number, log_index),
        "args": args,
    }


def _batch(number, *raws, fork=0, parent_fork=None):
    parent_fork = fork if parent_fork is None else parent_fork
    header = BlockHeader(
        number=number,
        hash=_hash(number, fork),
        parent_hash=_hash(number - 1, parent_fork),
        timestamp=1_700_000_000 + number,
    )
    return BlockBatch(header=header, events=[normalize_event(r) for r in raws])


def _canonical_blocks():
    return {
        1: _batch(1, _raw("Registered", 1, 0, {"agent_id": 42, "owner": OWNER, "token_uri": "ipfs://card"}),
                  _raw("MetadataSet", 1, 1, {"agent_id": 42, "key": "name", "value": "0x01"})),
        2: _batch(2, _raw("ValidationRequest", 2, 0, {
            "validator": VALIDATOR, "agent_id": 42, "request_uri": "sha256://r",
            "content_hash": "0xcontent", "request_hash": REQUEST,
        })),
        3: _batch(3, _raw("ValidationResponse", 3, 0, {
            "validator": VALIDATOR, "agent_id": 42, "request_hash": REQUEST, "score": 85,
            "response_uri": "sha256://resp", "response_hash": "0xresp", "tag": "ci-passed",
        })),
        4: _batch(4, _raw("NewFeedback", 4, 0, {
            "agent_id": 42, "client": CLIENT, "feedback_index": 0, "score": 95, "tag1": "pass",
            "tag2": "task", "file_uri": "sha256://f", "file_hash": "0xf0", "auth_ref": "0xa",
        }), _raw("NewFeedback", 4, 1, {
            "agent_id": 42, "client": CLIENT, "feedback_index": 1, "score": 40, "tag1": "fail",
            "tag2": "task", "file_uri": "sha256://g", "file_hash": "0xf1", "auth_ref": "0xb",
        })),
        5: _batch(5, _raw("FeedbackRevoked", 5, 0, {"agent_id": 42, "client": CLIENT, "feedback_index": 1}),
                  _raw("ResponseAppended", 5, 1, {
                      "agent_id": 42, "client": CLIENT, "feedback_index": 0, "responder": OWNER,
                      "response_uri": "sha256://thanks", "response_hash": "0x77",
                  }),
                  _raw("MetadataSet", 5, 2, {"agent_id": 42, "key": "name", "value": "0x02"})),
    }


@pytest.fixture
def store(tmp_path):
    return SqliteReadModel(tmp_path / "a.db", max_reorg_depth=16)


@pytest.fixture
def other_store(tmp_path):
    return SqliteReadModel(tmp_path / "b.db", max_reorg_depth=16)


def _apply_all(store, order):
    blocks = _canonical_blocks()
    for number in order:
        store.apply_block(blocks[number])


class TestApply:
    def test_projection_after_canonical_sequence(self, store):
        _apply_all(store, [1, 2, 3, 4, 5])

        agent = store.get_agent(42)
        assert agent.owner == OWNER
        assert agent.metadata == {"name": b"\x02"}
        assert agent.created_block == 1
        assert agent.updated_block == 5

        request = store.get_validation_request(REQUEST)
        assert request.status.value == "responded"
        assert request.response.score == 85
        assert request.response.tag == "ci-passed"

        feedback = store.list_feedback(42)
        assert [(f.feedback_index, f.score, f.revoked) for f in feedback] == [(0, 95, False), (1, 40, True)]
        assert feedback[0].responses[0].responder == OWNER
        assert store.get_checkpoint().block_number == 5

    def test_reapplication_is_idempotent(self, store):
        _apply_all(store, [1, 2, 3, 4, 5])
        before = store.snapshot()
        _apply_all(store, [1, 2, 3, 4, 5])
        assert store.snapshot() == before

    def test_order_independent_with_overlapping_suffix(self, store, other_store):
        _apply_all(store, [1, 2, 3, 4, 5])
        _apply_all(other_store, [3, 1, 5, 2, 4])
        _apply_all(other_store, [4, 5])

        assert other_store.snapshot() == store.snapshot()
        assert other_store.list_quarantine() == []
        assert other_store.get_checkpoint() == store.get_checkpoint()

    def test_response_before_request_is_quarantined_then_released(self, store):
        blocks = _canonical_blocks()
        store.apply_block(blocks[1])
        store.apply_block(blocks[3])

        quarantined = store.list_quarantine()
        assert [(q.reason, q.request_hash) for q in quarantined] == [("unknown_request", REQUEST)]
        assert store.get_validation_request(REQUEST) is None

        store.apply_block(blocks[2])
        assert store.list_quarantine() == []
        assert store.get_validation_request(REQUEST).response.score == 85

    def test_response_from_unbound_validator_is_quarantined(self, store):
        blocks = _canonical_blocks()
        store.apply_block(blocks[1])
        store.apply_block(blocks[2])
        store.apply_block(_batch(3, _raw("ValidationResponse", 3, 0, {
            "validator": OTHER_VALIDATOR, "agent_id": 42, "request_hash": REQUEST, "score": 10,
        })))

        assert store.get_validation_request(REQUEST).response is None
        assert [q.reason for q in store.list_quarantine()] == ["validator_mismatch"]

    def test_later_response_overwrites_earlier(self, store):
        blocks = _canonical_blocks()
        for n in (1, 2, 3):
            store.apply_block(blocks[n])
        store.apply_block(_batch(4, _raw("ValidationResponse", 4, 0, {
            "validator": VALIDATOR, "agent_id": 42, "request_hash": REQUEST, "score": 60, "tag": "retest",
        })))

        view = store.get_validation_request(REQUEST)
        assert view.response.score == 60
        assert store.get_responses([REQUEST])[REQUEST].tag == "retest"
        assert store.validation_summary(42).requests == 1

    def test_malformed_events_are_quarantined_with_the_block(self, store):
        batch = _canonical_blocks()[1]
        batch.malformed.append(MalformedEvent("bad args", raw={"event": "NewFeedback", "log_index": 9}))
        batch.malformed.append(MalformedEvent("garbage", raw={}))
        store.apply_block(batch)

        records = store.list_quarantine()
        assert [(r.log_index, r.event_kind) for r in records] == [(-2, "unknown"), (9, "NewFeedback")]
        assert all(r.reason.startswith("malformed") for r in records)
        assert store.get_agent(42) is not None

    def test_different_hash_at_stored_height_requires_rewind(self, store):
        _apply_all(store, [1, 2])
        with pytest.raises(ReorgDetected):
            store.apply_block(_batch(2, fork=1, parent_fork=0))
        assert store.get_block_hash(2) == _hash(2)


class TestAtomicity:
    def test_crash_mid_block_leaves_previous_state(self, store, monkeypatch):
        _apply_all(store, [1, 2, 3])
        before = store.snapshot()
        checkpoint = store.get_checkpoint()

        # First NewFeedback row is written, the second one fails.
        original = store._apply_new_feedback
        calls = []

        def second_fails(conn, event, block_time):
            calls.append(event.log_index)
            if len(calls) == 2:
                raise RuntimeError("power cut")
            return original(conn, event, block_time)

        monkeypatch.setattr(store, "_apply_new_feedback", second_fails)
        with pytest.raises(RuntimeError):
            store.apply_block(_canonical_blocks()[4])

        assert store.snapshot() == before
        assert store.get_checkpoint() == checkpoint
        assert store.get_block_hash(4) is None


class TestRewind:
    def test_rewind_discards_rows_after_ancestor(self, store):
        _apply_all(store, [1, 2, 3, 4, 5])
        discarded = store.rewind_to(2)

        assert discarded == 3
        assert store.get_checkpoint().block_number == 2
        assert store.get_checkpoint().block_hash == _hash(2)
        assert store.list_feedback(42) == []
        assert store.get_validation_request(REQUEST).response is None
        assert store.get_metadata(42, "name") == b"\x01"
        assert store.get_block_hash(3) is None

    def test_replay_after_rewind_has_no_duplicates(self, store, other_store):
        _apply_all(store, [1, 2, 3, 4, 5])
        store.rewind_to(2)

        fork = [
            _batch(3, _raw("ValidationResponse", 3, 0, {
                "validator": VALIDATOR, "agent_id": 42, "request_hash": REQUEST, "score": 70,
            }, fork=1), fork=1, parent_fork=0),
            _batch(4, _raw("NewFeedback", 4, 0, {
                "agent_id": 42, "client": CLIENT, "feedback_index": 0, "score": 50, "tag1": "fail",
                "tag2": "task", "file_uri": "sha256://h", "file_hash": "0xf2", "auth_ref": "0xc",
            }, fork=1), fork=1),
        ]
        for batch in fork:
            store.apply_block(batch)
            store.apply_block(batch)

        assert [(f.feedback_index, f.score) for f in store.list_feedback(42)] == [(0, 50)]
        assert store.get_validation_request(REQUEST).response.score == 70
        assert store.stats()["feedback"] == 1

        # Same rows as a store that only ever saw the fork.
        blocks = _canonical_blocks()
        other_store.apply_block(blocks[1])
        other_store.apply_block(blocks[2])
        for batch in fork:
            other_store.apply_block(batch)
        assert other_store.snapshot() == store.snapshot()

    def test_rewind_requarantines_orphaned_responses(self, store):
        blocks = _canonical_blocks()
        store.apply_block(blocks[1])
        store.apply_block(_batch(2, fork=0))
        # Request lands after its response (out-of-order application).
        store.apply_block(blocks[3])
        store.apply_block(_batch(4, _raw("ValidationRequest", 4, 0, {
            "validator": VALIDATOR, "agent_id": 42, "request_uri": "sha256://r",
            "content_hash": "0xcontent", "request_hash": REQUEST,
        })))
        assert store.get_validation_request(REQUEST).response.score == 85

        store.rewind_to(3)
        assert store.get_validation_request(REQUEST) is None
        assert [q.reason for q in store.list_quarantine()] == ["unknown_request"]

    def test_rewind_below_checkpoint_is_noop_when_nothing_applied(self, store):
        assert store.rewind_to(5) == 0
        assert store.get_checkpoint() is None

    def test_reset_drops_everything(self, store):
        _apply_all(store, [1, 2, 3])
        store.reset()
        assert store.get_checkpoint() is None
        assert all(count == 0 for count in store.stats().values())


class TestQueries:
    def test_next_feedback_index_never_reuses_revoked(self, store):
        _apply_all(store, [1, 2, 3, 4, 5])
        assert store.next_feedback_index(42, CLIENT) == 2
        assert store.next_feedback_index(42, CLIENT.upper().replace("0X", "0x")) == 2
        assert store.next_feedback_index(42, "0x" + "99" * 20) == 0

    def test_reputation_summary_excludes_revoked_and_filters_tags(self, store):
        _apply_all(store, [1, 2, 3, 4, 5])
        summary = store.reputation_summary(42)
        assert (summary.count, summary.average_score) == (1, 95.0)
        assert store.reputation_summary(42, tag1="fail").count == 0
        assert store.reputation_summary(7).count == 0

    def test_find_feedback_by_hash(self, store):
        _apply_all(store, [1, 2, 3, 4])
        found = store.find_feedback_by_hash(42, CLIENT, "0xf1")
        assert found.feedback_index == 1
        assert store.find_feedback_by_hash(42, CLIENT, "0xnope") is None

    def test_list_feedback_without_revoked(self, store):
        _apply_all(store, [1, 2, 3, 4, 5])
        assert [f.feedback_index for f in store.list_feedback(42, include_revoked=False)] == [0]

    def test_window_is_pruned_to_reorg_depth(self, tmp_path):
        store = SqliteReadModel(tmp_path / "small.db", max_reorg_depth=2)
        _apply_all(store, [1, 2, 3, 4, 5])
        assert sorted(store.window()) == [4, 5]
